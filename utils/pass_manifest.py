# utils/pass_manifest.py
"""
Manifest handling for pass bundles.

A manifest is a flat JSON object mapping every bundle member (except
manifest.json and signature themselves) to the hex digest of its bytes.
The serialized form is what gets signed, so it must be byte-stable.
"""
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .pass_models import (
    MANIFEST_NAME,
    SIGNATURE_NAME,
    BundleIOError,
    HashAlg,
    ManifestIssue,
)

DEFAULT_HASH_ALG: HashAlg = "sha1"
SUPPORTED_HASH_ALGS = ("sha1", "sha256")

_CHUNK = 64 * 1024


# ---------------------------
# Hash engine
# ---------------------------

def _new_hash(hash_alg: str):
    if hash_alg not in SUPPORTED_HASH_ALGS:
        raise ValueError(f"unsupported hash_alg {hash_alg!r} (expected one of {SUPPORTED_HASH_ALGS})")
    return hashlib.new(hash_alg)


def digest_bytes(data: bytes, hash_alg: str = DEFAULT_HASH_ALG) -> str:
    h = _new_hash(hash_alg)
    h.update(data)
    return h.hexdigest()


def digest_file(path: Path, hash_alg: str = DEFAULT_HASH_ALG) -> str:
    h = _new_hash(hash_alg)
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def _digest_len(hash_alg: str) -> int:
    return _new_hash(hash_alg).digest_size * 2


# ---------------------------
# Builder
# ---------------------------

def is_reserved_name(name: str) -> bool:
    return name in (MANIFEST_NAME, SIGNATURE_NAME)


def check_member_name(name: str) -> None:
    """Bundle members live in a flat namespace; reject anything path-like."""
    if not name or name in (".", ".."):
        raise BundleIOError(f"invalid bundle member name: {name!r}")
    if "/" in name or "\\" in name or ".." in name:
        raise BundleIOError(f"bundle member name must be a plain file name: {name!r}")


def build_manifest(
    files: Iterable[Tuple[str, bytes]],
    hash_alg: str = DEFAULT_HASH_ALG,
) -> Dict[str, str]:
    manifest: Dict[str, str] = {}
    for name, data in files:
        if is_reserved_name(name):
            continue
        check_member_name(name)
        if name in manifest:
            raise BundleIOError(f"duplicate bundle member: {name}")
        manifest[name] = digest_bytes(data, hash_alg)
    return dict(sorted(manifest.items()))


def build_manifest_from_dir(staging_dir: Path, hash_alg: str = DEFAULT_HASH_ALG) -> Dict[str, str]:
    """Hash every regular file directly inside staging_dir. Subdirectories are skipped."""
    manifest: Dict[str, str] = {}
    for p in sorted(staging_dir.iterdir()):
        if not p.is_file() or is_reserved_name(p.name):
            continue
        check_member_name(p.name)
        manifest[p.name] = digest_file(p, hash_alg)
    return manifest


def manifest_bytes(manifest: Dict[str, str]) -> bytes:
    return json.dumps(
        manifest,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def write_manifest(staging_dir: Path, manifest: Dict[str, str]) -> bytes:
    data = manifest_bytes(manifest)
    (staging_dir / MANIFEST_NAME).write_bytes(data)
    return data


# ---------------------------
# Checker
# ---------------------------

def parse_manifest(raw: bytes) -> Dict[str, str]:
    """
    Parse manifest.json bytes. Raises ValueError when the document is not a
    JSON object of string keys to string digests.
    """
    try:
        obj: Any = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"manifest.json is not valid JSON: {e}")
    if not isinstance(obj, dict):
        raise ValueError("manifest.json must be a JSON object")
    return obj


def check_manifest(
    manifest: Dict[str, Any],
    read_member: Callable[[str], Optional[bytes]],
    member_names: Iterable[str],
    hash_alg: str = DEFAULT_HASH_ALG,
) -> List[ManifestIssue]:
    """
    Re-derive every digest and compare against manifest.

    read_member returns None for a name that is not in the bundle. Every
    problem is collected; nothing short-circuits.
    """
    issues: List[ManifestIssue] = []
    want_len = _digest_len(hash_alg)

    for name in sorted(manifest):
        expected = manifest[name]
        if not isinstance(expected, str) or len(expected) != want_len or is_reserved_name(name):
            issues.append(
                ManifestIssue(file=str(name), reason="invalid_entry", expected=str(expected))
            )
            continue
        data = read_member(name)
        if data is None:
            issues.append(ManifestIssue(file=name, reason="missing_from_bundle", expected=expected))
            continue
        actual = digest_bytes(data, hash_alg)
        if actual != expected.lower():
            issues.append(
                ManifestIssue(file=name, reason="hash_mismatch", expected=expected, actual=actual)
            )

    for name in sorted(member_names):
        if is_reserved_name(name) or name in manifest:
            continue
        data = read_member(name)
        issues.append(
            ManifestIssue(
                file=name,
                reason="missing_from_manifest",
                actual=digest_bytes(data, hash_alg) if data is not None else None,
            )
        )

    return issues


__all__ = [
    "DEFAULT_HASH_ALG",
    "SUPPORTED_HASH_ALGS",
    "build_manifest",
    "build_manifest_from_dir",
    "check_manifest",
    "check_member_name",
    "digest_bytes",
    "digest_file",
    "is_reserved_name",
    "manifest_bytes",
    "parse_manifest",
    "write_manifest",
]
