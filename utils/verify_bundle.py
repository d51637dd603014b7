# utils/verify_bundle.py
"""
Verify a .pkpass bundle before trusting its contents.

Checks, in order (each failing step ends verification):
  1. archive exists and is a zip; members extracted to a private work dir
  2. pass.json, manifest.json and signature present and non-empty
  3. pass.json parses as JSON
  4. every manifest digest matches; every member is listed
  5. no trust anchor -> signature_skipped (manifest-only)
  6. detached signature over manifest.json bytes chains to the trust anchor

Problems with the bundle itself never raise; they come back as a
VerificationResult.
"""
from __future__ import annotations

import json
import logging
import shutil
import tempfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from cryptography import x509

from .pass_manifest import DEFAULT_HASH_ALG, check_manifest, parse_manifest
from .pass_models import (
    DESCRIPTOR_NAME,
    MANIFEST_NAME,
    REQUIRED_MEMBERS,
    SIGNATURE_NAME,
    SigningError,
    VerificationResult,
)
from .pass_signer import load_certificate, verify_manifest_signature

logger = logging.getLogger(__name__)

DESCRIPTOR_SUMMARY_KEYS = (
    "organizationName",
    "description",
    "serialNumber",
    "teamIdentifier",
    "passTypeIdentifier",
)
PLACEHOLDER_TEAM_ID = "YOUR_TEAM_ID"
_ENCRYPTED_FLAG = 0x1

TrustedRoot = Union[x509.Certificate, Path, None]


def _safe_member_path(name: str) -> Optional[PurePosixPath]:
    p = PurePosixPath(name.replace("\\", "/"))
    if p.is_absolute() or ".." in p.parts or not p.parts:
        return None
    return p


def _member_paths(
    z: zipfile.ZipFile,
    result: VerificationResult,
) -> Optional[List[Tuple[zipfile.ZipInfo, PurePosixPath]]]:
    """Vet every member name before anything is written."""
    members: List[Tuple[zipfile.ZipInfo, PurePosixPath]] = []
    seen: Set[PurePosixPath] = set()
    for info in z.infolist():
        if info.is_dir():
            continue
        if info.flag_bits & _ENCRYPTED_FLAG:
            result.fail("structural_failure", f"encrypted member in archive: {info.filename}")
            return None
        rel = _safe_member_path(info.filename)
        if rel is None:
            result.fail("structural_failure", f"unsafe member name in archive: {info.filename!r}")
            return None
        if rel in seen:
            result.fail("structural_failure", f"duplicate member in archive: {info.filename}")
            return None
        seen.add(rel)
        members.append((info, rel))

    # a member may not also be the folder of another member
    for _, rel in members:
        for parent in rel.parents:
            if parent in seen:
                result.fail(
                    "structural_failure",
                    f"member {parent} is both a file and a folder in archive",
                )
                return None
    return members


def _extract(z: zipfile.ZipFile, work_dir: Path, result: VerificationResult) -> bool:
    members = _member_paths(z, result)
    if members is None:
        return False
    for info, rel in members:
        target = work_dir.joinpath(*rel.parts)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(z.read(info))
    result.members = sorted(info.filename for info, _ in members)
    return True


def _read_member(work_dir: Path, name: str) -> Optional[bytes]:
    rel = _safe_member_path(name)
    if rel is None:
        return None
    p = work_dir.joinpath(*rel.parts)
    if not p.is_file():
        return None
    return p.read_bytes()


def _check_required(work_dir: Path, result: VerificationResult) -> bool:
    problems: List[str] = []
    for name in REQUIRED_MEMBERS:
        p = work_dir / name
        if not p.is_file():
            result.missing_members.append(name)
            problems.append(f"{name} is missing")
        elif p.stat().st_size == 0:
            result.missing_members.append(name)
            problems.append(f"{name} is empty")
    if problems:
        result.fail("structural_failure", "; ".join(problems))
        return False
    return True


def _check_descriptor(work_dir: Path, result: VerificationResult) -> bool:
    raw = (work_dir / DESCRIPTOR_NAME).read_bytes()
    try:
        obj: Any = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        result.fail("malformed_descriptor", f"pass.json is not valid JSON: {e}")
        return False

    if isinstance(obj, dict):
        result.descriptor = {k: obj.get(k) for k in DESCRIPTOR_SUMMARY_KEYS}
        if obj.get("teamIdentifier") == PLACEHOLDER_TEAM_ID:
            result.warnings.append("teamIdentifier is still the YOUR_TEAM_ID placeholder")
    return True


def _check_manifest(work_dir: Path, result: VerificationResult, hash_alg: str) -> bool:
    try:
        manifest = parse_manifest((work_dir / MANIFEST_NAME).read_bytes())
    except ValueError as e:
        result.fail("structural_failure", str(e))
        return False

    issues = check_manifest(
        manifest,
        read_member=lambda name: _read_member(work_dir, name),
        member_names=result.members,
        hash_alg=hash_alg,
    )
    result.manifest_issues = issues
    result.manifest_ok = not issues
    if issues:
        files = ", ".join(f"{i.file} ({i.reason})" for i in issues)
        result.fail("manifest_mismatch", f"{len(issues)} manifest problem(s): {files}")
        return False
    return True


def _resolve_root(trusted_root: TrustedRoot) -> Optional[x509.Certificate]:
    if trusted_root is None or isinstance(trusted_root, x509.Certificate):
        return trusted_root
    return load_certificate(Path(trusted_root), "trusted root certificate")


def _copy_verified(work_dir: Path, dest: Path, result: VerificationResult) -> None:
    try:
        shutil.copytree(work_dir, dest, dirs_exist_ok=True)
    except OSError as e:
        result.fail("io_failure", f"failed extracting verified members to {dest}: {e}")


def verify_bundle(
    path: Path,
    trusted_root: TrustedRoot = None,
    hash_alg: str = DEFAULT_HASH_ALG,
    extract_to: Optional[Path] = None,
) -> VerificationResult:
    """
    Verify the bundle at path. When extract_to is given and the bundle is
    valid, the members that were verified are copied there from the work dir.
    """
    result = VerificationResult(bundle_path=str(path))

    if not path.is_file():
        return result.fail("io_failure", "bundle path does not exist or is not a file")

    try:
        root = _resolve_root(trusted_root)
    except SigningError as e:
        return result.fail("io_failure", str(e))

    try:
        with tempfile.TemporaryDirectory(prefix=f"pkpass-verify-{path.stem}-") as tmp:
            work_dir = Path(tmp)
            _verify_in(path, work_dir, root, hash_alg, result)
            if result.ok and extract_to is not None:
                _copy_verified(work_dir, extract_to, result)
    except OSError as e:
        result.fail("io_failure", f"failed reading bundle: {e}")

    logger.info(
        "event=bundle_verified path=%s status=%s kind=%s",
        path,
        result.status,
        result.kind or "-",
    )
    return result


def _verify_in(
    path: Path,
    work_dir: Path,
    root: Optional[x509.Certificate],
    hash_alg: str,
    result: VerificationResult,
) -> None:
    try:
        with zipfile.ZipFile(path, "r") as z:
            if not _extract(z, work_dir, result):
                return
    except (
        zipfile.BadZipFile,
        zipfile.LargeZipFile,
        zlib.error,
        NotImplementedError,
        EOFError,
        RuntimeError,
    ) as e:
        result.fail("structural_failure", f"bad zip file: {e}")
        return

    if not _check_required(work_dir, result):
        return
    if not _check_descriptor(work_dir, result):
        return
    if not _check_manifest(work_dir, result, hash_alg):
        return

    if root is None:
        result.status = "signature_skipped"
        result.kind = "signature_skipped"
        result.detail = "no trusted root supplied; manifest verified, signature not checked"
        return

    ok, err = verify_manifest_signature(
        (work_dir / MANIFEST_NAME).read_bytes(),
        (work_dir / SIGNATURE_NAME).read_bytes(),
        root,
    )
    result.signature_verified = ok
    if ok is not True:
        result.fail("signature_invalid", err or "signature verification failed")
        return

    result.status = "valid"
    result.kind = None
    result.detail = None


def verify_bundle_bytes(
    data: bytes,
    trusted_root: TrustedRoot = None,
    hash_alg: str = DEFAULT_HASH_ALG,
) -> VerificationResult:
    with tempfile.TemporaryDirectory(prefix="pkpass-inbound-") as tmp:
        path = Path(tmp) / "bundle.pkpass"
        path.write_bytes(data)
        result = verify_bundle(path, trusted_root=trusted_root, hash_alg=hash_alg)
    result.bundle_path = "<bytes>"
    return result


def summary_dict(result: VerificationResult) -> Dict[str, Any]:
    out = result.model_dump()
    out["ok"] = result.ok
    return out


__all__ = [
    "summary_dict",
    "verify_bundle",
    "verify_bundle_bytes",
]
