# utils/bundle_packer.py
"""
Stage, seal and archive a pass bundle.

Pipeline for one bundle:
  1. write pass.json + assets into a private staging directory
  2. hash every staged file into manifest.json
  3. sign manifest.json bytes into signature
  4. zip the staging directory to a unique sibling temp file and rename over <out>

The staging directory is named after the bundle id and removed on every
exit path, so independent builds never share files.
"""
from __future__ import annotations

import contextlib
import hashlib
import io
import logging
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Tuple, Union

from .pass_manifest import (
    DEFAULT_HASH_ALG,
    build_manifest_from_dir,
    check_member_name,
    is_reserved_name,
    write_manifest,
)
from .pass_models import DESCRIPTOR_NAME, SIGNATURE_NAME, BundleIOError, SigningError
from .pass_signer import SigningIdentity, sign_manifest

logger = logging.getLogger(__name__)

FIXED_TIME = (1980, 1, 1, 0, 0, 0)


def compute_bundle_id(entries: Iterable[Tuple[str, bytes]]) -> str:
    """
    Stable bundle id over arcname + sha256(content).
    """
    h = hashlib.sha256()
    for name, data in sorted(entries, key=lambda x: x[0]):
        h.update(name.encode("utf-8"))
        h.update(hashlib.sha256(data).digest())
    return h.hexdigest()[:16]


@contextlib.contextmanager
def staging_dir(bundle_id: str, prefix: str = "pkpass") -> Iterator[Path]:
    path = Path(tempfile.mkdtemp(prefix=f"{prefix}-{bundle_id}-"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def stage_files(staging: Path, descriptor: bytes, assets: Iterable[Tuple[str, bytes]]) -> None:
    """Write pass.json and assets into staging. Reserved or duplicate names are refused."""
    (staging / DESCRIPTOR_NAME).write_bytes(descriptor)
    seen = {DESCRIPTOR_NAME}
    for name, data in assets:
        check_member_name(name)
        if is_reserved_name(name) or name == DESCRIPTOR_NAME:
            raise BundleIOError(f"asset name collides with a bundle control file: {name}")
        if name in seen:
            raise BundleIOError(f"duplicate asset name: {name}")
        seen.add(name)
        (staging / name).write_bytes(data)


def seal_staging(staging: Path, identity: SigningIdentity, hash_alg: str = DEFAULT_HASH_ALG) -> bytes:
    """Write manifest.json and signature into staging; return the signature bytes."""
    manifest = build_manifest_from_dir(staging, hash_alg)
    mbytes = write_manifest(staging, manifest)

    signature = sign_manifest(mbytes, identity)
    sig_path = staging / SIGNATURE_NAME
    sig_path.write_bytes(signature)

    written = sig_path.stat().st_size
    if written != len(signature) or written == 0:
        raise SigningError(
            f"signature on disk is {written} bytes, expected {len(signature)}"
        )
    logger.info(
        "event=bundle_sealed files=%d hash_alg=%s signature_bytes=%d",
        len(manifest),
        hash_alg,
        written,
    )
    return signature


def _staged_entries(staging: Path) -> List[Tuple[str, Path]]:
    return [(p.name, p) for p in sorted(staging.iterdir()) if p.is_file()]


def _write_zip(staging: Path, fileobj: Union[str, os.PathLike, BinaryIO]) -> None:
    with zipfile.ZipFile(fileobj, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as z:
        for name, path in _staged_entries(staging):
            info = zipfile.ZipInfo(filename=name, date_time=FIXED_TIME)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.create_system = 0
            info.external_attr = 0
            z.writestr(info, path.read_bytes())


def package_bundle(staging: Path, out_path: Path) -> Path:
    """
    Archive every staged file into out_path. The archive is written to a
    uniquely named sibling .tmp file first and only renamed into place once
    complete, so concurrent writers of the same output never share it.
    """
    tmp_path = None
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=out_path.parent, prefix=f".{out_path.name}.", suffix=".tmp"
        )
        os.close(fd)
        tmp_path = Path(tmp_name)
        _write_zip(staging, tmp_path)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, out_path)
    except OSError as e:
        raise BundleIOError(f"failed to write {out_path}: {e}") from e
    finally:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()
    logger.info("event=bundle_written path=%s size_bytes=%d", out_path, out_path.stat().st_size)
    return out_path


def package_bundle_bytes(staging: Path) -> bytes:
    buf = io.BytesIO()
    _write_zip(staging, buf)
    return buf.getvalue()


def build_bundle(
    descriptor: bytes,
    assets: Iterable[Tuple[str, bytes]],
    identity: SigningIdentity,
    hash_alg: str = DEFAULT_HASH_ALG,
) -> bytes:
    """Build a signed bundle and return the archive bytes."""
    assets = list(assets)
    bid = compute_bundle_id([(DESCRIPTOR_NAME, descriptor), *assets])
    try:
        with staging_dir(bid) as staging:
            stage_files(staging, descriptor, assets)
            seal_staging(staging, identity, hash_alg)
            return package_bundle_bytes(staging)
    except OSError as e:
        raise BundleIOError(f"staging bundle {bid} failed: {e}") from e


def write_bundle(
    descriptor: bytes,
    assets: Iterable[Tuple[str, bytes]],
    identity: SigningIdentity,
    out_path: Path,
    hash_alg: str = DEFAULT_HASH_ALG,
) -> Path:
    """Build a signed bundle and publish it at out_path (overwriting)."""
    assets = list(assets)
    bid = compute_bundle_id([(DESCRIPTOR_NAME, descriptor), *assets])
    try:
        with staging_dir(bid) as staging:
            stage_files(staging, descriptor, assets)
            seal_staging(staging, identity, hash_alg)
            return package_bundle(staging, out_path)
    except OSError as e:
        raise BundleIOError(f"staging bundle {bid} failed: {e}") from e


__all__ = [
    "FIXED_TIME",
    "build_bundle",
    "compute_bundle_id",
    "package_bundle",
    "package_bundle_bytes",
    "seal_staging",
    "stage_files",
    "staging_dir",
    "write_bundle",
]
