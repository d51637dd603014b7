# utils/pass_signer.py
"""
Detached CMS (PKCS#7) signatures over manifest.json.

Signing goes through cryptography's PKCS7SignatureBuilder. cryptography has
no public API for checking a PKCS#7 signature, so verification parses the
SignedData with asn1crypto and checks each piece (message digest, signer
signature, certificate chain) with cryptography primitives. Every check
reports through an explicit (ok, error) tuple.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from asn1crypto import cms, core
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs7

from .pass_models import SigningError, SigningPaths

logger = logging.getLogger(__name__)

_HASHES = {
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

MAX_CHAIN_DEPTH = 8


@dataclass
class SigningIdentity:
    private_key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey
    certificate: x509.Certificate
    intermediate: x509.Certificate


# ---------------------------
# Loading signing material
# ---------------------------

def _read_artifact(path: Path, label: str) -> bytes:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise SigningError(f"{label} unreadable at {path}: {e}") from e
    if not data.strip():
        raise SigningError(f"{label} is empty at {path} (expected PEM data, got 0 bytes)")
    return data


def load_certificate(path: Path, label: str = "certificate") -> x509.Certificate:
    data = _read_artifact(path, label)
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        pass
    try:
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise SigningError(f"{label} at {path} is not a PEM or DER certificate: {e}") from e


def load_signing_identity(paths: SigningPaths) -> SigningIdentity:
    cert = load_certificate(paths.cert_path, "signer certificate")
    intermediate = load_certificate(paths.intermediate_path, "intermediate certificate")

    key_data = _read_artifact(paths.key_path, "private key")
    password = paths.key_password.encode("utf-8") if paths.key_password else None
    try:
        key = serialization.load_pem_private_key(key_data, password=password)
    except (ValueError, TypeError) as e:
        raise SigningError(f"private key at {paths.key_path} could not be loaded: {e}") from e

    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise SigningError(
            f"private key at {paths.key_path} is {type(key).__name__}; expected RSA or EC"
        )
    if key.public_key().public_numbers() != cert.public_key().public_numbers():
        raise SigningError(
            f"private key at {paths.key_path} does not match signer certificate {paths.cert_path}"
        )

    logger.debug(
        "event=signing_identity_loaded subject=%s intermediate=%s",
        cert.subject.rfc4514_string(),
        intermediate.subject.rfc4514_string(),
    )
    return SigningIdentity(private_key=key, certificate=cert, intermediate=intermediate)


# ---------------------------
# Signing
# ---------------------------

def sign_manifest(manifest_bytes: bytes, identity: SigningIdentity) -> bytes:
    """
    Return DER-encoded detached SignedData over manifest_bytes.

    Binary keeps the bytes exactly as given; without it line endings are
    rewritten before hashing and the signature no longer covers the file.
    """
    try:
        signature = (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(manifest_bytes)
            .add_signer(identity.certificate, identity.private_key, hashes.SHA256())
            .add_certificate(identity.intermediate)
            .sign(
                serialization.Encoding.DER,
                [pkcs7.PKCS7Options.DetachedSignature, pkcs7.PKCS7Options.Binary],
            )
        )
    except (ValueError, TypeError) as e:
        raise SigningError(f"signing manifest.json failed: {e}") from e

    if not signature:
        raise SigningError(
            f"signing produced an empty signature (expected >0 bytes, got {len(signature)})"
        )
    logger.debug("event=manifest_signed size_bytes=%d", len(signature))
    return signature


# ---------------------------
# Verification
# ---------------------------

def _embedded_certificates(signed_data: cms.SignedData) -> List[Tuple[object, x509.Certificate]]:
    out: List[Tuple[object, x509.Certificate]] = []
    if isinstance(signed_data["certificates"], core.Void):
        return out
    for choice in signed_data["certificates"]:
        if choice.name != "certificate":
            continue
        out.append((choice.chosen, x509.load_der_x509_certificate(choice.chosen.dump())))
    return out


def _find_signer_cert(
    signer_info: cms.SignerInfo,
    certs: List[Tuple[object, x509.Certificate]],
) -> Optional[x509.Certificate]:
    sid = signer_info["sid"]
    for asn_cert, cert in certs:
        if sid.name == "issuer_and_serial_number":
            ias = sid.chosen
            if (
                asn_cert.serial_number == ias["serial_number"].native
                and asn_cert.issuer == ias["issuer"]
            ):
                return cert
        elif sid.name == "subject_key_identifier":
            if asn_cert.key_identifier == sid.chosen.native:
                return cert
    return None


def _check_signed_attrs(
    signer_info: cms.SignerInfo,
    content: bytes,
    digest_alg: str,
) -> Tuple[bool, Optional[str]]:
    signed_attrs = signer_info["signed_attrs"]
    digest = hashlib.new(digest_alg, content).digest()

    message_digest = None
    content_type = None
    for attr in signed_attrs:
        attr_type = attr["type"].native
        if attr_type == "message_digest":
            message_digest = attr["values"][0].native
        elif attr_type == "content_type":
            content_type = attr["values"][0].native

    if content_type != "data":
        return False, f"signed content-type is {content_type!r}, expected 'data'"
    if message_digest is None:
        return False, "signed attributes missing message-digest"
    if message_digest != digest:
        return False, "message-digest does not match manifest.json bytes"
    return True, None


def _check_signer_signature(
    cert: x509.Certificate,
    signature: bytes,
    signed_bytes: bytes,
    digest_alg: str,
    sig_alg: str,
) -> Tuple[bool, Optional[str]]:
    hash_cls = _HASHES[digest_alg]
    public_key = cert.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            if sig_alg == "rsassa_pss":
                return False, "RSASSA-PSS signer signatures are not supported"
            public_key.verify(signature, signed_bytes, padding.PKCS1v15(), hash_cls())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, signed_bytes, ec.ECDSA(hash_cls()))
        else:
            return False, f"unsupported signer key type {type(public_key).__name__}"
    except InvalidSignature:
        return False, "signer signature verification failed"
    return True, None


def _check_chain(
    leaf: x509.Certificate,
    pool: List[x509.Certificate],
    trusted_root: x509.Certificate,
) -> Tuple[bool, Optional[str]]:
    """
    Walk leaf -> embedded intermediates -> trusted_root, checking each
    signature with verify_directly_issued_by. Validity periods and
    extensions are not evaluated.
    """
    current = leaf
    for _ in range(MAX_CHAIN_DEPTH):
        if current == trusted_root:
            return True, None
        if current.issuer == trusted_root.subject:
            try:
                current.verify_directly_issued_by(trusted_root)
            except (ValueError, TypeError, InvalidSignature) as e:
                return False, f"certificate {current.subject.rfc4514_string()} not issued by trusted root: {e!s}"
            return True, None
        issuer = next(
            (c for c in pool if c != current and c.subject == current.issuer),
            None,
        )
        if issuer is None:
            return False, (
                f"no certificate chain from {leaf.subject.rfc4514_string()} "
                f"to trusted root {trusted_root.subject.rfc4514_string()}"
            )
        try:
            current.verify_directly_issued_by(issuer)
        except (ValueError, TypeError, InvalidSignature) as e:
            return False, f"certificate {current.subject.rfc4514_string()} has a bad issuer signature: {e!s}"
        current = issuer
    return False, f"certificate chain longer than {MAX_CHAIN_DEPTH}"


def verify_manifest_signature(
    manifest_bytes: bytes,
    signature_der: bytes,
    trusted_root: x509.Certificate,
) -> Tuple[bool, Optional[str]]:
    """
    Verify a detached SignedData over manifest_bytes.

    Returns:
      (True, None)   -> every signer verified and chains to trusted_root
      (False, err)   -> anything else
    """
    try:
        content_info = cms.ContentInfo.load(signature_der)
        if content_info["content_type"].native != "signed_data":
            return False, f"signature is {content_info['content_type'].native!r}, expected signed_data"
        signed_data = content_info["content"]
        encap = signed_data["encap_content_info"]
        embedded = encap["content"].native
        signer_infos = list(signed_data["signer_infos"])
        certs = _embedded_certificates(signed_data)
    except (ValueError, TypeError, KeyError) as e:
        return False, f"signature is not a DER CMS SignedData structure: {e!s}"

    if embedded is not None and embedded != manifest_bytes:
        return False, "signature embeds content that differs from manifest.json"
    if not signer_infos:
        return False, "signature contains no signers"

    pool = [c for _, c in certs]
    for signer_info in signer_infos:
        try:
            ok, err = _verify_signer(signer_info, certs, pool, manifest_bytes, trusted_root)
        except (ValueError, TypeError, KeyError) as e:
            return False, f"malformed signer info: {e!s}"
        if not ok:
            return False, err

    return True, None


def _verify_signer(
    signer_info: cms.SignerInfo,
    certs: List[Tuple[object, x509.Certificate]],
    pool: List[x509.Certificate],
    manifest_bytes: bytes,
    trusted_root: x509.Certificate,
) -> Tuple[bool, Optional[str]]:
    digest_alg = signer_info["digest_algorithm"]["algorithm"].native
    if digest_alg not in _HASHES:
        return False, f"unsupported digest algorithm {digest_alg!r}"
    sig_alg = signer_info["signature_algorithm"]["algorithm"].native

    cert = _find_signer_cert(signer_info, certs)
    if cert is None:
        return False, "signer certificate not embedded in signature"

    if isinstance(signer_info["signed_attrs"], core.Void):
        signed_bytes = manifest_bytes
    else:
        ok, err = _check_signed_attrs(signer_info, manifest_bytes, digest_alg)
        if not ok:
            return False, err
        # Signed attributes are signed as an explicit SET OF, not as the
        # [0] IMPLICIT field they are stored in.
        signed_bytes = b"\x31" + signer_info["signed_attrs"].dump()[1:]

    ok, err = _check_signer_signature(
        cert, signer_info["signature"].native, signed_bytes, digest_alg, sig_alg
    )
    if not ok:
        return False, err

    return _check_chain(cert, pool, trusted_root)


__all__ = [
    "SigningIdentity",
    "load_certificate",
    "load_signing_identity",
    "sign_manifest",
    "verify_manifest_signature",
]
