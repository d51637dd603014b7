# tests/conftest.py
import datetime
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from utils.pass_models import SigningPaths
from utils.pass_signer import SigningIdentity


@dataclass
class Pki:
    root_key: object
    root_cert: x509.Certificate
    intermediate_key: object
    intermediate_cert: x509.Certificate
    leaf_key: object
    leaf_cert: x509.Certificate

    @property
    def identity(self) -> SigningIdentity:
        return SigningIdentity(
            private_key=self.leaf_key,
            certificate=self.leaf_cert,
            intermediate=self.intermediate_cert,
        )


def _name(cn: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Pass Test"),
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
        ]
    )


def _cert(subject: str, issuer: str, public_key, signing_key, ca: bool) -> x509.Certificate:
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


def _ec_key():
    return ec.generate_private_key(ec.SECP256R1())


def _rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _make_pki(prefix: str = "Test", key_type: str = "ec") -> Pki:
    new_key = _rsa_key if key_type == "rsa" else _ec_key
    root_key = new_key()
    inter_key = new_key()
    leaf_key = new_key()

    root_cn = f"{prefix} Root CA"
    inter_cn = f"{prefix} Intermediate CA"
    root = _cert(root_cn, root_cn, root_key.public_key(), root_key, ca=True)
    inter = _cert(inter_cn, root_cn, inter_key.public_key(), root_key, ca=True)
    leaf = _cert(f"{prefix} Pass Signer", inter_cn, leaf_key.public_key(), inter_key, ca=False)
    return Pki(root_key, root, inter_key, inter, leaf_key, leaf)


def _pem_cert(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def _pem_key(key, password: str | None = None) -> bytes:
    enc = (
        serialization.BestAvailableEncryption(password.encode("utf-8"))
        if password
        else serialization.NoEncryption()
    )
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=enc,
    )


@pytest.fixture(scope="session")
def make_pki() -> Callable[..., Pki]:
    return _make_pki


@pytest.fixture(scope="session")
def pki() -> Pki:
    return _make_pki()


@pytest.fixture(scope="session")
def rsa_pki() -> Pki:
    return _make_pki(prefix="RSA", key_type="rsa")


@pytest.fixture()
def identity(pki: Pki) -> SigningIdentity:
    return pki.identity


@pytest.fixture()
def certs_dir(tmp_path: Path, pki: Pki) -> Path:
    """
    Write the session PKI as the PEM files a build expects:
    signerCert.pem, signerKey.pem, wwdr.pem, plus root.pem as trust anchor.
    """
    d = tmp_path / "certificates"
    d.mkdir()
    (d / "signerCert.pem").write_bytes(_pem_cert(pki.leaf_cert))
    (d / "signerKey.pem").write_bytes(_pem_key(pki.leaf_key))
    (d / "wwdr.pem").write_bytes(_pem_cert(pki.intermediate_cert))
    (d / "root.pem").write_bytes(_pem_cert(pki.root_cert))
    return d


@pytest.fixture()
def signing_paths(certs_dir: Path) -> SigningPaths:
    return SigningPaths(
        cert_path=certs_dir / "signerCert.pem",
        key_path=certs_dir / "signerKey.pem",
        intermediate_path=certs_dir / "wwdr.pem",
    )


@pytest.fixture()
def trusted_root_path(certs_dir: Path) -> Path:
    return certs_dir / "root.pem"


@pytest.fixture()
def write_encrypted_key(pki: Pki) -> Callable[[Path, str], Path]:
    def _write(path: Path, password: str) -> Path:
        path.write_bytes(_pem_key(pki.leaf_key, password))
        return path

    return _write
