# utils/pass_models.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


DESCRIPTOR_NAME = "pass.json"
MANIFEST_NAME = "manifest.json"
SIGNATURE_NAME = "signature"

REQUIRED_MEMBERS = (DESCRIPTOR_NAME, MANIFEST_NAME, SIGNATURE_NAME)

HashAlg = Literal["sha1", "sha256"]

FailureKind = Literal[
    "io_failure",
    "signing_failure",
    "structural_failure",
    "malformed_descriptor",
    "manifest_mismatch",
    "signature_invalid",
    "signature_skipped",
]


class PassBundleError(RuntimeError):
    """Base class for packaging-side failures."""

    kind: FailureKind = "io_failure"


class BundleIOError(PassBundleError):
    kind: FailureKind = "io_failure"


class SigningError(PassBundleError):
    kind: FailureKind = "signing_failure"


class PassConfig(BaseModel):
    """
    Values substituted into a pass.json template.

    Callers resolve env/CLI/config themselves and hand a finished object in;
    nothing below the CLI reads the process environment.
    """

    team_identifier: str = Field(..., min_length=1, description="Apple developer team id, e.g. '5A984FTAG3'")
    pass_type_identifier: str = Field(..., min_length=1, description="Pass type id, e.g. 'pass.com.example.lift'")
    organization_name: str = Field(..., min_length=1, description="Organization name shown on the pass")


class SigningPaths(BaseModel):
    cert_path: Path = Field(..., description="PEM leaf (signer) certificate")
    key_path: Path = Field(..., description="PEM private key for the leaf certificate")
    intermediate_path: Path = Field(..., description="PEM intermediate certificate (e.g. Apple WWDR)")
    key_password: Optional[str] = Field(None, description="Private key password, if encrypted")


class ManifestIssue(BaseModel):
    file: str
    reason: Literal["missing_from_bundle", "hash_mismatch", "missing_from_manifest", "invalid_entry"]
    expected: Optional[str] = None
    actual: Optional[str] = None


class VerificationResult(BaseModel):
    """
    Outcome of verifying one bundle.

    status is "valid" only when every check passed, including the signature.
    "signature_skipped" means the manifest checked out but no trust anchor
    was supplied, so the signature was never looked at.
    """

    bundle_path: str
    status: Literal["valid", "invalid", "signature_skipped"] = "invalid"
    kind: Optional[FailureKind] = None
    detail: Optional[str] = None

    members: List[str] = Field(default_factory=list)
    missing_members: List[str] = Field(default_factory=list)

    descriptor: Dict[str, Any] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)

    manifest_ok: Optional[bool] = None
    manifest_issues: List[ManifestIssue] = Field(default_factory=list)

    signature_verified: Optional[bool] = None

    @property
    def ok(self) -> bool:
        return self.status == "valid"

    def fail(self, kind: FailureKind, detail: str) -> "VerificationResult":
        self.status = "invalid"
        self.kind = kind
        self.detail = detail
        return self


__all__ = [
    "BundleIOError",
    "DESCRIPTOR_NAME",
    "FailureKind",
    "HashAlg",
    "MANIFEST_NAME",
    "ManifestIssue",
    "PassBundleError",
    "PassConfig",
    "REQUIRED_MEMBERS",
    "SIGNATURE_NAME",
    "SigningError",
    "SigningPaths",
    "VerificationResult",
]
