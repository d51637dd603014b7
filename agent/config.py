# agent/config.py
from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from utils.pass_models import PassConfig, SigningPaths


@dataclass
class AgentSection:
    poll_interval_sec: int = 5
    settle_seconds: int = 2


@dataclass
class VerifySection:
    trusted_root: Optional[Path] = None
    hash_alg: str = "sha1"


@dataclass
class SenderPaths:
    templates_dir: Path
    out_dir: Path
    state_file: Path
    assets_dir: Optional[Path] = None


@dataclass
class ReceiverPaths:
    incoming_dir: Path
    verified_root: Path
    quarantine_dir: Path
    state_file: Path


@dataclass
class AgentConfig:
    mode: str
    agent: AgentSection
    verify: VerifySection
    pass_config: Optional[PassConfig] = None
    signing: Optional[SigningPaths] = None
    sender_paths: Optional[SenderPaths] = None
    receiver_paths: Optional[ReceiverPaths] = None
    log_level: str = "INFO"


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    val = data.get(key) or {}
    if not isinstance(val, dict):
        raise ValueError(f"[{key}] must be a table")
    return val


def _path(base: Path, raw: Any, key: str) -> Path:
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError(f"{key} must be a non-empty path string")
    p = Path(raw).expanduser()
    return p if p.is_absolute() else (base / p)


def _opt_path(base: Path, raw: Any, key: str) -> Optional[Path]:
    if raw is None:
        return None
    return _path(base, raw, key)


def load_config(path: Path) -> AgentConfig:
    """
    Load agent TOML. Relative paths resolve against the config file's
    directory. The key password is read from the environment variable named
    by [signing] key_password_env, never stored in the file.
    """
    base = path.parent
    with path.open("rb") as f:
        data = tomllib.load(f)

    mode = data.get("mode")
    if mode not in ("sender", "receiver"):
        raise ValueError(f"mode must be 'sender' or 'receiver', got {mode!r}")

    agent_raw = _section(data, "agent")
    agent = AgentSection(
        poll_interval_sec=int(agent_raw.get("poll_interval_sec", 5)),
        settle_seconds=int(agent_raw.get("settle_seconds", 2)),
    )

    verify_raw = _section(data, "verify")
    verify = VerifySection(
        trusted_root=_opt_path(base, verify_raw.get("trusted_root"), "verify.trusted_root"),
        hash_alg=str(verify_raw.get("hash_alg", "sha1")),
    )
    if verify.hash_alg not in ("sha1", "sha256"):
        raise ValueError(f"verify.hash_alg must be sha1 or sha256, got {verify.hash_alg!r}")

    log_level = str(_section(data, "logging").get("level", "INFO"))

    cfg = AgentConfig(mode=mode, agent=agent, verify=verify, log_level=log_level)

    if mode == "sender":
        pass_raw = _section(data, "pass")
        cfg.pass_config = PassConfig(
            team_identifier=pass_raw.get("team_identifier", ""),
            pass_type_identifier=pass_raw.get("pass_type_identifier", ""),
            organization_name=pass_raw.get("organization_name", ""),
        )

        signing_raw = _section(data, "signing")
        password_env = signing_raw.get("key_password_env")
        cfg.signing = SigningPaths(
            cert_path=_path(base, signing_raw.get("cert"), "signing.cert"),
            key_path=_path(base, signing_raw.get("key"), "signing.key"),
            intermediate_path=_path(base, signing_raw.get("intermediate"), "signing.intermediate"),
            key_password=os.environ.get(password_env) if password_env else None,
        )

        paths_raw = _section(_section(data, "sender"), "paths")
        cfg.sender_paths = SenderPaths(
            templates_dir=_path(base, paths_raw.get("templates_dir"), "sender.paths.templates_dir"),
            out_dir=_path(base, paths_raw.get("out_dir"), "sender.paths.out_dir"),
            state_file=_path(base, paths_raw.get("state_file"), "sender.paths.state_file"),
            assets_dir=_opt_path(base, paths_raw.get("assets_dir"), "sender.paths.assets_dir"),
        )
    else:
        if verify.trusted_root is None:
            raise ValueError("receiver mode requires [verify] trusted_root")
        paths_raw = _section(_section(data, "receiver"), "paths")
        cfg.receiver_paths = ReceiverPaths(
            incoming_dir=_path(base, paths_raw.get("incoming_dir"), "receiver.paths.incoming_dir"),
            verified_root=_path(base, paths_raw.get("verified_root"), "receiver.paths.verified_root"),
            quarantine_dir=_path(base, paths_raw.get("quarantine_dir"), "receiver.paths.quarantine_dir"),
            state_file=_path(base, paths_raw.get("state_file"), "receiver.paths.state_file"),
        )

    return cfg
