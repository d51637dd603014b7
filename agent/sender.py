# agent/sender.py
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

from utils.bundle_packer import write_bundle
from utils.pass_models import DESCRIPTOR_NAME, PassBundleError
from utils.pass_signer import SigningIdentity, load_signing_identity
from utils.pass_template import collect_assets, load_template

from .config import AgentConfig

logger = logging.getLogger(__name__)


@dataclass
class SenderState:
    processed_templates: Dict[str, str]


def load_state(path: Path) -> SenderState:
    if not path.is_file():
        return SenderState(processed_templates={})
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("event=state_unreadable path=%s; starting empty", path)
        return SenderState(processed_templates={})
    processed = data.get("processed_templates") or {}
    if not isinstance(processed, dict):
        processed = {}
    processed_str: Dict[str, str] = {}
    for k, v in processed.items():
        if isinstance(k, str) and isinstance(v, str):
            processed_str[k] = v
    return SenderState(processed_templates=processed_str)


def save_state(path: Path, state: SenderState) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"processed_templates": state.processed_templates}
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, sort_keys=True, indent=2), encoding="utf-8")
    tmp.replace(path)


def _latest_mtime(p: Path) -> float:
    latest = p.stat().st_mtime
    for child in p.rglob("*"):
        try:
            st = child.stat()
        except FileNotFoundError:
            continue
        if st.st_mtime > latest:
            latest = st.st_mtime
    return latest


def is_folder_stable(folder: Path, settle_seconds: int, now: float | None = None) -> bool:
    if now is None:
        now = time.time()
    latest = _latest_mtime(folder)
    return (now - latest) >= settle_seconds


def find_ready_templates(
    templates_dir: Path,
    state: SenderState,
    settle_seconds: int,
    now: float | None = None,
) -> List[Path]:
    """
    One template = one immediate subfolder of templates_dir holding a pass.json.

    Returns template directories that:
      - are not marked 'built' in state
      - have not changed in the last settle_seconds
    """
    ready: List[Path] = []
    if not templates_dir.is_dir():
        return ready

    for child in sorted(templates_dir.iterdir()):
        if not child.is_dir() or not (child / DESCRIPTOR_NAME).is_file():
            continue
        if state.processed_templates.get(child.name) == "built":
            continue
        if not is_folder_stable(child, settle_seconds=settle_seconds, now=now):
            continue
        ready.append(child)
    return ready


def build_pass(
    cfg: AgentConfig,
    template_dir: Path,
    out_dir: Path,
    identity: SigningIdentity,
) -> Path:
    """Render, sign and archive one template into <out_dir>/<template>.pkpass."""
    if cfg.pass_config is None:
        raise RuntimeError("sender mode requires [pass] settings in config")
    descriptor = load_template(template_dir, cfg.pass_config)
    shared = cfg.sender_paths.assets_dir if cfg.sender_paths else None
    assets = collect_assets(shared, template_dir)
    out_path = out_dir / f"{template_dir.name}.pkpass"
    logger.info(
        "event=pass_build_start template=%s assets=%d out=%s",
        template_dir.name,
        len(assets),
        out_path,
    )
    return write_bundle(descriptor, assets, identity, out_path, hash_alg=cfg.verify.hash_alg)


def _build_ready(
    cfg: AgentConfig,
    ready: List[Path],
    out_dir: Path,
    state: SenderState,
    state_path: Path,
) -> None:
    # Key material lives for this batch of templates only.
    try:
        identity = load_signing_identity(cfg.signing)
    except PassBundleError as e:
        logger.error("event=signing_material_error error=%s; retrying next poll", e)
        return

    for template_dir in ready:
        name = template_dir.name
        try:
            out_path = build_pass(cfg, template_dir, out_dir, identity)
        except PassBundleError as e:
            # leave state untouched so the template is retried once fixed
            logger.error("event=pass_build_failed template=%s kind=%s error=%s", name, e.kind, e)
            continue
        logger.info("event=pass_built template=%s path=%s", name, out_path)
        state.processed_templates[name] = "built"
        save_state(state_path, state)


def run_sender_loop(cfg: AgentConfig, once: bool = False) -> None:
    if cfg.sender_paths is None:
        raise RuntimeError("sender mode requires sender_paths in config")
    if cfg.signing is None:
        raise RuntimeError("sender mode requires [signing] paths in config")

    templates_dir = cfg.sender_paths.templates_dir
    out_dir = cfg.sender_paths.out_dir
    state_path = cfg.sender_paths.state_file

    logger.info(
        "event=sender_start templates_dir=%s out_dir=%s state_file=%s",
        templates_dir,
        out_dir,
        state_path,
    )

    state = load_state(state_path)

    while True:
        ready = find_ready_templates(
            templates_dir=templates_dir,
            state=state,
            settle_seconds=cfg.agent.settle_seconds,
            now=time.time(),
        )

        if ready:
            logger.info("event=templates_ready count=%d", len(ready))
            _build_ready(cfg, ready, out_dir, state, state_path)

        if once:
            break

        time.sleep(cfg.agent.poll_interval_sec)
