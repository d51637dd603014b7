# agent/receiver.py
from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

from utils.pass_models import VerificationResult
from utils.verify_bundle import verify_bundle

from .config import AgentConfig

logger = logging.getLogger(__name__)

BUNDLE_SUFFIX = ".pkpass"


@dataclass
class ReceiverState:
    processed_bundles: Dict[str, str]


def load_state(path: Path) -> ReceiverState:
    if not path.is_file():
        return ReceiverState(processed_bundles={})
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("event=state_unreadable path=%s; starting empty", path)
        return ReceiverState(processed_bundles={})
    processed = data.get("processed_bundles") or {}
    if not isinstance(processed, dict):
        processed = {}
    processed_str: Dict[str, str] = {}
    for k, v in processed.items():
        if isinstance(k, str) and isinstance(v, str):
            processed_str[k] = v
    return ReceiverState(processed_bundles=processed_str)


def save_state(path: Path, state: ReceiverState) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"processed_bundles": state.processed_bundles}
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, sort_keys=True, indent=2), encoding="utf-8")
    tmp.replace(path)


def is_bundle_stable(bundle_path: Path, settle_seconds: int, now: float | None = None) -> bool:
    if now is None:
        now = time.time()
    return (now - bundle_path.stat().st_mtime) >= settle_seconds


def find_ready_bundles(
    incoming_dir: Path,
    state: ReceiverState,
    settle_seconds: int,
    now: float | None = None,
) -> List[Path]:
    """
    One bundle = one *.pkpass file in incoming_dir.
    """
    ready: List[Path] = []
    processed = state.processed_bundles
    if not incoming_dir.is_dir():
        return ready

    for child in sorted(incoming_dir.iterdir()):
        if not child.is_file() or child.suffix != BUNDLE_SUFFIX:
            continue
        if processed.get(child.name) in ("verified", "quarantined"):
            continue
        if not is_bundle_stable(child, settle_seconds=settle_seconds, now=now):
            continue
        ready.append(child)
    return ready


def check_bundle(cfg: AgentConfig, bundle_path: Path, extract_to: Path | None = None) -> VerificationResult:
    return verify_bundle(
        bundle_path,
        trusted_root=cfg.verify.trusted_root,
        hash_alg=cfg.verify.hash_alg,
        extract_to=extract_to,
    )


def _quarantine(bundle_path: Path, quarantine_dir: Path) -> Path:
    quarantine_dir.mkdir(parents=True, exist_ok=True)
    target = quarantine_dir / bundle_path.name
    os.replace(bundle_path, target)
    return target


def run_receiver_loop(cfg: AgentConfig, once: bool = False) -> None:
    if cfg.receiver_paths is None:
        raise RuntimeError("receiver mode requires receiver_paths in config")

    incoming_dir = cfg.receiver_paths.incoming_dir
    verified_root = cfg.receiver_paths.verified_root
    quarantine_dir = cfg.receiver_paths.quarantine_dir
    state_path = cfg.receiver_paths.state_file

    logger.info(
        "event=receiver_start incoming_dir=%s verified_root=%s quarantine_dir=%s state_file=%s",
        incoming_dir,
        verified_root,
        quarantine_dir,
        state_path,
    )

    state = load_state(state_path)

    while True:
        ready = find_ready_bundles(
            incoming_dir=incoming_dir,
            state=state,
            settle_seconds=cfg.agent.settle_seconds,
            now=time.time(),
        )

        if ready:
            logger.info("event=bundles_ready count=%d", len(ready))

        for bundle_path in ready:
            name = bundle_path.name
            dest = verified_root / bundle_path.stem
            # members are copied out of the verifier's own extraction
            result = check_bundle(cfg, bundle_path, extract_to=dest)

            if result.ok:
                logger.info("event=bundle_verified name=%s extracted_to=%s", name, dest)
                state.processed_bundles[name] = "verified"
                save_state(state_path, state)
            elif result.kind == "io_failure":
                # env problem, not a verdict on the bundle: retry next poll
                logger.warning(
                    "event=bundle_io_failure name=%s detail=%s; leaving in place for retry",
                    name,
                    result.detail,
                )
            else:
                try:
                    target = _quarantine(bundle_path, quarantine_dir)
                except OSError as e:
                    logger.warning(
                        "event=bundle_quarantine_failed name=%s kind=%s error=%s; retrying next poll",
                        name,
                        result.kind,
                        e,
                    )
                    continue
                logger.warning(
                    "event=bundle_quarantined name=%s kind=%s detail=%s moved_to=%s",
                    name,
                    result.kind,
                    result.detail,
                    target,
                )
                state.processed_bundles[name] = "quarantined"
                save_state(state_path, state)

        if once:
            break

        time.sleep(cfg.agent.poll_interval_sec)
