# utils/pass_template.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Tuple

from .pass_manifest import is_reserved_name
from .pass_models import DESCRIPTOR_NAME, BundleIOError, PassConfig

PLACEHOLDERS = {
    "YOUR_TEAM_ID": "team_identifier",
    "YOUR_PASS_TYPE_ID": "pass_type_identifier",
    "YOUR_ORGANIZATION": "organization_name",
}


def render_descriptor(template_text: str, cfg: PassConfig) -> bytes:
    """
    Substitute PassConfig values into a pass.json template and return the
    exact bytes to ship. The result must still be valid JSON.
    """
    values: Dict[str, str] = cfg.model_dump()
    text = template_text
    for token, field in PLACEHOLDERS.items():
        text = text.replace(token, values[field])
    try:
        json.loads(text)
    except json.JSONDecodeError as e:
        raise BundleIOError(f"rendered {DESCRIPTOR_NAME} is not valid JSON: {e}") from e
    return text.encode("utf-8")


def load_template(template_dir: Path, cfg: PassConfig) -> bytes:
    path = template_dir / DESCRIPTOR_NAME
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise BundleIOError(f"cannot read template {path}: {e}") from e
    return render_descriptor(raw, cfg)


def collect_assets(*asset_dirs: Path) -> List[Tuple[str, bytes]]:
    """
    Regular files directly inside each directory, by name. Later directories
    override earlier ones; pass.json and bundle control files are ignored.
    """
    found: Dict[str, bytes] = {}
    for d in asset_dirs:
        if d is None or not d.is_dir():
            continue
        for p in sorted(d.iterdir()):
            if not p.is_file() or p.name.startswith("."):
                continue
            if p.name == DESCRIPTOR_NAME or is_reserved_name(p.name):
                continue
            try:
                found[p.name] = p.read_bytes()
            except OSError as e:
                raise BundleIOError(f"cannot read asset {p}: {e}") from e
    return sorted(found.items())


__all__ = [
    "PLACEHOLDERS",
    "collect_assets",
    "load_template",
    "render_descriptor",
]
