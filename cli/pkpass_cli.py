#!/usr/bin/env python3
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from agent.config import AgentConfig, load_config as load_agent_config
from agent.receiver import run_receiver_loop
from agent.sender import run_sender_loop
from utils.bundle_packer import write_bundle
from utils.logging_utils import configure_logging
from utils.pass_manifest import SUPPORTED_HASH_ALGS
from utils.pass_models import PassBundleError, PassConfig, SigningPaths
from utils.pass_signer import load_signing_identity
from utils.pass_template import collect_assets, load_template
from utils.verify_bundle import summary_dict, verify_bundle

logger = logging.getLogger(__name__)

DEFAULT_CERT_NAMES = {
    "cert": "signerCert.pem",
    "key": "signerKey.pem",
    "intermediate": "wwdr.pem",
}


# ---------------------------
# pkpass build
# ---------------------------

def _resolve_pass_config(args: argparse.Namespace) -> PassConfig:
    return PassConfig(
        team_identifier=args.team_id or os.environ.get("APPLE_TEAM_ID") or "",
        pass_type_identifier=args.pass_type_id or os.environ.get("PASS_TYPE_IDENTIFIER") or "",
        organization_name=args.org_name or os.environ.get("ORGANIZATION_NAME") or "",
    )


def _resolve_signing_paths(args: argparse.Namespace) -> SigningPaths:
    certs_dir = Path(args.certs_dir).expanduser()
    return SigningPaths(
        cert_path=Path(args.cert).expanduser() if args.cert else certs_dir / DEFAULT_CERT_NAMES["cert"],
        key_path=Path(args.key).expanduser() if args.key else certs_dir / DEFAULT_CERT_NAMES["key"],
        intermediate_path=(
            Path(args.intermediate).expanduser()
            if args.intermediate
            else certs_dir / DEFAULT_CERT_NAMES["intermediate"]
        ),
        key_password=args.key_password or os.environ.get("PKPASS_KEY_PASSWORD"),
    )


def _cmd_build(args: argparse.Namespace) -> int:
    template_dir = Path(args.template_dir).expanduser().resolve()
    if not template_dir.is_dir():
        print(f"❌ template_dir is not a directory: {template_dir}", file=sys.stderr)
        return 2

    try:
        pass_cfg = _resolve_pass_config(args)
    except ValidationError as e:
        print(
            "❌ team id, pass type id and organization name are required "
            f"(flags or APPLE_TEAM_ID / PASS_TYPE_IDENTIFIER / ORGANIZATION_NAME): {e}",
            file=sys.stderr,
        )
        return 2

    out_path = (
        Path(args.out).expanduser().resolve()
        if args.out
        else Path("dist").resolve() / f"{template_dir.name}.pkpass"
    )
    assets_dir = Path(args.assets_dir).expanduser().resolve() if args.assets_dir else None

    try:
        descriptor = load_template(template_dir, pass_cfg)
        assets = collect_assets(assets_dir, template_dir)
        identity = load_signing_identity(_resolve_signing_paths(args))
        bundle_path = write_bundle(descriptor, assets, identity, out_path, hash_alg=args.hash_alg)
    except PassBundleError as e:
        print(f"❌ build failed ({e.kind}): {e}", file=sys.stderr)
        return 2

    print(str(bundle_path))
    return 0


# ---------------------------
# pkpass verify
# ---------------------------

def _print_human(summary: Dict[str, Any]) -> None:
    print(f"Bundle: {summary['bundle_path']}")
    if summary.get("members"):
        print(f"Members: {', '.join(summary['members'])}")

    desc = summary.get("descriptor") or {}
    if any(desc.values()):
        print(
            f"Pass: org={desc.get('organizationName') or '-'} "
            f"serial={desc.get('serialNumber') or '-'} "
            f"team={desc.get('teamIdentifier') or '-'} "
            f"type={desc.get('passTypeIdentifier') or '-'}"
        )
    for w in summary.get("warnings") or []:
        print(f"  warning: {w}")

    manifest_ok = summary.get("manifest_ok")
    if manifest_ok is None:
        print("Manifest: NOT CHECKED")
    else:
        print(f"Manifest: {'OK' if manifest_ok else 'FAIL'}")
    for m in summary.get("manifest_issues") or []:
        line = f"  - {m['reason']}: {m['file']}"
        if m.get("expected"):
            line += f" expected={m['expected']}"
        if m.get("actual"):
            line += f" actual={m['actual']}"
        print(line)

    if summary["status"] == "signature_skipped":
        print("Signature: SKIPPED (no trusted root)")
    elif summary.get("signature_verified") is True:
        print("Signature: OK")
    elif summary.get("kind") == "signature_invalid":
        print("Signature: FAIL")
    else:
        print("Signature: NOT CHECKED")

    if summary.get("detail"):
        print(f"  {summary['kind']}: {summary['detail']}")

    if summary["status"] == "valid":
        print("OK")
    elif summary["status"] == "signature_skipped":
        print("OK (manifest only)")
    else:
        print("FAIL")


def _cmd_verify(args: argparse.Namespace) -> int:
    path = Path(args.bundle).expanduser().resolve()
    trusted_root = Path(args.trusted_root).expanduser().resolve() if args.trusted_root else None

    result = verify_bundle(path, trusted_root=trusted_root, hash_alg=args.hash_alg)
    summary = summary_dict(result)

    if args.json:
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        _print_human(summary)

    if result.ok:
        return 0
    if result.status == "signature_skipped":
        return 1 if args.require_signature else 0
    return 2 if result.kind == "io_failure" else 1


# ---------------------------
# pkpass agent
# ---------------------------

def _cmd_agent(args: argparse.Namespace) -> int:
    cfg_path = Path(args.config).expanduser().resolve()
    try:
        cfg: AgentConfig = load_agent_config(cfg_path)
    except (OSError, ValueError) as e:
        print(f"❌ invalid agent config {cfg_path}: {e}", file=sys.stderr)
        return 2

    configure_logging(args.log_level or cfg.log_level)
    logger.info("event=agent_entrypoint mode=%s config=%s", cfg.mode, cfg_path)
    if cfg.mode == "sender":
        run_sender_loop(cfg, once=args.once)
    else:
        run_receiver_loop(cfg, once=args.once)
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="pkpass", description="Build and verify signed pass bundles")
    parser.add_argument(
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ...; default: WARNING, agent: [logging] level)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # pkpass build
    p_build = subparsers.add_parser("build", help="Render, sign and archive a pass template")
    p_build.add_argument("--template-dir", required=True, help="Folder with pass.json (and optional per-pass assets)")
    p_build.add_argument("--assets-dir", help="Shared assets folder (icons, logos); template files override")
    p_build.add_argument("--out", help="Output .pkpass path (default: dist/<template>.pkpass)")
    p_build.add_argument("--team-id", help="Team identifier (default: $APPLE_TEAM_ID)")
    p_build.add_argument("--pass-type-id", help="Pass type identifier (default: $PASS_TYPE_IDENTIFIER)")
    p_build.add_argument("--org-name", help="Organization name (default: $ORGANIZATION_NAME)")
    p_build.add_argument(
        "--certs-dir",
        default="certificates",
        help="Folder holding signerCert.pem, signerKey.pem, wwdr.pem (default: certificates)",
    )
    p_build.add_argument("--cert", help="Signer certificate PEM (overrides --certs-dir)")
    p_build.add_argument("--key", help="Signer private key PEM (overrides --certs-dir)")
    p_build.add_argument("--intermediate", help="Intermediate certificate PEM (overrides --certs-dir)")
    p_build.add_argument("--key-password", help="Private key password (default: $PKPASS_KEY_PASSWORD)")
    p_build.add_argument("--hash-alg", default="sha1", choices=SUPPORTED_HASH_ALGS, help="Manifest digest (default: sha1)")
    p_build.set_defaults(func=_cmd_build)

    # pkpass verify
    p_verify = subparsers.add_parser("verify", help="Verify a .pkpass bundle")
    p_verify.add_argument("bundle", help="Path to a .pkpass file")
    p_verify.add_argument("--trusted-root", help="PEM trust anchor; without it the signature is skipped")
    p_verify.add_argument(
        "--json",
        action="store_true",
        help="Emit JSON summary instead of human-readable text",
    )
    p_verify.add_argument(
        "--require-signature",
        action="store_true",
        help="Treat a skipped signature check as a failure (exit code 1)",
    )
    p_verify.add_argument("--hash-alg", default="sha1", choices=SUPPORTED_HASH_ALGS, help="Manifest digest (default: sha1)")
    p_verify.set_defaults(func=_cmd_verify)

    # pkpass agent
    p_agent = subparsers.add_parser(
        "agent",
        help="Run the pass agent (sender or receiver) from a config file",
    )
    p_agent.add_argument(
        "--config",
        default="pkpass-agent.toml",
        help="Path to agent config TOML (default: pkpass-agent.toml)",
    )
    p_agent.add_argument(
        "--once",
        action="store_true",
        help="Process ready work once and exit instead of running as a long-lived watcher",
    )
    p_agent.set_defaults(func=_cmd_agent)

    args = parser.parse_args(argv)
    if args.command != "agent":
        configure_logging(args.log_level or "WARNING")
    code = args.func(args)
    sys.exit(code)


if __name__ == "__main__":
    main()
