# tests/agent/test_sender_receiver.py
import json
import os
import zipfile
from pathlib import Path

import pytest

from agent import receiver, sender
from agent.config import (
    AgentConfig,
    AgentSection,
    ReceiverPaths,
    SenderPaths,
    VerifySection,
)
from agent.receiver import ReceiverState
from agent.sender import SenderState
from utils.bundle_packer import write_bundle
from utils.pass_models import PassConfig, SigningError, SigningPaths, VerificationResult

TEMPLATE = json.dumps(
    {
        "teamIdentifier": "YOUR_TEAM_ID",
        "passTypeIdentifier": "YOUR_PASS_TYPE_ID",
        "organizationName": "YOUR_ORGANIZATION",
        "serialNumber": "123",
    }
)


def _pass_config() -> PassConfig:
    return PassConfig(
        team_identifier="5A984FTAG3",
        pass_type_identifier="pass.com.acme.lift",
        organization_name="Acme",
    )


def _sender_cfg(tmp_path: Path, signing: SigningPaths, assets_dir: Path | None = None) -> AgentConfig:
    return AgentConfig(
        mode="sender",
        agent=AgentSection(poll_interval_sec=1, settle_seconds=0),
        verify=VerifySection(),
        pass_config=_pass_config(),
        signing=signing,
        sender_paths=SenderPaths(
            templates_dir=tmp_path / "templates",
            out_dir=tmp_path / "out",
            state_file=tmp_path / "sender_state.json",
            assets_dir=assets_dir,
        ),
    )


def _receiver_cfg(tmp_path: Path, trusted_root: Path) -> AgentConfig:
    return AgentConfig(
        mode="receiver",
        agent=AgentSection(poll_interval_sec=1, settle_seconds=0),
        verify=VerifySection(trusted_root=trusted_root),
        receiver_paths=ReceiverPaths(
            incoming_dir=tmp_path / "incoming",
            verified_root=tmp_path / "verified",
            quarantine_dir=tmp_path / "quarantine",
            state_file=tmp_path / "receiver_state.json",
        ),
    )


def _make_template(templates_dir: Path, name: str) -> Path:
    t = templates_dir / name
    t.mkdir(parents=True)
    (t / "pass.json").write_text(TEMPLATE, encoding="utf-8")
    return t


def test_find_ready_templates_respects_state_and_settle(tmp_path: Path) -> None:
    templates = tmp_path / "templates"
    built = _make_template(templates, "built")
    fresh = _make_template(templates, "fresh")
    ready_one = _make_template(templates, "ready")
    (templates / "no-descriptor").mkdir()

    older = 1_000_000.0
    newer = older + 8.0
    for t in (built, ready_one):
        os.utime(t / "pass.json", (older, older))
        os.utime(t, (older, older))
    os.utime(fresh / "pass.json", (newer, newer))
    os.utime(templates / "no-descriptor", (older, older))

    state = SenderState(processed_templates={"built": "built"})

    ready = sender.find_ready_templates(
        templates_dir=templates,
        state=state,
        settle_seconds=5,
        now=older + 10.0,
    )

    assert [p.name for p in ready] == ["ready"]


def test_find_ready_bundles_respects_state_and_suffix(tmp_path: Path) -> None:
    incoming = tmp_path / "incoming"
    incoming.mkdir()

    good = incoming / "good.pkpass"
    other = incoming / "random.zip"
    done = incoming / "done.pkpass"
    for p in (good, other, done):
        p.write_bytes(b"123")

    older = 1_000_000.0
    os.utime(good, (older, older))
    os.utime(done, (older, older))

    state = ReceiverState(processed_bundles={"done.pkpass": "verified"})

    ready = receiver.find_ready_bundles(
        incoming_dir=incoming,
        state=state,
        settle_seconds=5,
        now=older + 10.0,
    )

    assert [p.name for p in ready] == ["good.pkpass"]


def test_state_roundtrip_and_corrupt_state(tmp_path: Path) -> None:
    sender_path = tmp_path / "sender_state.json"
    sender.save_state(sender_path, SenderState(processed_templates={"a": "built"}))
    assert sender.load_state(sender_path).processed_templates == {"a": "built"}

    receiver_path = tmp_path / "receiver_state.json"
    receiver.save_state(receiver_path, ReceiverState(processed_bundles={"b.pkpass": "quarantined"}))
    assert receiver.load_state(receiver_path).processed_bundles == {"b.pkpass": "quarantined"}

    receiver_path.write_text("{not json", encoding="utf-8")
    assert receiver.load_state(receiver_path).processed_bundles == {}
    assert not list(tmp_path.glob("*.tmp"))


def test_sender_once_builds_signed_pass(tmp_path: Path, signing_paths: SigningPaths, pki) -> None:
    shared = tmp_path / "shared"
    shared.mkdir()
    (shared / "icon.png").write_bytes(b"shared-icon")
    (shared / "logo.png").write_bytes(b"shared-logo")

    template = _make_template(tmp_path / "templates", "lift")
    (template / "icon.png").write_bytes(b"lift-icon")

    cfg = _sender_cfg(tmp_path, signing_paths, assets_dir=shared)
    sender.run_sender_loop(cfg, once=True)

    out = tmp_path / "out" / "lift.pkpass"
    assert out.is_file()
    with zipfile.ZipFile(out) as z:
        assert z.read("icon.png") == b"lift-icon"
        assert z.read("logo.png") == b"shared-logo"
        assert json.loads(z.read("pass.json"))["organizationName"] == "Acme"

    assert sender.load_state(cfg.sender_paths.state_file).processed_templates == {"lift": "built"}

    # second pass finds nothing new
    sender.run_sender_loop(cfg, once=True)
    assert sender.load_state(cfg.sender_paths.state_file).processed_templates == {"lift": "built"}


def test_sender_does_not_mark_state_on_build_error(
    tmp_path: Path, signing_paths: SigningPaths, monkeypatch: pytest.MonkeyPatch
) -> None:
    _make_template(tmp_path / "templates", "lift")
    cfg = _sender_cfg(tmp_path, signing_paths)

    def fake_build_pass(_cfg, _template_dir, _out_dir, _identity):
        raise SigningError("signing manifest.json failed: boom")

    monkeypatch.setattr(sender, "build_pass", fake_build_pass)
    sender.run_sender_loop(cfg, once=True)

    assert sender.load_state(cfg.sender_paths.state_file).processed_templates == {}
    assert not (tmp_path / "out" / "lift.pkpass").exists()


def test_sender_skips_batch_when_signing_material_missing(
    tmp_path: Path, signing_paths: SigningPaths, monkeypatch: pytest.MonkeyPatch
) -> None:
    _make_template(tmp_path / "templates", "lift")
    signing_paths.key_path.unlink()
    cfg = _sender_cfg(tmp_path, signing_paths)

    calls = []
    monkeypatch.setattr(sender, "build_pass", lambda *a: calls.append(a))

    sender.run_sender_loop(cfg, once=True)

    assert calls == []
    assert sender.load_state(cfg.sender_paths.state_file).processed_templates == {}


def test_receiver_once_verifies_and_extracts(tmp_path: Path, identity, trusted_root_path: Path) -> None:
    cfg = _receiver_cfg(tmp_path, trusted_root_path)
    bundle = write_bundle(
        b'{"serialNumber":"1"}',
        [("icon.png", b"icon")],
        identity,
        cfg.receiver_paths.incoming_dir / "lift.pkpass",
    )

    receiver.run_receiver_loop(cfg, once=True)

    dest = tmp_path / "verified" / "lift"
    assert (dest / "icon.png").read_bytes() == b"icon"
    assert (dest / "signature").is_file()
    assert bundle.exists()
    assert receiver.load_state(cfg.receiver_paths.state_file).processed_bundles == {
        "lift.pkpass": "verified"
    }


def test_receiver_quarantines_tampered_bundle(tmp_path: Path, identity, trusted_root_path: Path) -> None:
    cfg = _receiver_cfg(tmp_path, trusted_root_path)
    bad = _tampered_bundle(tmp_path, identity, cfg.receiver_paths.incoming_dir)

    receiver.run_receiver_loop(cfg, once=True)

    assert not bad.exists()
    assert (tmp_path / "quarantine" / "bad.pkpass").is_file()
    assert not (tmp_path / "verified" / "bad").exists()
    assert receiver.load_state(cfg.receiver_paths.state_file).processed_bundles == {
        "bad.pkpass": "quarantined"
    }


def test_receiver_leaves_io_failures_in_place(
    tmp_path: Path, trusted_root_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    cfg = _receiver_cfg(tmp_path, trusted_root_path)
    incoming = cfg.receiver_paths.incoming_dir
    incoming.mkdir(parents=True)
    bundle = incoming / "flaky.pkpass"
    bundle.write_bytes(b"whatever")

    def fake_check(_cfg, path: Path, extract_to: Path | None = None) -> VerificationResult:
        return VerificationResult(bundle_path=str(path)).fail("io_failure", "disk went away")

    monkeypatch.setattr(receiver, "check_bundle", fake_check)
    receiver.run_receiver_loop(cfg, once=True)

    assert bundle.exists()
    assert not (tmp_path / "quarantine").exists()
    assert receiver.load_state(cfg.receiver_paths.state_file).processed_bundles == {}


def _tampered_bundle(tmp_path: Path, identity, incoming: Path) -> Path:
    good = write_bundle(b'{"serialNumber":"1"}', [("icon.png", b"icon")], identity, tmp_path / "good.pkpass")
    incoming.mkdir(parents=True, exist_ok=True)
    bad = incoming / "bad.pkpass"
    with zipfile.ZipFile(good) as zin, zipfile.ZipFile(bad, "w") as zout:
        for info in zin.infolist():
            data = b"swapped" if info.filename == "icon.png" else zin.read(info)
            zout.writestr(info.filename, data)
    return bad


def test_receiver_extract_failure_leaves_bundle_for_retry(
    tmp_path: Path, identity, trusted_root_path: Path
) -> None:
    cfg = _receiver_cfg(tmp_path, trusted_root_path)
    bundle = write_bundle(
        b'{"serialNumber":"1"}',
        [("icon.png", b"icon")],
        identity,
        cfg.receiver_paths.incoming_dir / "lift.pkpass",
    )
    # verified_root is a plain file, so copying the verified members out fails
    cfg.receiver_paths.verified_root.write_bytes(b"not a folder")

    receiver.run_receiver_loop(cfg, once=True)

    assert bundle.exists()
    assert not (tmp_path / "quarantine").exists()
    assert receiver.load_state(cfg.receiver_paths.state_file).processed_bundles == {}


def test_receiver_extracts_the_bytes_it_verified(
    tmp_path: Path, identity, trusted_root_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    cfg = _receiver_cfg(tmp_path, trusted_root_path)
    bundle = write_bundle(
        b'{"serialNumber":"1"}',
        [("icon.png", b"icon")],
        identity,
        cfg.receiver_paths.incoming_dir / "lift.pkpass",
    )
    real_check = receiver.check_bundle

    def check_then_swap(_cfg, path: Path, extract_to: Path | None = None) -> VerificationResult:
        result = real_check(_cfg, path, extract_to=extract_to)
        # the incoming file changes after verification; the extraction must not
        path.write_bytes(b"replaced after verification")
        return result

    monkeypatch.setattr(receiver, "check_bundle", check_then_swap)
    receiver.run_receiver_loop(cfg, once=True)

    dest = tmp_path / "verified" / "lift"
    assert (dest / "icon.png").read_bytes() == b"icon"
    assert bundle.read_bytes() == b"replaced after verification"
    assert receiver.load_state(cfg.receiver_paths.state_file).processed_bundles == {
        "lift.pkpass": "verified"
    }


def test_receiver_survives_failed_quarantine_move(
    tmp_path: Path, identity, trusted_root_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    cfg = _receiver_cfg(tmp_path, trusted_root_path)
    bad = _tampered_bundle(tmp_path, identity, cfg.receiver_paths.incoming_dir)

    def refuse(_bundle_path: Path, _quarantine_dir: Path) -> Path:
        raise PermissionError("read-only quarantine")

    monkeypatch.setattr(receiver, "_quarantine", refuse)
    receiver.run_receiver_loop(cfg, once=True)

    assert bad.exists()
    assert receiver.load_state(cfg.receiver_paths.state_file).processed_bundles == {}
