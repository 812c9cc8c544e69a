import hashlib
import os
import subprocess

import pytest

from forum_launcher.build_cache import (
    BuildDecision,
    BuildRunner,
    CacheRecord,
    decide_build,
    fingerprint,
    manifest_path,
    verify_build_output,
)
from forum_launcher.errors import BuildFailed, BuildTimedOut


@pytest.mark.parametrize(
    "current,stored,force,expected",
    [
        ("aaa", "", False, BuildDecision.UPGRADE),
        ("aaa", "bbb", True, BuildDecision.UPGRADE),
        ("aaa", "aaa", True, BuildDecision.BUILD),
        ("aaa", "aaa", False, BuildDecision.SKIP),
        ("", "", False, BuildDecision.SKIP),
        ("", "aaa", True, BuildDecision.BUILD),
    ],
)
def test_decide_build(current, stored, force, expected):
    assert decide_build(current, stored, force) is expected


def test_fingerprint_is_md5_of_manifest(app_dir):
    manifest = manifest_path(app_dir)
    assert manifest == app_dir / "install" / "package.json"
    assert fingerprint(manifest) == hashlib.md5(manifest.read_bytes()).hexdigest()
    assert fingerprint(None) == ""
    assert fingerprint(app_dir / "missing.json") == ""


def test_manifest_falls_back_to_root_package_json(app_dir):
    (app_dir / "install" / "package.json").unlink()
    assert manifest_path(app_dir) == app_dir / "package.json"


def test_cache_record_roundtrip_without_newline(tmp_path):
    record = CacheRecord.for_config_dir(tmp_path / "config")
    assert record.load() == ""

    record.save("0123abcd")

    assert record.path.name == "install_hash.md5"
    assert record.path.read_bytes() == b"0123abcd"
    assert record.load() == "0123abcd"


def test_upgrade_once_then_skip(app_dir, make_config, fake_run):
    cfg = make_config(START_BUILD="false")
    run = fake_run()

    first = BuildRunner(cfg, run=run).run()
    second = BuildRunner(cfg, run=run).run()

    assert first.decision is BuildDecision.UPGRADE
    assert second.decision is BuildDecision.SKIP
    assert run.commands == [["node", str(app_dir / "nodebb"), "upgrade", f"--config={app_dir / 'config.json'}"]]
    assert CacheRecord.for_config_dir(cfg.config_dir).load() == first.fingerprint


def test_forced_build_when_unchanged(app_dir, make_config, fake_run):
    cfg = make_config(START_BUILD="true")
    current = fingerprint(manifest_path(app_dir))
    CacheRecord.for_config_dir(cfg.config_dir).save(current)
    run = fake_run()

    outcome = BuildRunner(cfg, run=run).run()

    assert outcome.decision is BuildDecision.BUILD
    assert run.commands[0][2] == "build"
    assert CacheRecord.for_config_dir(cfg.config_dir).load() == current


def test_upgrade_falls_back_to_build_when_not_executable(app_dir, make_config, fake_run):
    os.chmod(app_dir / "nodebb", 0o644)
    cfg = make_config(START_BUILD="false")
    run = fake_run()

    outcome = BuildRunner(cfg, run=run).run()

    assert outcome.decision is BuildDecision.BUILD
    assert outcome.fallback is True
    assert run.commands[0][2] == "build"
    assert CacheRecord.for_config_dir(cfg.config_dir).load() == outcome.fingerprint


def test_failed_upgrade_keeps_record(app_dir, make_config, fake_run):
    cfg = make_config(START_BUILD="false")

    with pytest.raises(BuildFailed) as exc:
        BuildRunner(cfg, run=fake_run(returncodes=[3])).run()

    assert exc.value.returncode == 3
    assert CacheRecord.for_config_dir(cfg.config_dir).load() == ""


def test_timeout_is_reported(app_dir, make_config, fake_run):
    cfg = make_config(START_BUILD="false", BUILD_TIMEOUT="5")
    run = fake_run(exc=subprocess.TimeoutExpired(["node"], 5))

    with pytest.raises(BuildTimedOut) as exc:
        BuildRunner(cfg, run=run).run()

    assert exc.value.verb == "upgrade"
    assert run.calls[0][1]["timeout"] == 5
    assert CacheRecord.for_config_dir(cfg.config_dir).load() == ""


def test_missing_runtime_is_build_failure(app_dir, make_config, fake_run):
    cfg = make_config(START_BUILD="true")
    CacheRecord.for_config_dir(cfg.config_dir).save(fingerprint(manifest_path(app_dir)))

    with pytest.raises(BuildFailed):
        BuildRunner(cfg, run=fake_run(exc=FileNotFoundError("node"))).run()


def test_verify_build_output_creates_cache_buster(app_dir):
    notes = verify_build_output(app_dir)

    buster = app_dir / "build" / "cache-buster"
    assert buster.read_text().isdigit()
    assert "created missing cache-buster file" in notes
    assert verify_build_output(app_dir) == ["found build/public directory with 1 files"]
