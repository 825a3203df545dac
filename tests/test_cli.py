"""Tests for the command line front-end."""

from __future__ import annotations

import json
from typing import Any

import pytest

from proxmox_probe import cli, security
from proxmox_probe.errors import DetectionError, SecurityCheckError
from proxmox_probe.models import EnvironmentInfo, ProxmoxType, Result, Severity, UnprivilegedContainerInfo


class _UnknownDetector:
    def __init__(self, **kwargs: Any) -> None:
        pass

    def detect(self) -> EnvironmentInfo:
        raise DetectionError("unable to detect Proxmox environment", info=EnvironmentInfo())


class _PveDetector(_UnknownDetector):
    def detect(self) -> EnvironmentInfo:
        return EnvironmentInfo(ProxmoxType.VE, "8.1.4")


@pytest.fixture
def host(monkeypatch) -> None:
    monkeypatch.setattr(cli, "EnvironmentDetector", _PveDetector)
    monkeypatch.setattr(cli, "detect_unprivileged_container", lambda: UnprivilegedContainerInfo())
    monkeypatch.setattr(cli, "setup_logging", lambda level: None)


@pytest.fixture
def config_file(tmp_path) -> str:
    path = tmp_path / "backup.yaml"
    path.write_text(f"base_dir: {tmp_path / 'base'}\n")
    return str(path)


def test_skip_security_writes_reports(host, config_file, tmp_path) -> None:
    out = tmp_path / "reports"

    code = cli.main(["--config", config_file, "--skip-security", "--output", str(out)])

    assert code == cli.EXIT_OK
    report = json.loads((out / "preflight-report.json").read_text())
    assert report["environment"]["version"] == "8.1.4"
    assert (out / "preflight-report.md").exists()


def test_json_only_format(host, config_file, tmp_path) -> None:
    out = tmp_path / "reports"
    cli.main(["--config", config_file, "--skip-security", "--output", str(out), "--format", "json"])
    assert (out / "preflight-report.json").exists()
    assert not (out / "preflight-report.md").exists()


def test_bad_config_exit_code(host, tmp_path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("- not\n- a mapping\n")
    assert cli.main(["--config", str(bad)]) == cli.EXIT_CONFIG
    assert cli.main(["--config", str(tmp_path / "missing.yaml")]) == cli.EXIT_CONFIG


def test_blocked_run_exit_code(host, config_file, monkeypatch) -> None:
    def fake_run(logger, cfg, config_path, exec_path, env_info, deadline=None):
        result = Result()
        result.add(Severity.ERROR, "Required dependency tar missing")
        raise SecurityCheckError("security checks reported 1 error(s)", result)

    monkeypatch.setattr(security, "run", fake_run)

    assert cli.main(["--config", config_file, "--exec-path", "/usr/local/bin/proxsave"]) == cli.EXIT_BLOCKED


def test_clean_run_passes_environment(host, config_file, monkeypatch) -> None:
    seen = {}

    def fake_run(logger, cfg, config_path, exec_path, env_info, deadline=None):
        seen.update(exec_path=exec_path, env_info=env_info, deadline=deadline)
        return Result()

    monkeypatch.setattr(security, "run", fake_run)

    code = cli.main(["--config", config_file, "--exec-path", "/usr/local/bin/proxsave", "--timeout", "30"])

    assert code == cli.EXIT_OK
    assert seen["exec_path"] == "/usr/local/bin/proxsave"
    assert seen["env_info"].type is ProxmoxType.VE
    assert seen["deadline"] is not None


def test_unknown_environment_is_not_fatal(host, config_file, monkeypatch) -> None:
    monkeypatch.setattr(cli, "EnvironmentDetector", _UnknownDetector)
    monkeypatch.setattr(security, "run", lambda *a, **kw: Result())
    assert cli.main(["--config", config_file]) == cli.EXIT_OK
