"""Shared pytest fixtures for the preflight probe test suite."""

from __future__ import annotations

import os
from typing import Any, Callable, Optional

import pytest

from proxmox_probe.config import SecurityConfig
from proxmox_probe.errors import CommandError


# ---------------------------------------------------------------------------
# Logger fixtures
# ---------------------------------------------------------------------------


class RecordingLogger:
    """Collects every message handed to the probe logger surface."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str]] = []

    def _record(self, level: str, msg: str, *args: Any) -> None:
        self.records.append((level, msg % args if args else msg))

    def step(self, msg: str, *args: Any) -> None:
        self._record("step", msg, *args)

    def info(self, msg: str, *args: Any) -> None:
        self._record("info", msg, *args)

    def debug(self, msg: str, *args: Any) -> None:
        self._record("debug", msg, *args)

    def warning(self, msg: str, *args: Any) -> None:
        self._record("warning", msg, *args)

    def error(self, msg: str, *args: Any) -> None:
        self._record("error", msg, *args)

    def messages(self, level: Optional[str] = None) -> list[str]:
        return [m for lvl, m in self.records if level is None or lvl == level]


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_config(tmp_path) -> Callable[..., SecurityConfig]:
    """Build a SecurityConfig rooted under tmp_path; keyword args override fields."""

    def _make(**overrides: Any) -> SecurityConfig:
        values: dict[str, Any] = {"base_dir": str(tmp_path / "base")}
        values.update(overrides)
        return SecurityConfig(**values)

    return _make


# ---------------------------------------------------------------------------
# Process fixtures
# ---------------------------------------------------------------------------


class FakeRunner:
    """Stands in for hostutil.run_command; outputs are keyed by command name."""

    def __init__(self, outputs: Optional[dict[str, Any]] = None) -> None:
        self.outputs = outputs or {}
        self.calls: list[tuple[str, tuple[str, ...], Optional[float]]] = []

    def __call__(self, command: str, *args: str, timeout: Optional[float] = None) -> str:
        self.calls.append((command, args, timeout))
        key = " ".join((os.path.basename(command),) + args)
        out = self.outputs.get(key, self.outputs.get(os.path.basename(command)))
        if isinstance(out, Exception):
            raise out
        if out is None:
            raise CommandError(f"command {command} failed")
        return out


@pytest.fixture
def fake_runner() -> Callable[..., FakeRunner]:
    return FakeRunner


@pytest.fixture
def which_all() -> Callable[[str], Optional[str]]:
    return lambda binary: f"/usr/bin/{binary}"


@pytest.fixture
def which_none() -> Callable[[str], Optional[str]]:
    return lambda binary: None


@pytest.fixture
def default_umask():
    old = os.umask(0o022)
    yield
    os.umask(old)
