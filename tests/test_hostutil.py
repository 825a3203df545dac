"""Unit tests for the host probe helpers."""

from __future__ import annotations

import hashlib
import io
import os
import sys

import pytest

from proxmox_probe import hostutil
from proxmox_probe.errors import CommandError, CommandTimeout


# ---------------------------------------------------------------------------
# PATH handling
# ---------------------------------------------------------------------------


def test_extend_path_appends_missing_dirs() -> None:
    env = {"PATH": "/usr/local/bin:/usr/bin"}
    new_path = hostutil.extend_path(env)
    parts = new_path.split(os.pathsep)
    assert parts[:2] == ["/usr/local/bin", "/usr/bin"]
    for extra in ("/usr/sbin", "/bin", "/sbin"):
        assert extra in parts
    assert parts.count("/usr/bin") == 1
    assert env["PATH"] == new_path


def test_extend_path_is_idempotent() -> None:
    env = {"PATH": "/opt/tool/bin"}
    hostutil.extend_path(env)
    first = env["PATH"]
    hostutil.extend_path(env)
    assert env["PATH"] == first


def test_extend_path_from_empty() -> None:
    env: dict[str, str] = {}
    hostutil.extend_path(env, ["/a", "/b", "/a"])
    assert env["PATH"] == os.pathsep.join(["/a", "/b"])


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def test_existence_helpers(tmp_path) -> None:
    f = tmp_path / "file"
    f.write_text("x")
    assert hostutil.file_exists(str(f))
    assert not hostutil.dir_exists(str(f))
    assert hostutil.dir_exists(str(tmp_path))
    assert not hostutil.file_exists(str(tmp_path))
    assert not hostutil.path_exists(str(tmp_path / "missing"))
    assert not hostutil.is_executable(str(f))
    f.chmod(0o755)
    assert hostutil.is_executable(str(f))


def test_existence_helpers_use_injected_stat() -> None:
    seen = []

    def fake_stat(path):
        seen.append(path)
        if path == "/fake/dir":
            return os.stat_result((0o40755, 0, 0, 0, 0, 0, 0, 0, 0, 0))
        if path == "/fake/bin":
            return os.stat_result((0o100755, 0, 0, 0, 0, 0, 0, 0, 0, 0))
        raise FileNotFoundError(path)

    assert hostutil.dir_exists("/fake/dir", stat_fn=fake_stat)
    assert hostutil.file_exists("/fake/bin", stat_fn=fake_stat)
    assert hostutil.is_executable("/fake/bin", stat_fn=fake_stat)
    assert not hostutil.path_exists("/fake/missing", stat_fn=fake_stat)
    assert seen == ["/fake/dir", "/fake/bin", "/fake/bin", "/fake/missing"]


def test_read_and_trim_swallows_missing(tmp_path) -> None:
    f = tmp_path / "version"
    f.write_text("  8.1.4 \n")
    assert hostutil.read_and_trim(str(f)) == "8.1.4"
    assert hostutil.read_and_trim(str(tmp_path / "nope")) == ""


def test_contains_any_is_case_insensitive(tmp_path) -> None:
    f = tmp_path / "pbs.list"
    f.write_text("deb http://download.proxmox.com/debian/PBS bookworm pbs-no-subscription\n")
    assert hostutil.contains_any(str(f), ["proxmox-backup", "pbs"])
    assert not hostutil.contains_any(str(f), ["pve-enterprise"])
    assert not hostutil.contains_any(str(tmp_path / "missing"), ["pbs"])


# ---------------------------------------------------------------------------
# Marker scanning
# ---------------------------------------------------------------------------


def test_marker_found_across_chunk_boundary(tmp_path) -> None:
    marker = "AGE-SECRET-KEY-"
    f = tmp_path / "key"
    # Marker starts 5 bytes before the first 4096-byte chunk ends.
    f.write_bytes(b"a" * (hostutil.CHUNK_SIZE - 5) + marker.encode() + b"1QQQ")
    assert hostutil.file_contains_marker(str(f), [marker])


def test_marker_match_ignores_case(tmp_path) -> None:
    f = tmp_path / "key"
    f.write_bytes(b"-----begin openssh private key-----\n")
    assert hostutil.file_contains_marker(str(f), ["OPENSSH PRIVATE KEY"])


def test_marker_past_limit_is_not_found(tmp_path) -> None:
    f = tmp_path / "big"
    f.write_bytes(b"x" * 100 + b"BEGIN AGE PRIVATE KEY")
    assert not hostutil.file_contains_marker(str(f), ["BEGIN AGE PRIVATE KEY"], limit=100)
    assert hostutil.file_contains_marker(str(f), ["BEGIN AGE PRIVATE KEY"], limit=200)


def test_marker_scan_without_markers(tmp_path) -> None:
    f = tmp_path / "file"
    f.write_bytes(b"anything")
    assert not hostutil.file_contains_marker(str(f), [])


def test_marker_scan_missing_file_raises(tmp_path) -> None:
    with pytest.raises(OSError):
        hostutil.file_contains_marker(str(tmp_path / "missing"), ["X"])


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------


def test_digest_stream_matches_sha256() -> None:
    data = b"proxmox" * 20000
    digest = hostutil.digest_stream(io.BytesIO(data))
    assert digest == hashlib.sha256(data).hexdigest()
    assert len(digest) == 64
    assert digest == digest.lower()


def test_digest_differs_for_different_content(tmp_path) -> None:
    a = tmp_path / "a"
    b = tmp_path / "b"
    a.write_bytes(b"one")
    b.write_bytes(b"two")
    assert hostutil.digest_file(str(a)) != hostutil.digest_file(str(b))
    assert hostutil.digest_file(str(a)) == hostutil.digest_stream(io.BytesIO(b"one"))


# ---------------------------------------------------------------------------
# Child processes
# ---------------------------------------------------------------------------


def test_look_path_or_not_found() -> None:
    assert hostutil.look_path_or_not_found("x", which=lambda b: None) == hostutil.NOT_FOUND
    assert hostutil.look_path_or_not_found("x", which=lambda b: "/bin/x") == "/bin/x"


def test_run_command_returns_stdout() -> None:
    out = hostutil.run_command(sys.executable, "-c", "print('hello')", timeout=10)
    assert out.strip() == "hello"


def test_run_command_nonzero_exit() -> None:
    with pytest.raises(CommandError) as exc_info:
        hostutil.run_command(sys.executable, "-c", "import sys; sys.exit(3)", timeout=10)
    assert exc_info.value.returncode == 3


def test_run_command_missing_binary() -> None:
    with pytest.raises(CommandError):
        hostutil.run_command("/nonexistent/definitely-not-here")


def test_run_command_times_out() -> None:
    with pytest.raises(CommandTimeout, match="timed out"):
        hostutil.run_command(sys.executable, "-c", "import time; time.sleep(5)", timeout=0.2)


def test_run_command_expired_deadline_does_not_spawn() -> None:
    with pytest.raises(CommandTimeout, match="timed out"):
        hostutil.run_command("/nonexistent/binary", timeout=0)


def test_run_command_replaces_invalid_utf8(tmp_path, monkeypatch) -> None:
    script = tmp_path / "ss"
    script.write_text("#!/bin/sh\nprintf 'x\\377y\\n'\n")
    script.chmod(0o755)
    monkeypatch.setenv("PATH", f"{tmp_path}{os.pathsep}{os.environ.get('PATH', '')}")

    out = hostutil.run_command("ss", timeout=10)

    assert out == "x\ufffdy\n"


def test_summarize_read_error() -> None:
    assert hostutil.summarize_read_error(FileNotFoundError()) == "not found"
    assert hostutil.summarize_read_error(PermissionError()) == "permission denied"
    assert hostutil.summarize_read_error(OSError()) == "error"
