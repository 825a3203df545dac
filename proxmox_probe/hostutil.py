"""Small host probing helpers shared by the detectors and the preflight checks."""
import hashlib
import os
import shutil
import stat
import subprocess
from typing import BinaryIO, Iterable, Optional

from .errors import CommandError, CommandTimeout

DEFAULT_COMMAND_TIMEOUT = 5.0
ADDITIONAL_PATHS = ["/usr/bin", "/usr/sbin", "/bin", "/sbin"]
NOT_FOUND = "NOT FOUND"
CHUNK_SIZE = 4096


# --------------------------------------------------------------- filesystem

def path_exists(path: str, stat_fn=os.stat) -> bool:
    try:
        stat_fn(path)
    except (OSError, ValueError):
        return False
    return True


def file_exists(path: str, stat_fn=os.stat) -> bool:
    try:
        st = stat_fn(path)
    except (OSError, ValueError):
        return False
    return not stat.S_ISDIR(st.st_mode)


def dir_exists(path: str, stat_fn=os.stat) -> bool:
    try:
        st = stat_fn(path)
    except (OSError, ValueError):
        return False
    return stat.S_ISDIR(st.st_mode)


def is_executable(path: str, stat_fn=os.stat) -> bool:
    try:
        st = stat_fn(path)
    except (OSError, ValueError):
        return False
    return not stat.S_ISDIR(st.st_mode) and bool(st.st_mode & 0o111)


def read_text(path: str) -> str:
    with open(path, "rb") as f:
        return f.read().decode("utf-8", errors="replace")


def read_and_trim(path: str, reader=read_text) -> str:
    try:
        return reader(path).strip()
    except (OSError, ValueError):
        return ""


def contains_any(path: str, tokens: Iterable[str], reader=read_text) -> bool:
    """Case-insensitive search of the file content for any token."""
    try:
        content = reader(path).lower()
    except (OSError, ValueError):
        return False
    for token in tokens:
        if token.lower() in content:
            return True
    return False


def file_contains_marker(path: str, markers: Iterable[str], limit: int = 0) -> bool:
    """Scan at most ``limit`` bytes of ``path`` for any marker, ignoring case.

    The file is read in 4 KiB chunks; the tail of the previous chunk is kept
    so a marker split across two reads is still found. ``limit <= 0`` scans
    the whole file. Open and read errors propagate as ``OSError``.
    """
    upper_markers = [m.upper().encode() for m in markers if m]
    if not upper_markers:
        return False
    overlap_len = max(len(m) for m in upper_markers) - 1

    with open(path, "rb") as f:
        carry = b""
        total = 0
        while True:
            size = CHUNK_SIZE
            if limit > 0:
                if total >= limit:
                    return False
                size = min(size, limit - total)
            chunk = f.read(size)
            if not chunk:
                return False
            total += len(chunk)
            window = (carry + chunk).upper()
            for marker in upper_markers:
                if marker in window:
                    return True
            carry = window[-overlap_len:] if overlap_len > 0 else b""


def digest_stream(reader: BinaryIO) -> str:
    """SHA-256 of everything ``reader`` yields, as lowercase hex."""
    h = hashlib.sha256()
    for chunk in iter(lambda: reader.read(65536), b""):
        h.update(chunk)
    return h.hexdigest().lower()


def digest_file(path: str) -> str:
    with open(path, "rb") as f:
        return digest_stream(f)


# ---------------------------------------------------------------- processes

def look_path(binary: str, path: Optional[str] = None) -> Optional[str]:
    return shutil.which(binary, path=path)


def look_path_or_not_found(binary: str, which=look_path) -> str:
    return which(binary) or NOT_FOUND


def run_command(command: str, *args: str, timeout: Optional[float] = None) -> str:
    """Run a child process and return its stdout.

    Raises ``CommandTimeout`` (message contains "timed out") when the deadline
    passes and ``CommandError`` when the process cannot be started or exits
    non-zero. Partial output is never returned. Bytes that are not valid UTF-8
    come back as U+FFFD instead of failing the decode.
    """
    if timeout is None:
        timeout = DEFAULT_COMMAND_TIMEOUT
    if timeout <= 0:
        raise CommandTimeout(f"command {command} timed out")
    cmd = [command, *args]
    try:
        proc = subprocess.run(
            cmd, capture_output=True, text=True, encoding="utf-8", errors="replace", timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise CommandTimeout(f"command {command} timed out") from None
    except OSError as exc:
        raise CommandError(f"command {command} failed: {exc}") from exc
    if proc.returncode != 0:
        raise CommandError(
            f"command {command} exited with status {proc.returncode}",
            returncode=proc.returncode, stderr=proc.stderr,
        )
    return proc.stdout


def extend_path(env: Optional[dict] = None, extra: Iterable[str] = ADDITIONAL_PATHS) -> str:
    """Append the well-known system bin directories to PATH, skipping duplicates."""
    if env is None:
        env = os.environ
    current = env.get("PATH", "")
    parts = current.split(os.pathsep) if current else []
    present = set(parts)
    updated = list(parts)
    for add in extra:
        if add not in present:
            updated.append(add)
            present.add(add)
    new_path = os.pathsep.join(updated)
    if new_path != current:
        env["PATH"] = new_path
    return new_path


def bool_to_yes(value: bool) -> str:
    return "YES" if value else "NO"


def summarize_read_error(exc: BaseException) -> str:
    if isinstance(exc, FileNotFoundError):
        return "not found"
    if isinstance(exc, PermissionError):
        return "permission denied"
    return "error"
