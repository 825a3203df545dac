"""Listening socket parsing for ``ss`` output and the port whitelist."""
import re
from typing import Iterable, Tuple

from .models import SSEntry

SS_PROGRAM_RE = re.compile(r'users:\(\("([^"]+)"')

_WILDCARDS = {"", "0.0.0.0", ":::0", "::", "0"}


def extract_port(address: str) -> Tuple[int, str]:
    """Split ``host:port`` (IPv4, bracketed IPv6, wildcards) into (port, host)."""
    addr = (address or "").strip()
    if not addr:
        return 0, ""

    if addr.startswith("["):
        closing = addr.find("]")
        if closing != -1:
            addr = addr[1:closing] + addr[closing + 1:]

    host, sep, port_str = addr.rpartition(":")
    if not sep:
        return 0, ""
    try:
        port = int(port_str)
    except ValueError:
        return 0, ""
    return port, host or "0.0.0.0"


def is_public_address(address: str) -> bool:
    addr = address.strip("*")
    if addr in _WILDCARDS:
        return True
    if addr.startswith("127.") or addr.startswith("::1"):
        return False
    if addr.lower().startswith("local"):
        return False
    return True


def parse_ss_line(line: str) -> SSEntry:
    fields = line.split()
    if len(fields) < 5:
        return SSEntry()

    port, addr = extract_port(fields[4])
    if port == 0:
        return SSEntry()

    program = ""
    m = SS_PROGRAM_RE.search(line)
    if m:
        program = m.group(1).lower()

    return SSEntry(valid=True, port=port, address=addr,
                   public=is_public_address(addr), program=program)


class PortWhitelist:
    """port -> allowed programs, built from ``program:port`` entries."""

    def __init__(self, entries: Iterable[str] = ()):
        self._ports = {}
        for entry in entries or ():
            entry = entry.strip()
            if not entry:
                continue
            parts = entry.split(":")
            if len(parts) != 2:
                continue
            program = parts[0].strip().lower()
            try:
                port = int(parts[1].strip())
            except ValueError:
                continue
            if not program:
                continue
            self._ports.setdefault(port, set()).add(program)

    def __len__(self):
        return len(self._ports)

    def allowed(self, port: int, program: str) -> bool:
        if not self._ports or not program:
            return False
        return program.lower() in self._ports.get(port, set())
