"""Proxmox environment detection - classifies the host as PVE, PBS or unknown.

Each product is probed with an ordered cascade of strategies; the first one
that claims the product wins:

1. the product CLI (``pveversion`` / ``proxmox-backup-manager version``)
2. the product version file(s)
3. apt source lists mentioning the product
4. well-known product directories

A strategy that finds the product but cannot read a version still claims
it; the "unknown" version sentinel is only produced at the public surface.
"""
import datetime
import getpass
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from . import hostutil
from .errors import CommandError, DetectionError
from .models import UNKNOWN_VERSION, EnvironmentInfo, ProxmoxType

logger = logging.getLogger(__name__)

PVE_VERSION_FILE = "/etc/pve-manager/version"
PVE_LEGACY_FILE = "/etc/pve/pve.version"
PBS_VERSION_FILE = "/etc/proxmox-backup/version"

PVE_DIR_CANDIDATES = ["/etc/pve", "/var/lib/pve-cluster"]
PBS_DIR_CANDIDATES = ["/etc/proxmox-backup", "/var/lib/proxmox-backup"]

PVE_SOURCE_FILES = ["/etc/apt/sources.list.d/proxmox.list"]
PBS_SOURCE_FILES = ["/etc/apt/sources.list.d/pbs.list", "/etc/apt/sources.list.d/proxmox.list"]

PVE_SOURCE_TOKENS = ["pve", "pve-enterprise"]
PBS_SOURCE_TOKENS = ["pbs", "proxmox-backup"]

# Absolute locations reported in the debug file
PVE_BINARY_LOCATIONS = ["/usr/bin/pveversion", "/usr/sbin/pveversion"]
PBS_BINARY_LOCATIONS = ["/usr/bin/proxmox-backup-manager"]

DEBUG_BASE_DIR = "/tmp"
TOOL_NAME = "proxsave"

PVE_VERSION_RE = re.compile(r"pve-manager/([0-9]+\.[0-9]+(?:[.-][0-9]+)*)")
PBS_VERSION_RE = re.compile(r"version:\s*([0-9]+\.[0-9]+(?:[.-][0-9]+)*)")


def extract_pve_version(output: str) -> str:
    m = PVE_VERSION_RE.search(output or "")
    return m.group(1) if m else ""


def extract_pbs_version(output: str) -> str:
    m = PBS_VERSION_RE.search(output or "")
    return m.group(1) if m else ""


class StrategyOutcome(Enum):
    MATCH_WITH_VERSION = "match_with_version"
    MATCH_WITHOUT_VERSION = "match_without_version"
    NO_MATCH = "no_match"
    ERROR = "error"


@dataclass
class StrategyResult:
    outcome: StrategyOutcome
    version: str = ""
    error: str = ""
    strategy: str = ""

    @property
    def claimed(self) -> bool:
        return self.outcome is not StrategyOutcome.NO_MATCH

    def public_version(self) -> str:
        if self.outcome is StrategyOutcome.MATCH_WITH_VERSION and self.version:
            return self.version
        return UNKNOWN_VERSION


NO_MATCH = StrategyResult(StrategyOutcome.NO_MATCH)


def _default_current_user() -> str:
    return getpass.getuser()


def write_debug_file(path: str, content: str, mode: int = 0o640):
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)


class EnvironmentDetector:
    """Detects the Proxmox product running on this host.

    Every OS interaction goes through an injectable callable so the cascade
    can be exercised without a Proxmox host.
    """

    def __init__(self,
                 which: Callable[[str], Optional[str]] = hostutil.look_path,
                 runner: Callable[..., str] = hostutil.run_command,
                 reader: Callable[[str], str] = hostutil.read_text,
                 current_user: Callable[[], str] = _default_current_user,
                 getcwd: Callable[[], str] = os.getcwd,
                 now: Callable[[], datetime.datetime] = datetime.datetime.now,
                 stat: Callable[[str], os.stat_result] = os.stat,
                 makedirs: Callable[..., None] = os.makedirs,
                 write_file: Callable[[str, str], None] = write_debug_file,
                 env: Optional[dict] = None,
                 pve_version_file: str = PVE_VERSION_FILE,
                 pve_legacy_file: str = PVE_LEGACY_FILE,
                 pbs_version_file: str = PBS_VERSION_FILE,
                 pve_dirs: Optional[list] = None,
                 pbs_dirs: Optional[list] = None,
                 pve_sources: Optional[list] = None,
                 pbs_sources: Optional[list] = None,
                 additional_paths: Optional[list] = None,
                 debug_base_dir: str = DEBUG_BASE_DIR,
                 command_timeout: float = hostutil.DEFAULT_COMMAND_TIMEOUT):
        self.which = which
        self.runner = runner
        self.reader = reader
        self.current_user = current_user
        self.getcwd = getcwd
        self.now = now
        self.stat = stat
        self.makedirs = makedirs
        self.write_file = write_file
        self.env = os.environ if env is None else env
        self.pve_version_file = pve_version_file
        self.pve_legacy_file = pve_legacy_file
        self.pbs_version_file = pbs_version_file
        self.pve_dirs = list(PVE_DIR_CANDIDATES if pve_dirs is None else pve_dirs)
        self.pbs_dirs = list(PBS_DIR_CANDIDATES if pbs_dirs is None else pbs_dirs)
        self.pve_sources = list(PVE_SOURCE_FILES if pve_sources is None else pve_sources)
        self.pbs_sources = list(PBS_SOURCE_FILES if pbs_sources is None else pbs_sources)
        self.additional_paths = list(hostutil.ADDITIONAL_PATHS if additional_paths is None
                                     else additional_paths)
        self.debug_base_dir = debug_base_dir
        self.command_timeout = command_timeout

    # ------------------------------------------------------------------ public

    def detect_type(self) -> ProxmoxType:
        ptype, _, _ = self._classify()
        return ptype

    def detect(self) -> EnvironmentInfo:
        """Return the detected environment or raise DetectionError.

        The raised error always carries ``EnvironmentInfo(UNKNOWN, "unknown")``.
        """
        ptype, result, debug_path = self._classify()
        if ptype is ProxmoxType.UNKNOWN:
            info = EnvironmentInfo(ProxmoxType.UNKNOWN, UNKNOWN_VERSION)
            msg = "unable to detect Proxmox environment"
            if debug_path:
                msg += f" (debug saved to {debug_path})"
            raise DetectionError(msg, info=info, debug_path=debug_path)
        return EnvironmentInfo(ptype, result.public_version())

    def get_version(self, ptype: ProxmoxType) -> str:
        """Re-run the cascade for ``ptype`` and return a concrete version token."""
        self._extend_path()
        if ptype is ProxmoxType.VE:
            result = self.detect_pve()
            label = "Proxmox VE"
        elif ptype is ProxmoxType.BS:
            result = self.detect_pbs()
            label = "Proxmox Backup Server"
        else:
            raise DetectionError(f"unknown proxmox type: {getattr(ptype, 'value', ptype)}")
        if result.outcome is StrategyOutcome.MATCH_WITH_VERSION and result.version:
            return result.version
        raise DetectionError(f"unable to determine {label} version")

    # -------------------------------------------------------------- cascades

    def detect_pve(self) -> StrategyResult:
        return self._first_claim([
            self._pve_via_command,
            self._pve_via_version_files,
            lambda: self._via_sources(self.pve_sources, PVE_SOURCE_TOKENS),
            lambda: self._via_directories(self.pve_dirs),
        ])

    def detect_pbs(self) -> StrategyResult:
        return self._first_claim([
            self._pbs_via_command,
            self._pbs_via_version_file,
            lambda: self._via_sources(self.pbs_sources, PBS_SOURCE_TOKENS),
            lambda: self._via_directories(self.pbs_dirs),
        ])

    def _classify(self):
        self._extend_path()

        pve = self.detect_pve()
        if pve.claimed:
            logger.debug("Proxmox VE detected via %s (version=%s)", pve.strategy, pve.public_version())
            return ProxmoxType.VE, pve, ""

        pbs = self.detect_pbs()
        if pbs.claimed:
            logger.debug("Proxmox Backup Server detected via %s (version=%s)",
                         pbs.strategy, pbs.public_version())
            return ProxmoxType.BS, pbs, ""

        return ProxmoxType.UNKNOWN, NO_MATCH, self.write_detection_debug()

    @staticmethod
    def _first_claim(strategies) -> StrategyResult:
        for strategy in strategies:
            result = strategy()
            if result.claimed:
                return result
        return NO_MATCH

    def _extend_path(self):
        hostutil.extend_path(self.env, self.additional_paths)

    # ------------------------------------------------------------ strategies

    def _via_command(self, binary: str, args: list, extract) -> StrategyResult:
        cmd_path = self.which(binary)
        if not cmd_path:
            return NO_MATCH
        try:
            output = self.runner(cmd_path, *args, timeout=self.command_timeout)
        except CommandError as exc:
            logger.debug("%s failed: %s", binary, exc)
            return StrategyResult(StrategyOutcome.ERROR, error=str(exc), strategy="command")
        version = extract(output)
        if not version:
            return StrategyResult(StrategyOutcome.MATCH_WITHOUT_VERSION, strategy="command")
        return StrategyResult(StrategyOutcome.MATCH_WITH_VERSION, version=version, strategy="command")

    def _pve_via_command(self) -> StrategyResult:
        return self._via_command("pveversion", [], extract_pve_version)

    def _pbs_via_command(self) -> StrategyResult:
        return self._via_command("proxmox-backup-manager", ["version"], extract_pbs_version)

    def _read_trimmed(self, path: str) -> str:
        return hostutil.read_and_trim(path, reader=self.reader)

    def _pve_via_version_files(self) -> StrategyResult:
        if hostutil.file_exists(self.pve_version_file, self.stat):
            version = self._read_trimmed(self.pve_version_file)
            if version:
                return StrategyResult(StrategyOutcome.MATCH_WITH_VERSION, version=version,
                                      strategy="version file")

        if hostutil.file_exists(self.pve_legacy_file, self.stat):
            version = extract_pve_version(self._read_trimmed(self.pve_legacy_file))
            if version:
                return StrategyResult(StrategyOutcome.MATCH_WITH_VERSION, version=version,
                                      strategy="legacy version file")
            return StrategyResult(StrategyOutcome.MATCH_WITHOUT_VERSION, strategy="legacy version file")

        return NO_MATCH

    def _pbs_via_version_file(self) -> StrategyResult:
        if hostutil.file_exists(self.pbs_version_file, self.stat):
            version = self._read_trimmed(self.pbs_version_file)
            if version:
                return StrategyResult(StrategyOutcome.MATCH_WITH_VERSION, version=version,
                                      strategy="version file")
            return StrategyResult(StrategyOutcome.MATCH_WITHOUT_VERSION, strategy="version file")
        return NO_MATCH

    def _via_sources(self, paths: list, tokens: list) -> StrategyResult:
        for path in paths:
            if hostutil.contains_any(path, tokens, reader=self.reader):
                return StrategyResult(StrategyOutcome.MATCH_WITHOUT_VERSION, strategy=f"apt source {path}")
        return NO_MATCH

    def _via_directories(self, paths: list) -> StrategyResult:
        for path in paths:
            if hostutil.dir_exists(path, self.stat):
                return StrategyResult(StrategyOutcome.MATCH_WITHOUT_VERSION, strategy=f"directory {path}")
        return NO_MATCH

    # ---------------------------------------------------------- debug report

    def write_detection_debug(self) -> str:
        """Write a diagnostic report; return its path or "" when it cannot be written."""
        debug_dir = os.path.join(self.debug_base_dir, TOOL_NAME)
        try:
            self.makedirs(debug_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            logger.debug("cannot create debug directory %s: %s", debug_dir, exc)
            return ""

        now = self.now()
        path = os.path.join(debug_dir, f"proxmox_detection_debug_{int(now.timestamp())}.log")
        content = self.build_debug_report(now)
        try:
            self.write_file(path, content)
        except OSError as exc:
            logger.debug("cannot write detection debug file %s: %s", path, exc)
            return ""
        return path

    def build_debug_report(self, now: datetime.datetime) -> str:
        yes = hostutil.bool_to_yes
        lines = [
            f"=== Proxmox Detection Failure Debug - {now.strftime('%Y-%m-%d %H:%M:%S')} ===",
            f"Current PATH: {self.env.get('PATH', '')}",
        ]
        try:
            user = self.current_user() or "unknown"
        except (OSError, KeyError):
            user = "unknown"
        lines.append(f"Current USER: {user}")
        try:
            lines.append(f"Current PWD: {self.getcwd()}")
        except OSError:
            pass
        lines.append(f"Shell: {self.env.get('SHELL', '')}")
        lines.append("")

        lines.append("=== Command availability check ===")
        for binary in ("pveversion", "proxmox-backup-manager"):
            lines.append(f"command -v {binary}: {hostutil.look_path_or_not_found(binary, self.which)}")
        lines.append("")

        lines.append("=== File existence check ===")
        for path in PVE_BINARY_LOCATIONS + PBS_BINARY_LOCATIONS:
            lines.append(f"{path} exists: {yes(hostutil.file_exists(path, self.stat))}")
            lines.append(f"{path} executable: {yes(hostutil.is_executable(path, self.stat))}")
        lines.append("")

        lines.append("=== Directory existence check ===")
        for path in self.pve_dirs + self.pbs_dirs:
            lines.append(f"{path} exists: {yes(hostutil.dir_exists(path, self.stat))}")
        lines.append("")

        lines.append("=== Version file check ===")
        for path in (self.pve_legacy_file, self.pve_version_file, self.pbs_version_file):
            lines.append(f"{path} exists: {yes(hostutil.file_exists(path, self.stat))}")
            content = self._read_trimmed(path)
            if content:
                lines.append(f"{path} content: {content}")
        lines.append("")

        lines.append("=== APT source files check ===")
        for path in self.pve_sources + self.pbs_sources:
            lines.append(f"{path} exists: {yes(hostutil.file_exists(path, self.stat))}")
        lines.append("")

        return "\n".join(lines) + "\n"


def detect_type() -> ProxmoxType:
    return EnvironmentDetector().detect_type()


def detect() -> EnvironmentInfo:
    return EnvironmentDetector().detect()


def get_version(ptype: ProxmoxType) -> str:
    return EnvironmentDetector().get_version(ptype)
