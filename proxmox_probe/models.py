"""Data models for probe results, environment and container detection."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Tuple
import datetime


UNKNOWN_VERSION = "unknown"


class Severity(Enum):
    WARNING = "warning"
    ERROR = "error"


class ProxmoxType(Enum):
    VE = "pve"
    BS = "pbs"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return {
            ProxmoxType.VE: "Proxmox VE",
            ProxmoxType.BS: "Proxmox Backup Server",
        }.get(self, "Unknown")


@dataclass
class Issue:
    severity: Severity
    message: str

    def to_dict(self):
        return {"severity": self.severity.value, "message": self.message}


@dataclass
class Result:
    issues: list = field(default_factory=list)
    started_at: str = field(
        default_factory=lambda: datetime.datetime.now().isoformat()
    )

    def add(self, severity: Severity, message: str):
        self.issues.append(Issue(severity=severity, message=message))

    @property
    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.severity is Severity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for i in self.issues if i.severity is Severity.WARNING)

    @property
    def total_issues(self) -> int:
        return len(self.issues)

    def has_errors(self) -> bool:
        return self.error_count > 0

    def to_dict(self):
        return {
            "started_at": self.started_at,
            "errors": self.error_count,
            "warnings": self.warning_count,
            "total": self.total_issues,
            "issues": [i.to_dict() for i in self.issues],
        }


@dataclass
class EnvironmentInfo:
    type: ProxmoxType = ProxmoxType.UNKNOWN
    version: str = UNKNOWN_VERSION

    def to_dict(self):
        return {"type": self.type.value, "label": self.type.label, "version": self.version}


@dataclass
class IDMapEntry:
    """Mapping for inside ID 0 parsed from /proc/self/{uid_map,gid_map}."""
    ok: bool = False
    outside0: int = 0
    length: int = 0
    read_error: str = ""
    parse_error: str = ""
    source: str = ""
    raw_evidence: str = ""


@dataclass
class FileValue:
    ok: bool = False
    value: str = ""
    read_error: str = ""
    source: str = ""


@dataclass
class FilePresence:
    ok: bool = False
    present: bool = False
    stat_error: str = ""
    source: str = ""


@dataclass
class EnvVar:
    key: str = ""
    set: bool = False
    value: str = ""


@dataclass
class UnprivilegedContainerInfo:
    detected: bool = False
    details: str = ""
    uid_map: IDMapEntry = field(default_factory=IDMapEntry)
    gid_map: IDMapEntry = field(default_factory=IDMapEntry)
    systemd_container: FileValue = field(default_factory=FileValue)
    env_container: EnvVar = field(default_factory=EnvVar)
    docker_marker: FilePresence = field(default_factory=FilePresence)
    podman_marker: FilePresence = field(default_factory=FilePresence)
    proc1_cgroup_hint: FileValue = field(default_factory=FileValue)
    self_cgroup_hint: FileValue = field(default_factory=FileValue)
    container_runtime: str = ""
    container_source: str = ""
    euid: int = 0

    @property
    def shifted(self) -> bool:
        return ((self.uid_map.ok and self.uid_map.outside0 != 0)
                or (self.gid_map.ok and self.gid_map.outside0 != 0))


@dataclass
class DependencyEntry:
    name: str
    required: bool
    reason: str
    check: Callable[[], Tuple[bool, str]]


@dataclass
class ProcInfo:
    ppid: int = 0
    exe: str = ""
    comm: str = ""


@dataclass
class SSEntry:
    valid: bool = False
    port: int = 0
    address: str = ""
    public: bool = False
    program: str = ""
