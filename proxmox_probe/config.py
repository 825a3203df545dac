"""Security probe configuration loaded from YAML."""
import os
import re
from dataclasses import dataclass, field, fields
from typing import Optional

import yaml

from .errors import ConfigError

DEFAULT_BASE_DIR = "/opt/proxmox-backup"

DEFAULT_SUSPICIOUS_PORTS = [6666, 6665, 1337, 31337, 4444, 5555, 4242, 6324, 8888, 2222, 3389, 5900]

DEFAULT_SUSPICIOUS_PROCESSES = [
    "ncat", "cryptominer", "xmrig", "kdevtmpfsi", "kinsing", "minerd", "mr.sh",
]

DEFAULT_SAFE_BRACKET_PROCESSES = [
    "sshd:", "systemd", "cron", "rsyslogd", "dbus-daemon",
    "zvol_tq*", "arc_*", "dbu_*", "dbuf_*", "l2arc_feed", "lockd", "nfsd*", "nfsv4 callback*",
]

DEFAULT_SAFE_KERNEL_PROCESSES = [
    "ksgxd", "hwrng", "usb-storage", "vdev_autotrim",
    "card1-crtc0", "card1-crtc1", "card1-crtc2",
    "kvm-pit*", "psimon",
    "regex:^kvm-pit/[0-9]+$",
    "regex:^worker/.+-drbd_as_pm-.*",
]

# key -> legacy keys accepted in its place
LEGACY_KEYS = {
    "security_check_enabled": ["full_security_check"],
    "backup_path": ["local_backup_path"],
    "log_path": ["local_log_path"],
}

_LIST_SPLIT = re.compile(r"[,\s]+")
# Process patterns may contain spaces ("nfsv4 callback*")
_PATTERN_SPLIT = re.compile(r"[,\n]+")
_TRUE = {"1", "true", "yes", "on", "y"}
_FALSE = {"0", "false", "no", "off", "n", ""}


@dataclass
class SecurityConfig:
    security_check_enabled: bool = True
    continue_on_security_issues: bool = False
    auto_fix_permissions: bool = False
    auto_update_hashes: bool = True

    check_network_security: bool = False
    check_firewall: bool = False
    check_open_ports: bool = False

    suspicious_processes: list = field(default_factory=lambda: list(DEFAULT_SUSPICIOUS_PROCESSES))
    safe_bracket_processes: list = field(default_factory=lambda: list(DEFAULT_SAFE_BRACKET_PROCESSES))
    safe_kernel_processes: list = field(default_factory=lambda: list(DEFAULT_SAFE_KERNEL_PROCESSES))
    suspicious_ports: list = field(default_factory=lambda: list(DEFAULT_SUSPICIOUS_PORTS))
    port_whitelist: list = field(default_factory=list)

    compression_type: str = "xz"
    cloud_enabled: bool = False
    cloud_remote: str = ""
    email_delivery_method: str = "relay"
    email_fallback_sendmail: bool = False
    backup_ceph_config: bool = False
    backup_zfs_config: bool = False
    backup_tape_configs: bool = False

    base_dir: str = DEFAULT_BASE_DIR
    backup_path: str = ""
    log_path: str = ""
    secondary_path: str = ""
    secondary_log_path: str = ""
    lock_path: str = ""
    secure_account: str = ""
    age_recipient_file: str = ""
    encrypt_archive: bool = False
    set_backup_permissions: bool = False

    command_timeout: float = 5.0

    def __post_init__(self):
        base = self.base_dir or DEFAULT_BASE_DIR
        self.base_dir = base
        if not self.backup_path:
            self.backup_path = os.path.join(base, "backup")
        if not self.log_path:
            self.log_path = os.path.join(base, "log")
        if not self.lock_path:
            self.lock_path = os.path.join(base, "lock")
        if not self.secure_account:
            self.secure_account = os.path.join(base, "secure_account")

    @property
    def identity_dir(self) -> str:
        return os.path.join(self.base_dir, "identity")


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"invalid boolean value: {value!r}")


def parse_list(value, split=_LIST_SPLIT) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [p.strip() for p in split.split(str(value)) if p.strip()]


def parse_pattern_list(value) -> list:
    return parse_list(value, split=_PATTERN_SPLIT)


def parse_int_list(value, key: str) -> list:
    out = []
    for item in parse_list(value):
        try:
            out.append(int(item))
        except ValueError:
            raise ConfigError(f"{key}: invalid port {item!r}") from None
    return out


def merge_lists(defaults: list, extra: list) -> list:
    """Merge keeping first-seen order and dropping duplicates."""
    seen = set()
    merged = []
    for item in list(defaults) + list(extra):
        if item in seen:
            continue
        seen.add(item)
        merged.append(item)
    return merged


def _normalize(raw: dict) -> dict:
    return {str(k).strip().lower(): v for k, v in raw.items()}


def _lookup(raw: dict, key: str):
    if key in raw:
        return True, raw[key]
    for legacy in LEGACY_KEYS.get(key, []):
        if legacy in raw:
            return True, raw[legacy]
    return False, None


def config_from_dict(raw: Optional[dict]) -> SecurityConfig:
    """Build a SecurityConfig from a mapping of snake_case or UPPER_CASE keys."""
    raw = _normalize(raw or {})
    kwargs = {}

    for f in fields(SecurityConfig):
        found, value = _lookup(raw, f.name)
        if not found:
            continue
        if f.name in ("suspicious_processes", "safe_bracket_processes", "safe_kernel_processes",
                      "suspicious_ports"):
            continue
        if f.type is bool:
            kwargs[f.name] = parse_bool(value)
        elif f.name == "port_whitelist":
            kwargs[f.name] = parse_list(value)
        elif f.name == "command_timeout":
            try:
                kwargs[f.name] = float(value)
            except (TypeError, ValueError):
                raise ConfigError(f"command_timeout: invalid number {value!r}") from None
        else:
            kwargs[f.name] = "" if value is None else str(value).strip()

    if "continue_on_security_issues" not in raw and "abort_on_security_issues" in raw:
        kwargs["continue_on_security_issues"] = not parse_bool(raw["abort_on_security_issues"])

    if "base_dir" not in kwargs:
        kwargs["base_dir"] = os.environ.get("BASE_DIR", "") or DEFAULT_BASE_DIR

    if "suspicious_ports" in raw:
        kwargs["suspicious_ports"] = parse_int_list(raw["suspicious_ports"], "suspicious_ports")
    kwargs["suspicious_processes"] = merge_lists(
        DEFAULT_SUSPICIOUS_PROCESSES, parse_pattern_list(raw.get("suspicious_processes")))
    kwargs["safe_bracket_processes"] = merge_lists(
        DEFAULT_SAFE_BRACKET_PROCESSES, parse_pattern_list(raw.get("safe_bracket_processes")))
    kwargs["safe_kernel_processes"] = merge_lists(
        DEFAULT_SAFE_KERNEL_PROCESSES, parse_pattern_list(raw.get("safe_kernel_processes")))

    return SecurityConfig(**kwargs)


def load_config(config_path: str) -> SecurityConfig:
    with open(config_path) as f:
        raw = f.read()
    for key, val in os.environ.items():
        raw = raw.replace(f"${{{key}}}", val)
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {config_path}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top-level document must be a mapping")
    # Accept either a flat document or one nested under a "security" section.
    section = data.get("security")
    if isinstance(section, dict):
        merged = {k: v for k, v in data.items() if k != "security"}
        merged.update(section)
        data = merged
    return config_from_dict(data)
