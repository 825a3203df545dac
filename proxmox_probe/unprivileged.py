"""Unprivileged / shifted user-namespace container detection.

The main signal is /proc/self/{uid_map,gid_map}: when inside ID 0 maps to
a non-zero outside ID the process runs in a shifted user namespace. Container
runtime hints (systemd, env, marker files, cgroups) and a non-zero EUID are
also treated as evidence of a restricted environment. Detection is
best-effort and never raises.
"""
import os
from typing import Callable, Optional, Tuple

from . import hostutil
from .models import EnvVar, FilePresence, FileValue, IDMapEntry, UnprivilegedContainerInfo

SELF_UID_MAP = "/proc/self/uid_map"
SELF_GID_MAP = "/proc/self/gid_map"
SYSTEMD_CONTAINER = "/run/systemd/container"
PROC1_CGROUP = "/proc/1/cgroup"
SELF_CGROUP = "/proc/self/cgroup"
DOCKER_MARKER = "/.dockerenv"
PODMAN_MARKER = "/run/.containerenv"

NO_INSIDE_ZERO = "no mapping for inside ID 0"

# Order matters: kubepods cgroups usually also mention docker/containerd.
CGROUP_HINTS = [
    ("kubepods", "kubernetes"),
    ("docker", "docker"),
    ("libpod", "podman"),
    ("podman", "podman"),
    ("lxc", "lxc"),
    ("containerd", "containerd"),
]

_TOKEN_MAX = 64
_TOKEN_EXTRA = set("-_.:/")


def parse_id_map_outside_zero(content: str) -> Tuple[int, int, bool]:
    """Return (outside0, length, ok) for the first line mapping inside ID 0."""
    for line in content.splitlines():
        parts = line.split()
        if len(parts) < 3:
            continue
        try:
            inside, outside, length = int(parts[0]), int(parts[1]), int(parts[2])
        except ValueError:
            continue
        if inside == 0 and length > 0:
            return outside, length, True
    return 0, 0, False


def container_hint_from_cgroup(content: str) -> str:
    lower = content.lower()
    for needle, runtime in CGROUP_HINTS:
        if needle in lower:
            return runtime
    return ""


def sanitize_token(value: str) -> str:
    value = (value or "").strip().lower()
    out = []
    for ch in value:
        if len(out) >= _TOKEN_MAX:
            break
        if ("a" <= ch <= "z") or ("0" <= ch <= "9") or ch in _TOKEN_EXTRA:
            out.append(ch)
        else:
            out.append("_")
    return "".join(out).strip("_")


def format_id_map_details(label: str, info: IDMapEntry) -> str:
    label = label.strip() or "id_map"
    if info.ok:
        return f"{label}=0->{info.outside0}(len={info.length})"
    if info.read_error:
        return f"{label}=unavailable(err={info.read_error})"
    if info.parse_error:
        return f"{label}=unparseable(err={info.parse_error})"
    return f"{label}=unavailable"


def format_simple_details(label: str, value: str, empty_value: str) -> str:
    label = label.strip() or "value"
    value = (value or "").strip() or empty_value.strip() or "unknown"
    return f"{label}={value}"


class UnprivilegedDetector:

    def __init__(self,
                 reader: Callable[[str], str] = hostutil.read_text,
                 stat: Callable[[str], os.stat_result] = os.stat,
                 geteuid: Callable[[], int] = os.geteuid,
                 env: Optional[dict] = None,
                 uid_map_path: str = SELF_UID_MAP,
                 gid_map_path: str = SELF_GID_MAP,
                 systemd_container_path: str = SYSTEMD_CONTAINER,
                 proc1_cgroup_path: str = PROC1_CGROUP,
                 self_cgroup_path: str = SELF_CGROUP,
                 docker_marker_path: str = DOCKER_MARKER,
                 podman_marker_path: str = PODMAN_MARKER):
        self.reader = reader
        self.stat = stat
        self.geteuid = geteuid
        self.env = os.environ if env is None else env
        self.uid_map_path = uid_map_path
        self.gid_map_path = gid_map_path
        self.systemd_container_path = systemd_container_path
        self.proc1_cgroup_path = proc1_cgroup_path
        self.self_cgroup_path = self_cgroup_path
        self.docker_marker_path = docker_marker_path
        self.podman_marker_path = podman_marker_path

    def detect(self) -> UnprivilegedContainerInfo:
        info = UnprivilegedContainerInfo(
            uid_map=self.read_id_map(self.uid_map_path),
            gid_map=self.read_id_map(self.gid_map_path),
            systemd_container=self.read_file_value(self.systemd_container_path),
            env_container=self.read_env_var("container"),
            docker_marker=self.read_presence(self.docker_marker_path),
            podman_marker=self.read_presence(self.podman_marker_path),
            proc1_cgroup_hint=self.read_cgroup_hint(self.proc1_cgroup_path),
            self_cgroup_hint=self.read_cgroup_hint(self.self_cgroup_path),
        )

        runtime, source = compute_container_runtime(info)
        info.container_runtime = sanitize_token(runtime)
        info.container_source = sanitize_token(source)
        info.euid = self.geteuid()
        info.detected = info.shifted or info.euid != 0 or bool(info.container_runtime)

        info.details = ", ".join([
            format_id_map_details("uid_map", info.uid_map),
            format_id_map_details("gid_map", info.gid_map),
            format_simple_details("container", info.container_runtime, "none"),
            format_simple_details("container_src", info.container_source, "none"),
            format_simple_details("euid", str(info.euid), "unknown"),
        ])
        return info

    # --------------------------------------------------------------- readers

    def read_id_map(self, path: str) -> IDMapEntry:
        entry = IDMapEntry(source=path)
        try:
            content = self.reader(path)
        except OSError as exc:
            entry.read_error = hostutil.summarize_read_error(exc)
            return entry
        outside0, length, ok = parse_id_map_outside_zero(content)
        if not ok:
            entry.parse_error = NO_INSIDE_ZERO
            return entry
        entry.ok = True
        entry.outside0 = outside0
        entry.length = length
        entry.raw_evidence = f"0 {outside0} {length}"
        return entry

    def read_file_value(self, path: str) -> FileValue:
        info = FileValue(source=path)
        try:
            info.value = self.reader(path).strip()
        except OSError as exc:
            info.read_error = hostutil.summarize_read_error(exc)
            return info
        info.ok = True
        return info

    def read_cgroup_hint(self, path: str) -> FileValue:
        info = self.read_file_value(path)
        if info.ok:
            info.value = container_hint_from_cgroup(info.value)
        return info

    def read_presence(self, path: str) -> FilePresence:
        info = FilePresence(source=path)
        if not path.strip():
            info.stat_error = "invalid path"
            return info
        try:
            self.stat(path)
        except FileNotFoundError:
            info.ok = True
            return info
        except OSError as exc:
            info.stat_error = hostutil.summarize_read_error(exc)
            return info
        info.ok = True
        info.present = True
        return info

    def read_env_var(self, key: str) -> EnvVar:
        key = key.strip()
        if not key:
            return EnvVar()
        value = self.env.get(key)
        return EnvVar(key=key, set=value is not None, value=(value or "").strip())


def compute_container_runtime(info: UnprivilegedContainerInfo) -> Tuple[str, str]:
    if info.systemd_container.ok and info.systemd_container.value.strip():
        return info.systemd_container.value.strip(), "systemd"
    if info.env_container.set and info.env_container.value.strip():
        return info.env_container.value.strip(), "env"
    if info.docker_marker.ok and info.docker_marker.present:
        return "docker", "marker"
    if info.podman_marker.ok and info.podman_marker.present:
        return "podman", "marker"
    for hint in (info.proc1_cgroup_hint, info.self_cgroup_hint):
        if hint.ok and hint.value.strip():
            return hint.value.strip(), "cgroup"
    return "", ""


def describe_privilege_context(info: UnprivilegedContainerInfo) -> Tuple[str, str]:
    """Summarise the privilege context as (mode, note) for operators."""
    skipped = "some inventory may be skipped"
    if info.shifted:
        return "unprivileged/rootless", skipped
    if info.euid != 0:
        return "non-root", skipped
    if info.container_runtime.strip():
        return "container", skipped
    if info.uid_map.ok or info.gid_map.ok:
        return "privileged", ""
    return "unknown", f"cannot infer; {skipped}"


def log_privilege_context(logger, info: UnprivilegedContainerInfo) -> str:
    mode, note = describe_privilege_context(info)
    runtime = info.container_runtime.strip()
    hint = f" (runtime={runtime})" if runtime else ""
    suffix = f" ({note})" if note else ""
    logger.info("Privilege context: %s%s%s", mode, hint, suffix)
    logger.debug("uid_map: path=%s ok=%s outside0=%d length=%d read_err=%r parse_err=%r",
                 info.uid_map.source, info.uid_map.ok, info.uid_map.outside0,
                 info.uid_map.length, info.uid_map.read_error, info.uid_map.parse_error)
    logger.debug("gid_map: path=%s ok=%s outside0=%d length=%d read_err=%r parse_err=%r",
                 info.gid_map.source, info.gid_map.ok, info.gid_map.outside0,
                 info.gid_map.length, info.gid_map.read_error, info.gid_map.parse_error)
    logger.debug("computed: detected=%s shifted=%s euid=%d details=%r",
                 info.detected, info.shifted, info.euid, info.details)
    return mode


def detect_unprivileged_container() -> UnprivilegedContainerInfo:
    return UnprivilegedDetector().detect()
