"""Process classification helpers - bracketed/kernel-style process heuristics."""
import os
import re
from typing import Callable, Iterable, Tuple

from . import hostutil
from .models import ProcInfo

KTHREADD_PID = 2

KERNEL_PROCESS_PREFIXES = [
    "kworker", "kthreadd", "kswapd", "rcu_", "migration", "watchdog", "ksoftirqd", "khugepaged",
    "kcompactd", "khubd", "kdevtmpfs", "netns", "writeback", "crypto", "bioset", "kblockd",
    "ata_sff", "md", "edac-poller", "devfreq_wq", "jbd2", "ext4", "ipv6_addrconf", "scsi_eh",
    "kdmflush", "kcryptd", "ttm", "tls", "rpcio", "xprtiod", "charger_manager", "kstrp",
    "md_bio_submit", "blkcg_punt_bio", "tmp_dev_wq", "acpi_thermal_pm", "ipv6_mc", "kthrotld",
    "zswap", "khungtaskd", "oom_reaper", "ksmd", "kauditd", "cpuhp", "idle_inject", "irq/",
    "pool_workqueue", "spl_", "ecryptfs", "txg_", "mmp", "dp_", "z_", "arc_", "arc_reap",
    "zvol_tq", "dbu_", "dbuf_", "l2arc", "lockd", "nfsd", "nfsv4 callback", "zfs",
]

TRUSTED_EXE_DIRS = ["/usr/bin/", "/usr/sbin/", "/bin/", "/sbin/", "/lib/systemd/", "/usr/lib/systemd/"]

DRBD_RE = re.compile(r"(?i)drbd")
CARD_CRTC_RE = re.compile(r"^card[0-9]+-crtc[0-9]+$")
KVM_RE = re.compile(r"(?i)kvm")
ZFS_RE = re.compile(r"(?i)(zfs|spa_|arc_|txg_|vdev|zil|l2arc|dbuf_)")

PS_LINE_RE = re.compile(r"^(\S+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(.*)$")

PROC_ROOT = "/proc"


def parse_ps_line(line: str) -> Tuple[str, str, str, str, str]:
    """Split a ``ps -eo user=,state=,vsz=,pid=,command=`` line into its five fields."""
    m = PS_LINE_RE.match(line.strip())
    if not m:
        return "", "", "", "", ""
    return m.group(1), m.group(2), m.group(3), m.group(4), m.group(5)


def matches_safe_process_pattern(pattern: str, name: str) -> bool:
    """Match ``name`` against ``regex:<expr>``, ``<prefix>*`` or an exact name."""
    pattern = (pattern or "").strip()
    if not pattern:
        return False

    if pattern.lower().startswith("regex:"):
        expr = pattern[6:].strip()
        if not expr:
            return False
        try:
            return re.search(expr, name, re.IGNORECASE) is not None
        except re.error:
            return False

    lower = name.lower()
    pattern = pattern.lower()
    if pattern.endswith("*"):
        return lower.startswith(pattern[:-1])
    return lower == pattern


def matches_any_pattern(patterns: Iterable[str], name: str) -> bool:
    return any(matches_safe_process_pattern(p, name) for p in patterns)


def is_legitimate_kernel_process(name: str) -> bool:
    lower = name.lower()
    return any(lower.startswith(prefix) for prefix in KERNEL_PROCESS_PREFIXES)


def is_zombie_proxmox_process(user: str, state: str, vsz: str, command: str) -> bool:
    if not command.startswith("proxmox-backup-"):
        return False
    if state != "Z":
        return False
    if user not in ("root", "backup"):
        return False
    return vsz.strip() in ("0", "")


def read_proc_info(pid: int, reader: Callable[[str], str] = hostutil.read_text,
                   readlink: Callable[[str], str] = os.readlink,
                   proc_root: str = PROC_ROOT) -> ProcInfo:
    """Read comm, PPid and exe of ``pid``; unreadable entries stay zero-valued."""
    info = ProcInfo()
    base = os.path.join(proc_root, str(pid))

    try:
        info.comm = reader(os.path.join(base, "comm")).strip()
    except OSError:
        pass

    try:
        status = reader(os.path.join(base, "status"))
    except OSError:
        status = ""
    for line in status.splitlines():
        if line.startswith("PPid:"):
            try:
                info.ppid = int(line.split(":", 1)[1].strip())
            except ValueError:
                pass
            break

    try:
        info.exe = readlink(os.path.join(base, "exe"))
    except OSError:
        pass
    return info


def is_kernel_thread(info: ProcInfo) -> bool:
    return info.ppid == KTHREADD_PID and info.exe == ""


def is_drbd_worker(info: ProcInfo, name: str) -> bool:
    return info.ppid == KTHREADD_PID and DRBD_RE.search(name) is not None


def is_gpu_crtc_worker(info: ProcInfo, name: str) -> bool:
    return info.ppid == KTHREADD_PID and CARD_CRTC_RE.match(name) is not None


def is_kvm_worker(info: ProcInfo, name: str) -> bool:
    return info.ppid == KTHREADD_PID and KVM_RE.search(name) is not None


def is_zfs_worker(info: ProcInfo, name: str) -> bool:
    return info.ppid == KTHREADD_PID and ZFS_RE.search(name) is not None


def is_user_space_bracketed_worker(info: ProcInfo, name: str, safe_list: Iterable[str]) -> bool:
    if info.ppid == KTHREADD_PID or not info.exe:
        return False
    if not any(info.exe.startswith(d) for d in TRUSTED_EXE_DIRS):
        return False
    return matches_any_pattern(safe_list, name)


def is_heuristically_safe_kernel_process(pid: int, name: str, safe_bracket: Iterable[str],
                                         proc_reader: Callable[[int], ProcInfo] = read_proc_info) -> bool:
    name = (name or "").strip()
    if not name:
        return False
    info = proc_reader(pid)
    if info.ppid == 0 and not info.comm and not info.exe:
        return False
    return (is_kernel_thread(info)
            or is_drbd_worker(info, name)
            or is_gpu_crtc_worker(info, name)
            or is_kvm_worker(info, name)
            or is_zfs_worker(info, name)
            or is_user_space_bracketed_worker(info, name, safe_bracket))
