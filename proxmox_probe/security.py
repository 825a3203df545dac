"""Security preflight checks run before any backup work starts.

The checker walks a fixed pipeline (dependencies, binary integrity, config
and sensitive file permissions, directories, secure account files, private
key scan, network audit, process scan) and collects warnings and errors in a
Result. No stage aborts the pipeline; only the final decision may raise.
"""
import glob
import os
import stat
import time
from typing import Callable, Optional

from . import hostutil, netscan, procscan
from .config import SecurityConfig
from .errors import CommandError, SecurityCheckError
from .models import DependencyEntry, EnvironmentInfo, ProxmoxType, Result, Severity

PRIVATE_KEY_MARKERS = ["AGE-SECRET-KEY-", "BEGIN AGE PRIVATE KEY", "OPENSSH PRIVATE KEY"]
PRIVATE_KEY_SCAN_LIMIT = 64 * 1024
PRIVATE_KEY_SKIP_EXTS = (".md", ".txt", ".example")

BYPASS_OPTION = "CONTINUE_ON_SECURITY_ISSUES"

# compression type -> (dependency name, candidate binaries)
COMPRESSION_DEPENDENCIES = {
    "xz": ("xz", ["xz"]),
    "zst": ("zstd", ["zstd"]),
    "zstd": ("zstd", ["zstd"]),
    "pigz": ("pigz", ["pigz"]),
    "bz2": ("pbzip2/bzip2", ["pbzip2", "bzip2"]),
    "bzip2": ("pbzip2/bzip2", ["pbzip2", "bzip2"]),
    "lzma": ("lzma", ["lzma"]),
}


def is_owned_by_root(st: os.stat_result) -> bool:
    return st.st_uid == 0 and st.st_gid == 0


class Checker:
    """Runs the preflight pipeline for one invocation."""

    def __init__(self, logger, cfg: SecurityConfig, config_path: str, exec_path: str,
                 env_info: Optional[EnvironmentInfo] = None,
                 deadline: Optional[float] = None,
                 which: Callable[[str], Optional[str]] = hostutil.look_path,
                 runner: Callable[..., str] = hostutil.run_command,
                 owner_check: Callable[[os.stat_result], bool] = is_owned_by_root,
                 chmod: Callable[[str, int], None] = os.chmod,
                 lchown: Callable[[str, int, int], None] = os.lchown,
                 lstat: Callable[[str], os.stat_result] = os.lstat,
                 proc_reader=procscan.read_proc_info,
                 clock: Callable[[], float] = time.monotonic):
        self.logger = logger
        self.cfg = cfg
        self.config_path = config_path
        self.exec_path = exec_path
        self.env_info = env_info
        self.deadline = deadline
        self.which = which
        self.runner = runner
        self.owner_check = owner_check
        self.chmod = chmod
        self.lchown = lchown
        self.lstat = lstat
        self.proc_reader = proc_reader
        self.clock = clock
        self.result = Result()

    # ------------------------------------------------------------------ public

    def run(self) -> Result:
        cfg = self.cfg
        self.logger.step("Security preflight checks")
        self.logger.debug(
            "Security options: auto_fix=%s, auto_update_hashes=%s, continue_on_issues=%s, "
            "check_network=%s, firewall=%s, open_ports=%s, suspicious_processes=%d, safe_bracket=%d",
            cfg.auto_fix_permissions, cfg.auto_update_hashes, cfg.continue_on_security_issues,
            cfg.check_network_security, cfg.check_firewall, cfg.check_open_ports,
            len(cfg.suspicious_processes), len(cfg.safe_bracket_processes))

        self.check_dependencies()
        self.verify_binary_integrity()
        self.verify_config_file()
        self.verify_sensitive_files()
        self.verify_directories()
        self.verify_secure_account_files()
        self.detect_private_keys()

        if cfg.check_network_security:
            if cfg.check_firewall:
                self.check_firewall()
            if cfg.check_open_ports:
                self.check_open_ports()
            self.summarize_public_services()

        self.check_suspicious_processes()

        self.logger.info("Security checks completed: %d warning(s), %d error(s)",
                         self.result.warning_count, self.result.error_count)
        return self.result

    # --------------------------------------------------------------- helpers

    def add_warning(self, msg: str):
        self.logger.warning("%s", msg)
        self.result.add(Severity.WARNING, msg)

    def add_error(self, msg: str):
        self.logger.error("%s", msg)
        self.result.add(Severity.ERROR, msg)

    def banner_warning(self, msg: str):
        self.logger.warning("Security warning: %s", msg)

    def _timeout(self) -> float:
        timeout = self.cfg.command_timeout
        if self.deadline is not None:
            timeout = min(timeout, self.deadline - self.clock())
        return timeout

    def _run(self, command: str, *args: str) -> str:
        return self.runner(command, *args, timeout=self._timeout())

    # ---------------------------------------------------------- dependencies

    def binary_dependency(self, name: str, binaries: list, required: bool, reason: str) -> DependencyEntry:
        def check():
            for binary in binaries:
                path = self.which(binary)
                if path:
                    return True, f"{binary} at {path}"
            return False, ""
        return DependencyEntry(name=name, required=required, reason=reason, check=check)

    def build_dependency_list(self) -> list:
        cfg = self.cfg
        dep = self.binary_dependency
        deps = [dep("tar", ["tar"], True, "required for archive verification and bundle handling")]

        compression = (cfg.compression_type or "").strip().lower()
        if compression in COMPRESSION_DEPENDENCIES:
            name, binaries = COMPRESSION_DEPENDENCIES[compression]
            deps.append(dep(name, binaries, True, f"compression type set to {compression}"))

        if cfg.cloud_enabled and cfg.cloud_remote.strip():
            deps.append(dep("rclone", ["rclone"], False, "cloud storage uploads enabled"))

        method = (cfg.email_delivery_method or "").strip().lower() or "relay"
        if method == "sendmail":
            deps.append(dep("sendmail", ["sendmail"], True, "email delivery method set to sendmail"))
        elif cfg.email_fallback_sendmail:
            deps.append(dep("sendmail", ["sendmail"], False, "email relay fallback to sendmail enabled"))

        if cfg.backup_ceph_config:
            deps.append(dep("ceph", ["ceph"], False, "Ceph configuration collection enabled"))
        if cfg.backup_zfs_config:
            deps.append(dep("zpool", ["zpool"], False, "ZFS configuration collection enabled"))
            deps.append(dep("zfs", ["zfs"], False, "ZFS configuration collection enabled"))

        ptype = self.env_info.type if self.env_info is not None else ProxmoxType.UNKNOWN
        if ptype is ProxmoxType.VE:
            deps.append(dep("pveversion", ["pveversion"], False, "Proxmox VE command availability"))
            deps.append(dep("pvecm", ["pvecm"], False, "PVE cluster management command"))
        elif ptype is ProxmoxType.BS:
            deps.append(dep("proxmox-backup-manager", ["proxmox-backup-manager"], False, "PBS management CLI"))
            if cfg.backup_tape_configs:
                deps.append(dep("proxmox-tape", ["proxmox-tape"], False,
                                "PBS tape configuration collection enabled"))
        return deps

    def check_dependencies(self):
        self.logger.info("Checking dependencies...")
        missing, optional_missing = [], []
        for dep in self.build_dependency_list():
            present, detail = dep.check()
            if present:
                self.logger.debug("Dependency %s: present (%s) - %s", dep.name, detail, dep.reason)
            elif dep.required:
                self.logger.debug("Dependency %s: missing - %s", dep.name, dep.reason)
                missing.append(dep)
            else:
                self.logger.debug("Dependency %s: missing (optional) - %s", dep.name, dep.reason)
                optional_missing.append(dep)

        if not missing:
            if optional_missing:
                self.logger.info(
                    "Dependencies check completed: all required dependencies available (optional missing: %s)",
                    ", ".join(d.name for d in optional_missing))
                for dep in optional_missing:
                    self.add_warning(f"Optional dependency {dep.name} missing: {dep.reason}")
            else:
                self.logger.info("Dependencies check completed: all required dependencies available")
            return

        self.logger.warning("Dependencies check: missing required dependencies")
        for dep in missing:
            self.add_error(f"Required dependency {dep.name} missing: {dep.reason}")
        for dep in optional_missing:
            self.add_warning(f"Optional dependency {dep.name} missing: {dep.reason}")

    # ------------------------------------------------------ binary integrity

    def verify_binary_integrity(self):
        path = self.exec_path
        if not path:
            self.add_warning("Executable path not available for integrity check")
            return

        try:
            lst = self.lstat(path)
        except OSError as exc:
            self.add_error(f"Cannot stat executable {path}: {exc}")
            return
        if stat.S_ISLNK(lst.st_mode):
            self.add_error(f"Executable {path} is a symlink")
            return

        try:
            f = open(path, "rb")
        except OSError as exc:
            self.add_error(f"Cannot open executable {path}: {exc}")
            return
        with f:
            try:
                info = os.fstat(f.fileno())
            except OSError as exc:
                self.add_error(f"Cannot stat executable {path}: {exc}")
                return
            self.ensure_ownership_and_perm(path, info, 0o700, f"Executable {path}")
            try:
                current = hostutil.digest_stream(f)
            except OSError as exc:
                self.add_warning(f"Unable to calculate hash for {path}: {exc}")
                return

        hash_file = path + ".md5"
        if not os.path.exists(hash_file):
            if self.cfg.auto_update_hashes:
                try:
                    write_hash_file(hash_file, current)
                except OSError as exc:
                    self.add_warning(f"Failed to create hash file {hash_file}: {exc}")
                else:
                    self.logger.info("Created new hash file for executable: %s", hash_file)
            else:
                self.banner_warning(f"hash file {hash_file} missing")
                self.add_warning(f"Hash file {hash_file} missing (AUTO_UPDATE_HASHES=false)")
            return

        try:
            with open(hash_file, "r", encoding="ascii", errors="replace") as hf:
                stored = hf.read().strip()
        except OSError as exc:
            self.add_warning(f"Unable to read hash file {hash_file}: {exc}")
            return

        if stored == current:
            return

        self.banner_warning(f"executable hash mismatch for {path}")
        if self.cfg.auto_update_hashes:
            try:
                write_hash_file(hash_file, current)
            except OSError as exc:
                self.add_warning(f"Failed to update hash file {hash_file}: {exc}")
            else:
                self.logger.info("Regenerated hash file: %s", hash_file)
        else:
            self.add_warning(f"Executable hash mismatch for {path} (expected {stored}, current {current})")

    # ------------------------------------------------------ files and dirs

    def verify_config_file(self):
        if not self.config_path:
            self.add_warning("Configuration path not provided")
            return
        try:
            info = os.stat(self.config_path)
        except OSError as exc:
            self.add_error(f"Cannot stat configuration file {self.config_path}: {exc}")
            return
        self.ensure_ownership_and_perm(self.config_path, info, 0o600, f"Config file {self.config_path}")

    def sensitive_files(self) -> list:
        identity = self.cfg.identity_dir
        age_recipient = self.cfg.age_recipient_file or os.path.join(identity, "age", "recipient.txt")
        return [
            (os.path.join(identity, ".server_identity"), 0o600, "server identity file", True),
            (age_recipient, 0o600, "AGE recipient file", True),
        ]

    def verify_sensitive_files(self):
        for path, perm, description, optional in self.sensitive_files():
            try:
                info = os.stat(path)
            except FileNotFoundError as exc:
                if optional:
                    if description == "AGE recipient file" and self.cfg.encrypt_archive:
                        self.logger.debug(
                            "Security check: AGE recipient file %s not present yet (wizard will create it)", path)
                    continue
                self.add_warning(f"Cannot stat {path} ({description}): {exc}")
                continue
            except OSError as exc:
                self.add_warning(f"Cannot stat {path} ({description}): {exc}")
                continue
            self.ensure_ownership_and_perm(path, info, perm, description)

    def directory_list(self) -> list:
        cfg = self.cfg
        identity = cfg.identity_dir
        return [
            (cfg.backup_path, 0o755, True),
            (cfg.log_path, 0o755, True),
            (cfg.secondary_path, 0o755, True),
            (cfg.secondary_log_path, 0o755, True),
            (cfg.lock_path, 0o755, False),
            (cfg.secure_account, 0o700, False),
            (identity, 0o700, False),
            (os.path.join(identity, "age"), 0o700, False),
        ]

    def verify_directories(self):
        for path, perm, backup_root in self.directory_list():
            if not path:
                continue
            try:
                info = os.stat(path)
            except FileNotFoundError:
                try:
                    os.makedirs(path, mode=perm, exist_ok=True)
                except OSError as exc:
                    self.add_error(f"Failed to create directory {path}: {exc}")
                    continue
                self.logger.info("Created missing directory: %s", path)
                try:
                    info = os.stat(path)
                except OSError as exc:
                    self.add_warning(f"Cannot verify permissions for {path}: {exc}")
                    continue
            except OSError as exc:
                self.add_warning(f"Cannot stat directory {path}: {exc}")
                continue

            if backup_root and self.should_skip_ownership_checks(path):
                self.logger.debug(
                    "Security check: skipping root ownership enforcement for %s (managed by SET_BACKUP_PERMISSIONS)",
                    path)
                continue

            self.ensure_ownership_and_perm(path, info, perm, f"Directory {path}")

    def should_skip_ownership_checks(self, path: str) -> bool:
        cfg = self.cfg
        if not cfg.set_backup_permissions:
            return False
        target = os.path.normpath(path)
        for candidate in (cfg.backup_path, cfg.log_path, cfg.secondary_path, cfg.secondary_log_path):
            if candidate.strip() and os.path.normpath(candidate) == target:
                return True
        return False

    def verify_secure_account_files(self):
        if not self.cfg.secure_account:
            return
        pattern = os.path.join(glob.escape(self.cfg.secure_account), "*.json")
        for path in sorted(glob.glob(pattern)):
            try:
                info = os.stat(path)
            except OSError as exc:
                self.add_warning(f"Cannot stat secure account file {path}: {exc}")
                continue
            self.ensure_ownership_and_perm(path, info, 0o600, f"Secure account file {path}")

    def detect_private_keys(self):
        identity = self.cfg.identity_dir
        if not hostutil.dir_exists(identity):
            return

        def on_error(exc):
            self.logger.debug("Security: cannot access %s: %s", exc.filename, exc)

        for root, dirs, files in os.walk(identity, onerror=on_error):
            dirs.sort()
            for name in sorted(files):
                path = os.path.join(root, name)
                if os.path.splitext(name)[1].lower() in PRIVATE_KEY_SKIP_EXTS:
                    continue
                try:
                    if not stat.S_ISREG(self.lstat(path).st_mode):
                        continue
                    found = hostutil.file_contains_marker(path, PRIVATE_KEY_MARKERS, PRIVATE_KEY_SCAN_LIMIT)
                except OSError as exc:
                    self.logger.debug("Security: skipped private key scan for %s: %s", path, exc)
                    continue
                if found:
                    self.add_warning(f"Possible private AGE/SSH key detected: {path} (review manually)")

    # ------------------------------------------------ permission enforcement

    def ensure_ownership_and_perm(self, path: str, info: Optional[os.stat_result],
                                  expected_perm: int, description: str) -> Optional[os.stat_result]:
        """Warn about (and optionally fix) a wrong mode or non-root ownership.

        Symlinks are never modified: a fix request on one is an error.
        """
        if info is None:
            try:
                info = self.lstat(path)
            except OSError as exc:
                self.add_warning(f"Cannot stat {path}: {exc}")
                return None

        is_symlink = stat.S_ISLNK(info.st_mode)
        auto_fix = self.cfg.auto_fix_permissions

        if expected_perm:
            perm = stat.S_IMODE(info.st_mode) & 0o777
            if perm != expected_perm:
                self.banner_warning(
                    f"incorrect permissions on {path} (current {perm:o}, expected {expected_perm:o})")
                if not auto_fix:
                    self.add_warning(f"{description} should have permissions {expected_perm:o} (current {perm:o})")
                elif is_symlink:
                    self.add_error(f"Security: refusing to chmod symlink {path}")
                else:
                    try:
                        self.chmod(path, expected_perm)
                    except OSError as exc:
                        self.add_warning(f"Failed to adjust permissions on {path}: {exc}")
                    else:
                        self.logger.info("Adjusted permissions on %s to %o", path, expected_perm)
                        info = self._relstat(path, info)
                        is_symlink = stat.S_ISLNK(info.st_mode)

        if not self.owner_check(info):
            self.banner_warning(f"incorrect ownership on {path} (required root:root)")
            if not auto_fix:
                self.add_warning(f"{description} should be owned by root:root")
            elif is_symlink:
                self.add_error(f"Security: refusing to chown symlink {path}")
            else:
                try:
                    self.lchown(path, 0, 0)
                except OSError as exc:
                    self.add_warning(f"Failed to set ownership root:root on {path}: {exc}")
                else:
                    self.logger.info("Adjusted ownership on %s to root:root", path)
                    info = self._relstat(path, info)
        return info

    def _relstat(self, path: str, fallback: os.stat_result) -> os.stat_result:
        try:
            return self.lstat(path)
        except OSError:
            return fallback

    # --------------------------------------------------------------- network

    def check_firewall(self):
        if not self.which("iptables"):
            self.add_warning("iptables not found; firewall check skipped")
            return
        try:
            output = self._run("iptables", "-L", "-n")
        except CommandError as exc:
            self.add_warning(f"Failed to run iptables -L -n: {exc}")
            return

        rules = 0
        for line in output.splitlines():
            line = line.strip()
            if not line or line.startswith("Chain ") or line.startswith("target"):
                continue
            rules += 1

        if rules == 0:
            self.add_warning("No active iptables rules detected")
        else:
            self.logger.info("Firewall check: %d iptables rule entries detected", rules)

    def check_open_ports(self):
        if not self.which("ss"):
            self.add_warning("Command 'ss' not available; open ports check skipped")
            return
        try:
            output = self._run("ss", "-tulnap")
        except CommandError as exc:
            self.add_warning(f"Failed to execute 'ss -tulnap': {exc}")
            return

        whitelist = netscan.PortWhitelist(self.cfg.port_whitelist)
        suspicious = set(self.cfg.suspicious_ports)
        for line in output.splitlines():
            if ":" not in line:
                continue
            entry = netscan.parse_ss_line(line)
            if not entry.valid or not entry.public:
                continue
            if entry.port not in suspicious:
                continue
            if entry.program and whitelist.allowed(entry.port, entry.program):
                continue
            self.add_warning(
                f"Suspicious open port detected: {entry.port} "
                f"(address={entry.address}, program={entry.program})")

    def summarize_public_services(self):
        if not self.which("ss"):
            return
        try:
            output = self._run("ss", "-tuln")
        except CommandError as exc:
            self.logger.debug("Public services summary skipped: %s", exc)
            return
        public = 0
        for line in output.splitlines():
            entry = netscan.parse_ss_line(line)
            if entry.valid and entry.public:
                public += 1
        if public:
            self.logger.info("Detected %d services listening on public interfaces", public)

    # ------------------------------------------------------------- processes

    def is_safe_bracket_process(self, name: str) -> bool:
        if procscan.is_legitimate_kernel_process(name):
            return True
        if procscan.matches_any_pattern(self.cfg.safe_kernel_processes, name):
            return True
        return procscan.matches_any_pattern(self.cfg.safe_bracket_processes, name)

    def check_suspicious_processes(self):
        try:
            output = self._run("ps", "-eo", "user=,state=,vsz=,pid=,command=")
        except CommandError as exc:
            self.add_warning(f"Failed to execute 'ps' for process inspection: {exc}")
            return

        signatures = [s.strip().lower() for s in self.cfg.suspicious_processes if s.strip()]
        for line in output.splitlines():
            user, state, vsz, pid, command = procscan.parse_ps_line(line)
            if not command:
                continue
            command = command.strip()
            if procscan.is_zombie_proxmox_process(user, state, vsz, command):
                continue

            lower = command.lower()
            for sig in signatures:
                if sig in lower:
                    self.add_warning(f"Suspicious process detected: {command} (PID {pid}, user {user})")
                    break

            if not (command.startswith("[") and command.endswith("]")):
                continue
            name = command[1:-1]
            if self.is_safe_bracket_process(name):
                continue
            try:
                int_pid = int(pid)
            except ValueError:
                int_pid = None
            if int_pid is not None and procscan.is_heuristically_safe_kernel_process(
                    int_pid, name, self.cfg.safe_bracket_processes, proc_reader=self.proc_reader):
                continue
            self.add_warning(f"Suspicious kernel-style process: {name} (PID {pid}, user {user})")


def write_hash_file(path: str, digest: str):
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as f:
        os.fchmod(f.fileno(), 0o600)
        f.write(digest)


def run(logger, cfg: SecurityConfig, config_path: str, exec_path: str,
        env_info: Optional[EnvironmentInfo] = None, *, deadline: Optional[float] = None,
        **bindings) -> Result:
    """Run the security preflight and return its Result.

    Raises SecurityCheckError (carrying the Result) when errors were found and
    ``continue_on_security_issues`` is off. ``deadline`` is a time.monotonic()
    value bounding every child process.
    """
    if not cfg.security_check_enabled:
        logger.debug("Security checks disabled via configuration")
        return Result()

    if config_path:
        config_path = os.path.abspath(config_path)
    if exec_path:
        exec_path = os.path.abspath(exec_path)

    checker = Checker(logger, cfg, config_path, exec_path, env_info, deadline=deadline, **bindings)
    result = checker.run()

    if not cfg.continue_on_security_issues and result.error_count > 0:
        raise SecurityCheckError(
            f"security checks reported {result.error_count} error(s); "
            f"set {BYPASS_OPTION}=true to bypass",
            result,
        )
    return result
