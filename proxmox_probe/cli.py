"""CLI entry point for the Proxmox preflight probe."""
import argparse
import logging
import os
import sys
import time

from . import security
from .config import load_config
from .environment import EnvironmentDetector
from .errors import ConfigError, DetectionError, SecurityCheckError
from .logger import ProbeLogger, setup_logging
from .models import Result
from .report_generator import ReportGenerator
from .unprivileged import detect_unprivileged_container, log_privilege_context

VERSION = "1.0.0"

EXIT_OK = 0
EXIT_BLOCKED = 1
EXIT_CONFIG = 2


def run_probe(config_path: str, exec_path: str = None, output_dir: str = None,
              fmt: str = "both", skip_security: bool = False,
              deadline_seconds: float = None) -> int:
    try:
        cfg = load_config(config_path)
    except (OSError, ConfigError) as e:
        print(f"ERROR: cannot load configuration {config_path}: {e}")
        return EXIT_CONFIG

    exec_path = exec_path or os.path.abspath(sys.argv[0])
    logger = ProbeLogger()

    print(f"[*] Proxmox Probe v{VERSION}")
    print(f"[*] Config: {config_path}")
    print(f"[*] Executable: {exec_path}")
    if output_dir:
        print(f"[*] Output: {output_dir}")
    print()

    print("[1/3] Detecting Proxmox environment...")
    detector = EnvironmentDetector(command_timeout=cfg.command_timeout)
    try:
        env_info = detector.detect()
    except DetectionError as e:
        print(f"      WARNING: {e}")
        env_info = e.info
    print(f"      {env_info.type.label} (version {env_info.version})")

    print("[2/3] Inspecting privilege context...")
    container_info = detect_unprivileged_container()
    mode = log_privilege_context(logger, container_info)
    print(f"      Mode: {mode}")

    blocked = False
    if skip_security:
        print("[3/3] Security checks skipped (--skip-security)")
        result = Result()
    else:
        print("[3/3] Running security checks...")
        deadline = time.monotonic() + deadline_seconds if deadline_seconds else None
        try:
            result = security.run(logger, cfg, config_path, exec_path, env_info, deadline=deadline)
        except SecurityCheckError as e:
            print(f"      ERROR: {e}")
            result = e.result
            blocked = True
        print(f"      {result.error_count} error(s), {result.warning_count} warning(s)")

    if output_dir:
        print()
        print("[*] Generating reports...")
        os.makedirs(output_dir, exist_ok=True)
        generator = ReportGenerator(result, env_info, container_info)
        if fmt in ("json", "both"):
            generator.generate_json(os.path.join(output_dir, "preflight-report.json"))
        if fmt in ("markdown", "both"):
            generator.generate_markdown(os.path.join(output_dir, "preflight-report.md"))
        print(f"[*] Reports saved to {output_dir}/")

    print(f"[*] Total issues: {result.total_issues}")
    return EXIT_BLOCKED if blocked else EXIT_OK


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Proxmox Probe - environment detection and security preflight",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the preflight against a configuration file
  proxmox-probe --config /opt/proxmox-backup/env/backup.yaml

  # Write JSON and Markdown reports
  proxmox-probe --config backup.yaml --output ./reports --format both

  # Only detect the environment
  proxmox-probe --config backup.yaml --skip-security
        """,
    )
    parser.add_argument("--config", required=True, help="Path to YAML config file")
    parser.add_argument("--exec-path", help="Executable to verify (default: this program)")
    parser.add_argument("--output", help="Directory for reports (no reports when omitted)")
    parser.add_argument("--format", choices=["json", "markdown", "both"], default="both",
                        help="Report format (default: both)")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Overall time budget in seconds for child processes")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--skip-security", action="store_true", help="Skip the security checks")

    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.debug else logging.INFO)

    return run_probe(args.config, exec_path=args.exec_path, output_dir=args.output,
                     fmt=args.format, skip_security=args.skip_security,
                     deadline_seconds=args.timeout)


if __name__ == "__main__":
    sys.exit(main())
