"""Logger facade handed to the preflight checks."""
import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


class ProbeLogger:
    """Step/info/warning/error/debug surface over a stdlib logger.

    Messages use printf-style arguments. Warnings and errors are counted so
    callers can tell whether anything noteworthy happened during a run.
    """

    def __init__(self, name: str = "proxmox_probe", logger: Optional[logging.Logger] = None):
        self._log = logger or logging.getLogger(name)
        self.warnings = 0
        self.errors = 0

    @property
    def has_warnings(self) -> bool:
        return self.warnings > 0

    @property
    def has_errors(self) -> bool:
        return self.errors > 0

    def step(self, msg: str, *args) -> None:
        self._log.info("==> " + msg, *args)

    def info(self, msg: str, *args) -> None:
        self._log.info(msg, *args)

    def debug(self, msg: str, *args) -> None:
        self._log.debug(msg, *args)

    def warning(self, msg: str, *args) -> None:
        self.warnings += 1
        self._log.warning(msg, *args)

    def error(self, msg: str, *args) -> None:
        self.errors += 1
        self._log.error(msg, *args)
