"""Exceptions raised by the probe."""
from typing import Optional

from .models import EnvironmentInfo, Result


class ProbeError(Exception):
    pass


class ConfigError(ProbeError):
    pass


class CommandError(ProbeError):
    """A child process could not be started or exited non-zero."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeout(CommandError):
    pass


class DetectionError(ProbeError):
    """Proxmox classification failed; ``info`` is still filled in."""

    def __init__(self, message: str, info: Optional[EnvironmentInfo] = None,
                 debug_path: str = ""):
        super().__init__(message)
        self.info = info if info is not None else EnvironmentInfo()
        self.debug_path = debug_path


class SecurityCheckError(ProbeError):
    """The preflight reported errors and the run is not allowed to continue."""

    def __init__(self, message: str, result: Result):
        super().__init__(message)
        self.result = result
