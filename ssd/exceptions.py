"""
Error taxonomy for ssd.

Every failure the deploy core can report derives from SSDError so callers can
catch the whole family in one place.
"""

from typing import Optional


class SSDError(Exception):
    """Base exception for ssd."""

    pass


class ConfigurationError(SSDError):
    """ssd.yaml is missing, malformed, or fails validation."""

    pass


class ConcurrentDeployError(SSDError):
    """Another deploy already holds the lock for the same stack directory."""

    def __init__(self, target_path: str):
        super().__init__(f"another deployment is already running for {target_path}")
        self.target_path = target_path


class RemoteExecutionError(SSDError):
    """A command on the remote host failed."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        stderr: str = "",
        returncode: Optional[int] = None,
    ):
        detail = message
        if stderr:
            detail = f"{message}\n{stderr.strip()}"
        super().__init__(detail)
        self.command = command
        self.stderr = stderr
        self.returncode = returncode


class ManifestParseError(SSDError):
    """The remote compose.yaml does not have the expected shape."""

    pass


class CanaryHealthTimeoutError(SSDError):
    """The canary container did not become healthy before its deadline."""

    def __init__(self, container: str, deadline: float, last_state: Optional[str] = None):
        message = f"canary {container} not healthy after {deadline:g}s"
        if last_state:
            message += f" (last state: {last_state})"
        super().__init__(message)
        self.container = container
        self.deadline = deadline
        self.last_state = last_state


class NoPriorVersionError(SSDError):
    """Rollback requested but there is no earlier version to return to."""

    pass


class DependencyError(SSDError):
    """A dependency did not reach its declared wait condition."""

    pass
