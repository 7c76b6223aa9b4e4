"""Exception taxonomy for portkill."""

from __future__ import annotations

from portkill.models import KillMethod


class PortKillError(Exception):
    """Base class for portkill errors."""


class ConfigError(PortKillError):
    """The watch configuration could not be loaded or is invalid."""


class ProbeTimeout(PortKillError):
    """A port probe did not finish within its timeout."""

    def __init__(self, port: int, timeout: float) -> None:
        super().__init__(f"probe of port {port} timed out after {timeout:.1f}s")
        self.port = port
        self.timeout = timeout


class ToolUnavailable(PortKillError):
    """The OS mechanism needed for probing or killing is missing."""


class TerminationError(PortKillError):
    """A termination attempt did not achieve its goal."""

    def __init__(self, message: str, method: KillMethod) -> None:
        super().__init__(message)
        self.method = method


class PermissionDenied(TerminationError):
    """The target exists but cannot be signalled by this user."""


class TargetVanished(TerminationError):
    """The target exited before (or while) it was being terminated."""
