"""Exception hierarchy for ResticDroid."""

from typing import Optional


class ResticDroidError(Exception):
    """Base class for all ResticDroid errors."""
    pass


class ShellError(ResticDroidError):
    """Root shell command execution error."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class RepositoryError(ResticDroidError):
    """Repository registry error (duplicate, unknown, unreadable)."""
    pass


class ToolInvocationFailure(ResticDroidError):
    """The restic process failed or its terminal state is unknown.

    Aborts the whole operation stage it occurs in.
    """
    pass


class OperationCancelled(ToolInvocationFailure):
    """The operation was cancelled while running."""

    def __init__(self, message: str = "Operation cancelled."):
        super().__init__(message)


class BinaryVersionError(ToolInvocationFailure):
    """The restic binary does not report the pinned version."""
    pass


class PathResolutionFailure(ResticDroidError):
    """No paths match the requested selection; raised before invoking restic."""
    pass


class PerAppFailure(ResticDroidError):
    """A failure confined to one app during restore."""

    def __init__(self, label: str, reason: str):
        super().__init__(f"{label}: {reason}")
        self.label = label
        self.reason = reason
