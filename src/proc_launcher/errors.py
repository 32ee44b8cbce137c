"""Exception types raised by the process launcher."""

from __future__ import annotations

from collections.abc import Sequence

__all__ = [
    "ProcessLauncherError",
    "LaunchError",
    "ReadinessTimeoutError",
    "StreamTerminationError",
]


class ProcessLauncherError(Exception):
    """Base exception for the launcher."""
    pass


class LaunchError(ProcessLauncherError):
    """The OS refused or failed to create the child process.

    Attributes:
        executable: Path of the executable that failed to start
        os_error: The underlying OS error
    """

    def __init__(self, executable: str, os_error: BaseException) -> None:
        self.executable = executable
        self.os_error = os_error
        super().__init__(f"Failed to launch {executable}: {os_error}")


class ReadinessTimeoutError(ProcessLauncherError, TimeoutError):
    """No matching line appeared before the deadline."""
    pass


class StreamTerminationError(ProcessLauncherError):
    """The stream or the process ended before a matching line appeared.

    Attributes:
        lines: Every line seen before termination
        error: The error that ended the wait, if any
    """

    def __init__(
        self,
        lines: Sequence[str],
        error: BaseException | None = None,
    ) -> None:
        self.lines = list(lines)
        self.error = error
        headline = "Process output ended before a matching line was seen"
        if error is not None:
            headline += f": {error}"
        super().__init__("\n".join([headline, *self.lines]))
