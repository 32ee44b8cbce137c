"""Handle over one launched child process."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable

from .listeners import Listener, ListenerSet
from .relay import LineStream

__all__ = ["LaunchedProcess", "split_returncode"]

logger = logging.getLogger(__name__)

ExitCallback = Callable[[int | None, str | None], None]


def split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Split an asyncio return code into ``(exit_code, signal_name)``.

    A negative return code means the child was ended by that signal. None
    (exit status unknown) gives ``(None, None)``.
    """
    if returncode is None:
        return None, None
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


class LaunchedProcess:
    """OS identity and exit state of a launched child.

    Owned by the supervisor that spawned it; callers read it but never
    drive it directly.

    Attributes:
        pid: Process id (also the process group id on POSIX)
        stdout: Line stream of stdout, None when output is inherited
        stderr: Line stream of stderr, None when output is inherited
        exited: True once the exit has been observed
        killed: True once a forceful kill was delivered
        exit_code: Exit status, None if ended by a signal
        exit_signal: Name of the terminating signal, if any
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        stdout: LineStream | None = None,
        stderr: LineStream | None = None,
    ) -> None:
        self._process = process
        self.pid: int = process.pid
        self.stdout = stdout
        self.stderr = stderr
        self.exited = False
        self.killed = False
        self.exit_code: int | None = None
        self.exit_signal: str | None = None
        self._exit_listeners = ListenerSet()
        self._error_listeners = ListenerSet()

    def __repr__(self) -> str:
        status = "exited" if self.exited else "running"
        return f"LaunchedProcess(pid={self.pid}, status={status})"

    @property
    def returncode(self) -> int | None:
        """Return code as reported by asyncio (negative for signals)."""
        return self._process.returncode

    def add_exit_listener(self, callback: ExitCallback) -> Listener:
        return self._exit_listeners.add(callback)

    def add_error_listener(
        self,
        callback: Callable[[BaseException], None],
    ) -> Listener:
        return self._error_listeners.add(callback)

    def notify_exit(self, returncode: int | None) -> None:
        """Record the exit and notify exit listeners, at most once."""
        if self.exited:
            return
        self.exited = True
        self.exit_code, self.exit_signal = split_returncode(returncode)
        self._exit_listeners.emit(
            self.exit_code, self.exit_signal, on_error=self._report
        )

    def notify_error(self, error: BaseException) -> None:
        self._error_listeners.emit(error, on_error=self._report)

    def _report(self, e: Exception) -> None:
        logger.warning(f"Error in listener of pid={self.pid}: {e}")
