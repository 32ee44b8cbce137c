"""Wait for a readiness line in a process's output.

A server that prints its listening address is ready once that line shows
up. ``wait_for_line`` races three outcomes and settles on the first:

1. a line matches the pattern -> the match is returned
2. the timeout elapses -> the supplied timeout error is raised
3. the stream closes, or the process exits or fails -> StreamTerminationError
   with every line seen so far

Whichever wins, all listeners are detached and the timer is cancelled
before the caller resumes.
"""

from __future__ import annotations

import asyncio
import re

from ..errors import ReadinessTimeoutError, StreamTerminationError
from .listeners import Listener, remove_listeners
from .process import LaunchedProcess
from .relay import LineStream

__all__ = ["wait_for_line"]


async def wait_for_line(
    process: LaunchedProcess,
    stream: LineStream | None,
    pattern: str | re.Pattern[str],
    timeout: float | None = None,
    timeout_error: BaseException | None = None,
) -> re.Match[str]:
    """Wait until a line of ``stream`` matches ``pattern``.

    Args:
        process: The launched process producing the stream
        stream: ``process.stdout`` or ``process.stderr``
        pattern: Regex searched in each line
        timeout: Seconds to wait; 0 or None waits without a deadline
        timeout_error: Raised on timeout (default ReadinessTimeoutError)

    Returns:
        The match of the first matching line

    Raises:
        ValueError: The process was launched without piped output
        StreamTerminationError: Output ended before a match
        ReadinessTimeoutError: No match within ``timeout`` (unless
            ``timeout_error`` is given)
    """
    if stream is None:
        raise ValueError("Process output is not piped; launch with pipe=True")

    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    if timeout_error is None:
        timeout_error = ReadinessTimeoutError(
            f"Timed out after {timeout}s waiting for a line matching {regex.pattern!r}"
        )
    waiter = _LineWait(regex, timeout_error)
    return await waiter.run(process, stream, timeout)


class _LineWait:
    """One wait with three mutually exclusive completion causes."""

    def __init__(self, regex: re.Pattern[str], timeout_error: BaseException) -> None:
        self._regex = regex
        self._timeout_error = timeout_error
        self._lines: list[str] = []
        self._listeners: list[Listener] = []
        self._timer: asyncio.TimerHandle | None = None
        self._result: asyncio.Future[re.Match[str]] = (
            asyncio.get_running_loop().create_future()
        )

    async def run(
        self,
        process: LaunchedProcess,
        stream: LineStream,
        timeout: float | None,
    ) -> re.Match[str]:
        if stream.closed or process.exited:
            self._on_close(stream.error)
        else:
            self._listeners = [
                stream.add_line_listener(self._on_line),
                stream.add_close_listener(self._on_close),
                process.add_exit_listener(lambda code, sig: self._on_close()),
                process.add_error_listener(self._on_close),
            ]
            if timeout:
                self._timer = asyncio.get_running_loop().call_later(
                    timeout, self._on_timeout
                )

        try:
            return await self._result
        finally:
            # Also reached when the caller cancels the wait
            self._cleanup()

    def _on_line(self, line: str) -> None:
        self._lines.append(line)
        match = self._regex.search(line)
        if match is None:
            return
        self._settle(match=match)

    def _on_close(self, error: BaseException | None = None) -> None:
        self._settle(error=StreamTerminationError(self._lines, error))

    def _on_timeout(self) -> None:
        self._timer = None
        self._settle(error=self._timeout_error)

    def _settle(
        self,
        match: re.Match[str] | None = None,
        error: BaseException | None = None,
    ) -> None:
        if self._result.done():
            return
        self._cleanup()
        if error is not None:
            self._result.set_exception(error)
        else:
            self._result.set_result(match)

    def _cleanup(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        remove_listeners(self._listeners)
