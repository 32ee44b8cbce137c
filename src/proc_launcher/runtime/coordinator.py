"""Shutdown state machine for one launched process.

    IDLE --graceful_close--> GRACEFULLY_CLOSING --exit/kill--> CLOSED
    GRACEFULLY_CLOSING --graceful_close--> forceful kill --> CLOSED
    any --kill--> CLOSED

The state only moves forward. A second ``graceful_close`` while the first
is still running does not queue another graceful attempt; it escalates to
the forceful kill. That is the only cancellation mechanism: the pending
graceful attempt is abandoned once the process is gone.

Every awaiting path ends on the same cleanup-complete future that the exit
observer resolves, so no caller returns while the process or its temporary
directories still exist.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from .cleaner import ResourceCleaner
from .listeners import Listener, remove_listeners
from .process import ExitCallback, LaunchedProcess
from .relay import PROCESS_LOG, LogSink
from .tree_kill import kill_process_tree

__all__ = ["ShutdownCoordinator", "ShutdownState"]

logger = logging.getLogger(__name__)


class ShutdownState(Enum):
    """Shutdown progress of a launched process."""

    IDLE = "idle"
    GRACEFULLY_CLOSING = "gracefully_closing"
    CLOSED = "closed"


class ShutdownCoordinator:
    """Drives graceful and forceful termination of one process.

    The coordinator subscribes to the process's exit and owns the host
    listeners registered for it (``listeners`` may be filled in after
    construction; it is torn down exactly once, before ``on_exit`` runs).

    Args:
        process: The launched process
        cleaner: Removes the launch's temporary directories
        attempt_graceful_close: Asks the process to exit; must raise if it
            could not close it. None means there is no graceful path.
        on_exit: Called once with ``(exit_code, signal_name)``
        listeners: Host listeners to detach on the first terminal event
        log_sink: Receives lifecycle lines
        tree_kill_timeout: Seconds allowed for the tree-kill command
    """

    def __init__(
        self,
        process: LaunchedProcess,
        cleaner: ResourceCleaner,
        attempt_graceful_close: Callable[[], Awaitable[Any]] | None,
        on_exit: ExitCallback | None,
        listeners: list[Listener],
        log_sink: LogSink,
        tree_kill_timeout: float = 5.0,
    ) -> None:
        loop = asyncio.get_running_loop()
        self._process = process
        self._cleaner = cleaner
        self._attempt_graceful_close = attempt_graceful_close
        self._on_exit = on_exit
        self._listeners = listeners
        self._log_sink = log_sink
        self._tree_kill_timeout = tree_kill_timeout
        self._state = ShutdownState.IDLE
        self._closed: asyncio.Future[None] = loop.create_future()
        self._cleanup_complete: asyncio.Future[None] = loop.create_future()
        self._cleanup_task: asyncio.Task[None] | None = None

        process.add_exit_listener(self._handle_exit)

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def cleanup_complete(self) -> bool:
        return self._cleanup_complete.done()

    async def graceful_close(self) -> None:
        """Close the process cooperatively, escalating to a kill on failure.

        Returns only after the process exited and cleanup finished. A call
        made while another graceful close is in flight kills the process.
        """
        if self._state is ShutdownState.GRACEFULLY_CLOSING:
            self._log("<forcefully close>")
            self.kill_now()
            await asyncio.shield(self._closed)
            await asyncio.shield(self._cleanup_complete)
            return

        if self._state is ShutdownState.CLOSED:
            await asyncio.shield(self._cleanup_complete)
            return

        self._state = ShutdownState.GRACEFULLY_CLOSING
        self._log("<gracefully close start>")
        await self._attempt_or_kill()
        await asyncio.shield(self._cleanup_complete)
        self._log("<gracefully close end>")

    def kill(self) -> asyncio.Future[None]:
        """Kill the process now and return a future for cleanup completion.

        The kill signal is sent before this returns; awaiting the result
        waits until the exit was observed and cleanup finished. Never raises.
        """
        self.kill_now()
        return asyncio.shield(self._cleanup_complete)

    def kill_now(self) -> None:
        """Forceful-kill procedure. Synchronous, safe in an ``atexit`` hook."""
        self._log("<kill>")
        remove_listeners(self._listeners)
        self._state = ShutdownState.CLOSED

        process = self._process
        if process.pid and not process.killed and not process.exited:
            try:
                kill_process_tree(process.pid, timeout=self._tree_kill_timeout)
                process.killed = True
            except (OSError, subprocess.SubprocessError) as e:
                # The process might have already stopped
                logger.debug(f"Kill of pid={process.pid} failed: {e}")

        # Avoid littering even before the exit is observed
        self._cleaner.remove_sync()

    async def _attempt_or_kill(self) -> None:
        if self._attempt_graceful_close is None:
            self.kill_now()
            return

        hook = asyncio.ensure_future(self._attempt_graceful_close())
        closed = asyncio.ensure_future(asyncio.shield(self._closed))
        try:
            done, _ = await asyncio.wait(
                {hook, closed},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            hook.cancel()
            raise
        finally:
            closed.cancel()

        if hook not in done:
            # Process is gone (reentrant kill or own exit); drop the attempt
            hook.cancel()
            return

        try:
            hook.result()
        except Exception as e:
            logger.debug(f"Graceful close of pid={self._process.pid} failed: {e}")
            self.kill_now()

    def _handle_exit(self, exit_code: int | None, signal_name: str | None) -> None:
        """Exit observer: runs once, when the process exit is observed."""
        self._log(f"<process did exit {exit_code}, {signal_name}>")
        remove_listeners(self._listeners)
        self._state = ShutdownState.CLOSED

        if self._on_exit is not None:
            try:
                self._on_exit(exit_code, signal_name)
            except Exception as e:
                logger.warning(f"Error in exit callback: {e}")

        self._closed.set_result(None)
        self._cleanup_task = asyncio.create_task(
            self._cleanup_after_exit(),
            name=f"cleanup-{self._process.pid}",
        )

    async def _cleanup_after_exit(self) -> None:
        try:
            await self._cleaner.remove()
        finally:
            self._cleanup_complete.set_result(None)

    def _log(self, message: str) -> None:
        self._log_sink(PROCESS_LOG, message)
