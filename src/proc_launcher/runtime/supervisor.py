"""Process supervisor: launch a child and guarantee its teardown.

proc-launcher runtime module v0.1.0

This module provides:
- Cross-platform process tree isolation (new session/process group)
- Stdout/stderr relay to a log sink
- Graceful close with escalation to a forceful kill of the whole tree
- Orphan prevention: the child is killed if the host interpreter exits
- Optional forwarding of SIGINT/SIGTERM/SIGHUP to graceful close

Key design points:
- POSIX: start_new_session=True so the child leads its own process group
- Windows: CREATE_NEW_PROCESS_GROUP; tree kill goes through taskkill
- The exit is observed once, by a watcher task; the caller's exit callback
  runs after every host listener of the launch has been detached
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Awaitable, Callable, Coroutine, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..config import Config, get_config
from ..errors import LaunchError
from .cleaner import ResourceCleaner
from .coordinator import ShutdownCoordinator, ShutdownState
from .host import HostEvents, get_host_events
from .listeners import Listener
from .process import ExitCallback, LaunchedProcess
from .relay import PROCESS_LOG, LoggingSink, LogSink, OutputRelay
from .tree_kill import IS_WINDOWS

__all__ = [
    "LaunchOptions",
    "LaunchResult",
    "ProcessSupervisor",
    "launch_process",
    "SIGINT_EXIT_STATUS",
]

logger = logging.getLogger(__name__)

# 128 + SIGINT(2), the shell convention for "interrupted"
SIGINT_EXIT_STATUS = 130

EnvValue = str | int | float | bool | None


@dataclass(frozen=True)
class LaunchOptions:
    """Description of a process launch.

    Attributes:
        executable_path: Program to run
        args: Arguments, without the executable
        env: Full environment for the child (None = inherit). Values are
            converted to strings; None values are left out.
        cwd: Working directory (None = inherit)
        pipe: Pipe stdout/stderr through the log sink instead of
            inheriting the host's
        handle_sigint: Close gracefully on host SIGINT, then exit the host
            with status 130
        handle_sigterm: Close gracefully on host SIGTERM
        handle_sighup: Close gracefully on host SIGHUP
        temp_directories: Directories owned by this launch, removed on
            every shutdown path
        attempt_graceful_close: Asks the child to exit; must raise if it
            does not close it
        on_exit: Called once with ``(exit_code, signal_name)``
        log_sink: Receives ``(channel, line)`` pairs (default: logging)
    """

    executable_path: str
    args: Sequence[str] = ()
    env: Mapping[str, EnvValue] | None = None
    cwd: str | os.PathLike[str] | None = None
    pipe: bool = True
    handle_sigint: bool = False
    handle_sigterm: bool = False
    handle_sighup: bool = False
    temp_directories: Sequence[str | os.PathLike[str]] = ()
    attempt_graceful_close: Callable[[], Awaitable[Any]] | None = None
    on_exit: ExitCallback | None = None
    log_sink: LogSink | None = field(default=None, compare=False)


@dataclass(frozen=True)
class LaunchResult:
    """A running child and the two ways to stop it.

    Attributes:
        process: Handle of the launched process
        graceful_close: Coroutine function; closes cooperatively, then by
            force, and returns once the process and its temp dirs are gone
        kill: Kills immediately; the returned awaitable resolves once
            cleanup completed
        coordinator: Shutdown state machine behind both callables
    """

    process: LaunchedProcess
    graceful_close: Callable[[], Awaitable[None]]
    kill: Callable[[], Awaitable[None]]
    coordinator: ShutdownCoordinator = field(repr=False, compare=False)

    @property
    def state(self) -> ShutdownState:
        return self.coordinator.state


class ProcessSupervisor:
    """Launches child processes and wires their shutdown protocol.

    Example:
        supervisor = ProcessSupervisor()
        result = await supervisor.launch(LaunchOptions(
            executable_path="my-server",
            args=["--port", "0"],
            temp_directories=[profile_dir],
            attempt_graceful_close=ask_server_to_quit,
        ))
        match = await wait_for_line(
            result.process, result.process.stdout, r"Listening on (\\S+)", 5.0
        )
        ...
        await result.graceful_close()

    Args:
        host_events: Registry for host exit/signal hooks (default: the
            process-wide one)
        config: Settings (default: loaded from the environment)
        exit_host: Called with 130 after an intercepted SIGINT was handled
    """

    def __init__(
        self,
        host_events: HostEvents | None = None,
        config: Config | None = None,
        exit_host: Callable[[int], Any] = sys.exit,
    ) -> None:
        self._host = host_events or get_host_events()
        self._config = config or get_config()
        self._exit_host = exit_host
        self._tasks: set[asyncio.Task[Any]] = set()

    async def launch(self, options: LaunchOptions) -> LaunchResult:
        """Spawn the child described by ``options``.

        Raises:
            LaunchError: The OS could not create the process; temporary
                directories have been removed already
        """
        sink = options.log_sink or LoggingSink()
        cleaner = ResourceCleaner(options.temp_directories)
        sink(PROCESS_LOG, f"<launching> {options.executable_path} {' '.join(options.args)}")

        pipe = asyncio.subprocess.PIPE if options.pipe else None
        try:
            # stdin=DEVNULL: never hand the host's stdin to the child
            process = await asyncio.create_subprocess_exec(
                options.executable_path,
                *options.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=pipe,
                stderr=pipe,
                cwd=options.cwd,
                limit=self._config.line_limit,
                **self._build_subprocess_kwargs(options),
            )
        except OSError as e:
            logger.debug(f"Spawn of {options.executable_path} failed: {e}")
            await cleaner.remove()
            raise LaunchError(options.executable_path, e) from e

        sink(PROCESS_LOG, f"<launched> pid={process.pid}")

        relay: OutputRelay | None = None
        if options.pipe:
            relay = OutputRelay(process, sink)
            relay.start()
        handle = LaunchedProcess(
            process,
            stdout=relay.stdout if relay else None,
            stderr=relay.stderr if relay else None,
        )

        listeners: list[Listener] = []
        coordinator = ShutdownCoordinator(
            handle,
            cleaner,
            options.attempt_graceful_close,
            options.on_exit,
            listeners,
            sink,
            tree_kill_timeout=self._config.tree_kill_timeout,
        )
        listeners.extend(self._register_host_listeners(options, coordinator))

        self._spawn(
            self._watch_exit(process, handle, relay, coordinator),
            f"exit-watcher-{process.pid}",
        )

        return LaunchResult(
            process=handle,
            graceful_close=coordinator.graceful_close,
            kill=coordinator.kill,
            coordinator=coordinator,
        )

    def _build_subprocess_kwargs(self, options: LaunchOptions) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            options: Launch options

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        if options.env is not None:
            kwargs["env"] = _build_env(options.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # Child leads a new process group; the tree can be signalled as one
            kwargs["start_new_session"] = True

        return kwargs

    def _register_host_listeners(
        self,
        options: LaunchOptions,
        coordinator: ShutdownCoordinator,
    ) -> list[Listener]:
        # Never leave an orphan behind when the host goes away
        listeners = [self._host.add_exit_listener(coordinator.kill_now)]

        if options.handle_sigint:
            listeners.append(
                self._host.add_signal_listener(
                    signal.SIGINT,
                    lambda: self._spawn(self._close_on_interrupt(coordinator), "sigint-close"),
                )
            )
        if options.handle_sigterm:
            listeners.append(
                self._host.add_signal_listener(
                    signal.SIGTERM,
                    lambda: self._spawn(coordinator.graceful_close(), "sigterm-close"),
                )
            )
        if options.handle_sighup:
            sighup = getattr(signal, "SIGHUP", None)
            if sighup is None:
                logger.debug("SIGHUP is not available on this platform")
            else:
                listeners.append(
                    self._host.add_signal_listener(
                        sighup,
                        lambda: self._spawn(coordinator.graceful_close(), "sighup-close"),
                    )
                )

        return listeners

    async def _close_on_interrupt(self, coordinator: ShutdownCoordinator) -> None:
        await coordinator.graceful_close()
        self._exit_host(SIGINT_EXIT_STATUS)

    async def _watch_exit(
        self,
        process: asyncio.subprocess.Process,
        handle: LaunchedProcess,
        relay: OutputRelay | None,
        coordinator: ShutdownCoordinator,
    ) -> None:
        try:
            returncode = await process.wait()
        except Exception as e:
            logger.warning(f"Lost track of subprocess pid={process.pid}: {e}")
            handle.notify_error(e)
            # No exit will ever be observed: end the tree and close as exited
            coordinator.kill_now()
            handle.notify_exit(process.returncode)
            return

        # Let buffered output reach the sink before the exit is announced
        if relay is not None:
            await relay.drain(self._config.drain_timeout)

        logger.debug(f"Subprocess exited pid={process.pid} returncode={returncode}")
        handle.notify_exit(returncode)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def _build_env(env: Mapping[str, EnvValue]) -> dict[str, str]:
    result: dict[str, str] = {}
    for key, value in env.items():
        if value is None:
            continue
        if isinstance(value, bool):
            result[key] = "true" if value else "false"
        else:
            result[key] = str(value)
    return result


async def launch_process(options: LaunchOptions) -> LaunchResult:
    """Launch with a default supervisor.

    Convenience function for callers that need no custom host registry or
    configuration.
    """
    return await ProcessSupervisor().launch(options)
