"""ProcessSupervisor and ShutdownCoordinator integration tests.

Test coverage:
- Launch, output relay and lifecycle log lines
- Graceful close, escalation on hook failure, reentrant escalation
- kill() idempotence and synchronous signal delivery
- Host exit guard and signal forwarding
- Listener teardown before the exit callback
- Temporary directory removal on every path
- Launch failures
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Callable
from pathlib import Path
from unittest import mock

import pytest

from proc_launcher.errors import LaunchError
from proc_launcher.runtime.coordinator import ShutdownState
from proc_launcher.runtime.host import HostEvents, get_host_events
from proc_launcher.runtime.line_awaiter import wait_for_line
from proc_launcher.runtime.supervisor import (
    SIGINT_EXIT_STATUS,
    LaunchOptions,
    LaunchResult,
    ProcessSupervisor,
    launch_process,
)
from proc_launcher.runtime.tree_kill import IS_WINDOWS, kill_process_tree, terminate_process_tree

posix_only = pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")


async def _wait_until(predicate: Callable[[], object], timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


class ExitRecorder:
    """on_exit callback that records its calls."""

    def __init__(self) -> None:
        self.calls: list[tuple[int | None, str | None]] = []

    def __call__(self, exit_code: int | None, signal_name: str | None) -> None:
        self.calls.append((exit_code, signal_name))


@pytest.fixture
def on_exit() -> ExitRecorder:
    return ExitRecorder()


@pytest.fixture
def launch(
    supervisor: ProcessSupervisor,
    python_executable: str,
    fake_server_argv,
    sink,
    on_exit: ExitRecorder,
):
    """Launch fake_server.py; every launch is killed at teardown."""
    results: list[LaunchResult] = []

    async def start(*server_args: str, **overrides) -> LaunchResult:
        options = dict(
            executable_path=python_executable,
            args=fake_server_argv(*server_args),
            log_sink=sink,
            on_exit=on_exit,
        )
        options.update(overrides)
        result = await supervisor.launch(LaunchOptions(**options))
        results.append(result)
        return result

    yield start

    for result in results:
        result.coordinator.kill_now()


async def _ready(result: LaunchResult) -> None:
    await wait_for_line(result.process, result.process.stdout, "Listening on", 5.0)


def _terminating_hook(holder: list[LaunchResult]):
    async def attempt_graceful_close() -> None:
        terminate_process_tree(holder[0].process.pid)

    return attempt_graceful_close


class TestLaunch:
    """Test launching and output relay."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_output_relayed_and_lifecycle_logged(self, launch, sink, on_exit):
        result = await launch("--lines", "2", "--stderr", "careful")

        await _wait_until(lambda: on_exit.calls)
        await result.kill()

        assert sink.lines("process:out") == ["line 1", "line 2"]
        assert sink.lines("process:err") == ["careful"]
        lifecycle = sink.lines("process")
        assert lifecycle[0].startswith("<launching> ")
        assert lifecycle[1] == f"<launched> pid={result.process.pid}"
        assert "<process did exit 0, None>" in lifecycle
        assert on_exit.calls == [(0, None)]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_launch_process_default_supervisor(
        self, python_executable, fake_server_argv, sink, on_exit
    ):
        result = await launch_process(
            LaunchOptions(
                executable_path=python_executable,
                args=fake_server_argv("--lines", "1"),
                log_sink=sink,
                on_exit=on_exit,
            )
        )

        await _wait_until(lambda: on_exit.calls)
        await result.kill()

        assert sink.lines("process:out") == ["line 1"]
        assert on_exit.calls == [(0, None)]
        assert get_host_events().listener_count("exit") == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_no_pipe_inherits_output(self, launch, on_exit):
        result = await launch("--exit-code", "0", pipe=False)

        assert result.process.stdout is None
        assert result.process.stderr is None
        await _wait_until(lambda: on_exit.calls)
        await result.kill()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_env_and_cwd(
        self, supervisor, python_executable, sink, on_exit, tmp_path: Path
    ):
        script = (
            "import os; print(os.environ['FAKE_VAR'], os.environ['FLAG'], "
            "'SKIP' in os.environ, os.getcwd())"
        )
        result = await supervisor.launch(
            LaunchOptions(
                executable_path=python_executable,
                args=["-c", script],
                env={**os.environ, "FAKE_VAR": "x", "FLAG": True, "SKIP": None},
                cwd=tmp_path,
                log_sink=sink,
                on_exit=on_exit,
            )
        )
        await _wait_until(lambda: on_exit.calls)
        await result.kill()

        fake_var, flag, has_skip, cwd = sink.lines("process:out")[0].split(" ", 3)
        assert (fake_var, flag, has_skip) == ("x", "true", "False")
        assert Path(cwd).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_child_leads_process_group(
        self, supervisor, python_executable, sink, on_exit
    ):
        result = await supervisor.launch(
            LaunchOptions(
                executable_path=python_executable,
                args=["-c", "import os; print(os.getpgid(0) == os.getpid())"],
                log_sink=sink,
                on_exit=on_exit,
            )
        )
        await _wait_until(lambda: on_exit.calls)
        await result.kill()

        assert sink.lines("process:out") == ["True"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_launch_failure(
        self, supervisor, sink, temp_dirs: list[Path], host_events: HostEvents
    ):
        with pytest.raises(LaunchError) as exc_info:
            await supervisor.launch(
                LaunchOptions(
                    executable_path="nonexistent_command_xyz_123",
                    temp_directories=temp_dirs,
                    log_sink=sink,
                )
            )

        assert isinstance(exc_info.value.os_error, OSError)
        assert exc_info.value.__cause__ is exc_info.value.os_error
        assert "nonexistent_command_xyz_123" in str(exc_info.value)
        assert not any(d.exists() for d in temp_dirs)
        assert not any(line.startswith("<launched>") for line in sink.lines("process"))
        assert host_events.listener_count("exit") == 0


class TestGracefulClose:
    """Test the graceful path and its escalation."""

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_resolves_after_exit_and_cleanup(self, launch, on_exit, temp_dirs):
        holder: list[LaunchResult] = []
        result = await launch(
            "--listen", "127.0.0.1:0", "--idle",
            temp_directories=temp_dirs,
            attempt_graceful_close=_terminating_hook(holder),
        )
        holder.append(result)
        await _ready(result)

        await result.graceful_close()

        assert on_exit.calls == [(143, None)]
        assert result.process.exited
        assert result.coordinator.cleanup_complete
        assert not any(d.exists() for d in temp_dirs)
        assert result.state is ShutdownState.CLOSED

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_hook_failure_escalates_to_kill(self, launch, on_exit, temp_dirs, sink):
        async def failing_hook() -> None:
            raise RuntimeError("protocol connection lost")

        result = await launch(
            "--idle",
            temp_directories=temp_dirs,
            attempt_graceful_close=failing_hook,
        )

        await result.graceful_close()

        assert on_exit.calls == [(None, "SIGKILL")]
        assert result.process.killed
        assert not any(d.exists() for d in temp_dirs)
        assert "<kill>" in sink.lines("process")

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_second_call_forces_kill(self, launch, on_exit, sink):
        hook_cancelled = asyncio.Event()

        async def stuck_hook() -> None:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                hook_cancelled.set()
                raise

        result = await launch("--idle", "--ignore-term", attempt_graceful_close=stuck_hook)

        first = asyncio.create_task(result.graceful_close())
        await _wait_until(lambda: result.state is ShutdownState.GRACEFULLY_CLOSING)
        await asyncio.sleep(0.05)
        assert not first.done()

        await result.graceful_close()
        await asyncio.wait_for(first, timeout=5)

        assert on_exit.calls == [(None, "SIGKILL")]
        assert hook_cancelled.is_set()
        assert "<forcefully close>" in sink.lines("process")
        assert result.state is ShutdownState.CLOSED

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_concurrent_calls_single_exit(self, launch, on_exit):
        async def stuck_hook() -> None:
            await asyncio.Event().wait()

        result = await launch("--idle", attempt_graceful_close=stuck_hook)

        await asyncio.gather(result.graceful_close(), result.graceful_close())

        assert on_exit.calls == [(None, "SIGKILL")]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_after_exit_is_noop(self, launch, on_exit):
        hook = mock.AsyncMock()
        result = await launch("--exit-code", "4", attempt_graceful_close=hook)
        await _wait_until(lambda: on_exit.calls)

        await result.graceful_close()

        hook.assert_not_called()
        assert on_exit.calls == [(4, None)]

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_without_hook_kills(self, launch, on_exit):
        result = await launch("--idle", attempt_graceful_close=None)

        await result.graceful_close()

        assert on_exit.calls == [(None, "SIGKILL")]


class TestKill:
    """Test the forceful path."""

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_signal_sent_before_await(self, launch, on_exit, temp_dirs):
        result = await launch("--idle", temp_directories=temp_dirs)

        pending = result.kill()

        assert result.process.killed
        # Synchronous best-effort removal already happened
        assert not any(d.exists() for d in temp_dirs)
        await pending
        assert on_exit.calls == [(None, "SIGKILL")]

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_repeated_kill_signals_once(self, launch, on_exit):
        result = await launch("--idle")

        with mock.patch(
            "proc_launcher.runtime.coordinator.kill_process_tree",
            wraps=kill_process_tree,
        ) as spy:
            await asyncio.gather(result.kill(), result.kill(), result.kill())
            await result.kill()

        spy.assert_called_once()
        assert on_exit.calls == [(None, "SIGKILL")]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_kill_after_exit_is_noop(self, launch, on_exit, temp_dirs):
        result = await launch("--exit-code", "0", temp_directories=temp_dirs)
        await _wait_until(lambda: on_exit.calls)

        with mock.patch("proc_launcher.runtime.coordinator.kill_process_tree") as spy:
            await result.kill()
            await result.kill()

        spy.assert_not_called()
        assert on_exit.calls == [(0, None)]
        assert not any(d.exists() for d in temp_dirs)

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_failed_wait_still_closes(self, launch, on_exit, temp_dirs, host_events):
        errors = []
        with mock.patch.object(
            asyncio.subprocess.Process,
            "wait",
            new_callable=mock.AsyncMock,
            side_effect=RuntimeError("child watcher gone"),
        ):
            result = await launch(
                "--idle",
                temp_directories=temp_dirs,
                handle_sigterm=True,
            )
            result.process.add_error_listener(errors.append)

            await _wait_until(lambda: on_exit.calls)
            await asyncio.wait_for(result.kill(), timeout=5)
            await asyncio.wait_for(result.graceful_close(), timeout=5)

        assert [str(e) for e in errors] == ["child watcher gone"]
        assert len(on_exit.calls) == 1
        assert on_exit.calls[0][0] is None
        assert result.process.killed
        assert result.state is ShutdownState.CLOSED
        assert result.coordinator.cleanup_complete
        assert not any(d.exists() for d in temp_dirs)
        assert host_events.listener_count("exit") == 0
        assert host_events.listener_count(signal.SIGTERM) == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_kill_error_is_swallowed(self, launch, on_exit):
        result = await launch("--exit-code", "0")

        with mock.patch(
            "proc_launcher.runtime.coordinator.kill_process_tree",
            side_effect=ProcessLookupError("gone"),
        ):
            await result.kill()

        assert on_exit.calls == [(0, None)]

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_temp_dirs_removed_on_both_paths(self, launch, temp_dirs, caplog):
        result = await launch("--idle", temp_directories=temp_dirs)

        with mock.patch(
            "proc_launcher.runtime.cleaner.ResourceCleaner._remove_one",
            wraps=result.coordinator._cleaner._remove_one,
        ) as spy:
            await result.kill()

        # Once from the kill path, once from the exit path, per directory
        assert spy.call_count == 2 * len(temp_dirs)
        assert not any(d.exists() for d in temp_dirs)
        assert "Failed to remove" not in caplog.text


class TestHostIntegration:
    """Test host exit guard, signal forwarding and listener teardown."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_listeners_removed_before_exit_callback(
        self, supervisor, python_executable, fake_server_argv, sink, host_events
    ):
        counts_during_callback = []

        def on_exit(exit_code, signal_name) -> None:
            counts_during_callback.append(
                (
                    host_events.listener_count("exit"),
                    host_events.listener_count(signal.SIGINT),
                    host_events.listener_count(signal.SIGTERM),
                )
            )

        result = await supervisor.launch(
            LaunchOptions(
                executable_path=python_executable,
                args=fake_server_argv("--delay", "0.2"),
                handle_sigint=True,
                handle_sigterm=True,
                handle_sighup=True,
                log_sink=sink,
                on_exit=on_exit,
            )
        )
        assert host_events.listener_count("exit") == 1
        assert host_events.listener_count(signal.SIGINT) == 1
        assert host_events.listener_count(signal.SIGTERM) == 1

        await _wait_until(lambda: counts_during_callback)
        await result.kill()

        assert counts_during_callback == [(0, 0, 0)]

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_host_exit_kills_synchronously(
        self, launch, host_events, on_exit, temp_dirs
    ):
        result = await launch("--idle", temp_directories=temp_dirs)

        host_events.dispatch_exit()

        assert result.process.killed
        assert not any(d.exists() for d in temp_dirs)
        assert result.state is ShutdownState.CLOSED
        await result.kill()
        assert on_exit.calls == [(None, "SIGKILL")]

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_sigterm_forwarded_to_graceful_close(self, launch, host_events, on_exit):
        holder: list[LaunchResult] = []
        result = await launch(
            "--listen", "127.0.0.1:0", "--idle",
            handle_sigterm=True,
            attempt_graceful_close=_terminating_hook(holder),
        )
        holder.append(result)
        await _ready(result)

        host_events.dispatch_signal(signal.SIGTERM)

        await _wait_until(lambda: result.coordinator.cleanup_complete)
        assert on_exit.calls == [(143, None)]

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_sigint_exits_host_with_130(
        self, launch, host_events, on_exit, exit_calls
    ):
        holder: list[LaunchResult] = []
        result = await launch(
            "--listen", "127.0.0.1:0", "--idle",
            handle_sigint=True,
            attempt_graceful_close=_terminating_hook(holder),
        )
        holder.append(result)
        await _ready(result)

        host_events.dispatch_signal(signal.SIGINT)

        await _wait_until(lambda: exit_calls)
        assert exit_calls == [SIGINT_EXIT_STATUS]
        assert on_exit.calls == [(143, None)]
        assert result.coordinator.cleanup_complete

    @pytest.mark.asyncio
    @posix_only
    @pytest.mark.timeout(15)
    async def test_double_sigint_forces_kill(
        self, launch, host_events, on_exit, exit_calls
    ):
        async def stuck_hook() -> None:
            await asyncio.Event().wait()

        result = await launch("--idle", handle_sigint=True, attempt_graceful_close=stuck_hook)

        host_events.dispatch_signal(signal.SIGINT)
        await _wait_until(lambda: result.state is ShutdownState.GRACEFULLY_CLOSING)
        # The forwarder is still registered while the graceful attempt runs
        host_events.dispatch_signal(signal.SIGINT)

        await _wait_until(lambda: len(exit_calls) == 2)
        assert on_exit.calls == [(None, "SIGKILL")]
        assert exit_calls == [SIGINT_EXIT_STATUS, SIGINT_EXIT_STATUS]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_exit_callback_error_does_not_block_cleanup(
        self, supervisor, python_executable, fake_server_argv, sink, temp_dirs
    ):
        def failing_on_exit(exit_code, signal_name) -> None:
            raise RuntimeError("callback bug")

        result = await supervisor.launch(
            LaunchOptions(
                executable_path=python_executable,
                args=fake_server_argv("--exit-code", "0"),
                temp_directories=temp_dirs,
                log_sink=sink,
                on_exit=failing_on_exit,
            )
        )

        await asyncio.wait_for(result.graceful_close(), timeout=5)
        assert not any(d.exists() for d in temp_dirs)
