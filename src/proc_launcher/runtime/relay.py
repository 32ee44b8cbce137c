"""Line-oriented relay of the child's stdout and stderr.

An ``asyncio.StreamReader`` has exactly one consumer, so the relay owns the
readers and republishes each decoded line through a ``LineStream``. The log
sink is one subscriber; readiness waits subscribe alongside it.

Order is preserved within a stream. The two streams are read by separate
tasks, so there is no ordering between them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .listeners import Listener, ListenerSet

__all__ = [
    "LogChannel",
    "LogSink",
    "LoggingSink",
    "LineStream",
    "OutputRelay",
    "PROCESS_LOG",
    "STDOUT_LOG",
    "STDERR_LOG",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogChannel:
    """Identity of a log line's origin.

    Attributes:
        name: Channel name shown with the line
        severity: ``logging`` level the line is reported at
    """

    name: str
    severity: int = logging.INFO


PROCESS_LOG = LogChannel("process")
STDOUT_LOG = LogChannel("process:out")
STDERR_LOG = LogChannel("process:err", logging.WARNING)

LogSink = Callable[[LogChannel, str], None]


class LoggingSink:
    """Log sink that writes channel lines to a ``logging`` logger."""

    def __init__(self, target: logging.Logger | None = None) -> None:
        self.logger = target or logging.getLogger("proc_launcher.process")

    def __call__(self, channel: LogChannel, line: str) -> None:
        self.logger.log(channel.severity, f"[{channel.name}] {line}")


class LineStream:
    """Observable stream of decoded lines from one pipe.

    Attributes:
        name: ``stdout`` or ``stderr``
        closed: True once the pipe hit EOF or failed
        error: The read error that closed the stream, if any
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.closed = False
        self.error: BaseException | None = None
        self._line_listeners = ListenerSet()
        self._close_listeners = ListenerSet()

    def __repr__(self) -> str:
        return f"LineStream(name={self.name}, closed={self.closed})"

    def add_line_listener(self, callback: Callable[[str], None]) -> Listener:
        return self._line_listeners.add(callback)

    def add_close_listener(
        self,
        callback: Callable[[BaseException | None], None],
    ) -> Listener:
        return self._close_listeners.add(callback)

    def feed_line(self, line: str) -> None:
        if self.closed:
            return
        self._line_listeners.emit(line, on_error=self._report)

    def close(self, error: BaseException | None = None) -> None:
        if self.closed:
            return
        self.closed = True
        self.error = error
        self._close_listeners.emit(error, on_error=self._report)

    def _report(self, e: Exception) -> None:
        logger.warning(f"Error in {self.name} listener: {e}")


class OutputRelay:
    """Reads both pipes of a child and forwards every line to a sink.

    Example:
        relay = OutputRelay(process, sink)
        relay.start()
        relay.stdout.add_line_listener(print)
        ...
        await relay.drain(timeout=1.0)

    Args:
        process: Child started with ``stdout=PIPE`` and ``stderr=PIPE``
        sink: Receives ``(channel, line)`` pairs
        encoding: Encoding used to decode output bytes
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        sink: LogSink,
        encoding: str = "utf-8",
    ) -> None:
        self._process = process
        self._sink = sink
        self._encoding = encoding
        self.stdout = LineStream("stdout")
        self.stderr = LineStream("stderr")
        self._tasks: list[asyncio.Task[None]] = []

    def start(self) -> None:
        """Attach the sink and start one reader task per pipe."""
        pairs = (
            (self._process.stdout, self.stdout, STDOUT_LOG),
            (self._process.stderr, self.stderr, STDERR_LOG),
        )
        for reader, stream, channel in pairs:
            if reader is None:
                stream.close()
                continue
            stream.add_line_listener(
                lambda line, channel=channel: self._sink(channel, line)
            )
            self._tasks.append(
                asyncio.create_task(
                    self._pump(reader, stream),
                    name=f"relay-{stream.name}-{self._process.pid}",
                )
            )

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for both pipes to reach EOF.

        The reader tasks keep running if the timeout expires.

        Returns:
            True if both streams finished within ``timeout``
        """
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        if pending:
            logger.debug(
                f"Output of pid={self._process.pid} still open after {timeout}s"
            )
        return not pending

    async def _pump(self, reader: asyncio.StreamReader, stream: LineStream) -> None:
        error: BaseException | None = None
        try:
            while True:
                try:
                    raw = await reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as e:
                    # EOF; the partial is the unterminated last line, if any
                    if e.partial:
                        stream.feed_line(self._decode(e.partial))
                    break
                except asyncio.LimitOverrunError as e:
                    logger.warning(f"Dropped {stream.name} line over the size limit: {e}")
                    await self._skip_line(reader, e.consumed)
                    continue
                stream.feed_line(self._decode(raw))
        except OSError as e:
            error = e
            logger.debug(f"Error reading {stream.name}: {e}")
        finally:
            stream.close(error)

    @staticmethod
    async def _skip_line(reader: asyncio.StreamReader, consumed: int) -> None:
        """Discard input up to and including the next newline."""
        try:
            while True:
                await reader.readexactly(consumed)
                try:
                    await reader.readuntil(b"\n")
                    return
                except asyncio.LimitOverrunError as e:
                    consumed = e.consumed
        except asyncio.IncompleteReadError:
            # EOF inside the oversized line
            return

    def _decode(self, raw: bytes) -> str:
        line = raw.decode(self._encoding, errors="replace")
        if line.endswith("\n"):
            line = line[:-1]
        if line.endswith("\r"):
            line = line[:-1]
        return line
