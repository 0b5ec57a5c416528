"""Log multiplexing for worker containers.

Copies each container's output to two sinks at once: an append-only
file under the logs directory and a console writer that prefixes every
line with the container name and the time elapsed since the writer was
created.

Output Structure::

    {logs_dir}/
    ├── b1-5-worker-0-init.log
    └── b1-5-worker-0-b1-5-worker-0.log

Console::

    init [+0.412s]: + update-ca-trust
    b1-5-worker-0 [+3.007s]: building...

Key Concepts:
    ConsoleLogWriter: Prefixes lines, truncates elapsed time to ms.
    LogSink: File + console pair for one container of one run.
    LogMultiplexer: Owns one copy task per container. Failures go to
        ``errors`` (side channel) and never cancel sibling copies.

Architecture Decisions:
    - One task per container: a slow or broken stream cannot stall the
      others or the supervising loop.
    - ``StreamClosed`` from a transport is a normal end-of-stream.
    - Every copy task races the ``TerminationSignal`` and closes both
      the file and the stream on every exit path.

Related Modules:
    - :mod:`buildpod.runtimes.cluster` — feeds pod log streams
    - :mod:`buildpod.runtimes.local` — feeds the attach stream

Tags:
    logs, multiplexer, console, streaming, sinks
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, TextIO

from buildpod.runtimes._types import LogStream, StreamClosed
from buildpod.runtimes.termination import TerminationSignal, first_completed

logger = logging.getLogger(__name__)


def log_path(logs_dir: Path, unit: str, container: str) -> Path:
    """``<logs-dir>/<unit-name>-<container-name>.log``"""
    return logs_dir / f"{unit}-{container}.log"


def format_elapsed(seconds: float) -> str:
    """Format elapsed seconds truncated (not rounded) to milliseconds.

    Example:
        >>> format_elapsed(1.23456)
        '1.234s'
    """
    millis = int(seconds * 1000)
    return f"{millis // 1000}.{millis % 1000:03d}s"


class ConsoleLogWriter:
    """Writes prefixed log lines to a text stream.

    Every line becomes ``<prefix> [+<elapsed>]: <line>``.
    """

    def __init__(
        self,
        prefix: str,
        stream: TextIO | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.prefix = prefix
        self._stream = stream or sys.stdout
        self._clock = clock
        self._start = clock()

    def write(self, line: bytes) -> None:
        since = format_elapsed(self._clock() - self._start)
        text = line.decode("utf-8", errors="replace")
        self._stream.write(f"{self.prefix} [+{since}]: {text}\n")
        self._stream.flush()


@dataclass
class LogSink:
    """Disk file + console writer for one container of one run."""

    container: str
    path: Path
    file: BinaryIO
    console: ConsoleLogWriter

    @classmethod
    def open(
        cls,
        logs_dir: Path,
        unit: str,
        container: str,
        console: TextIO | None = None,
    ) -> LogSink:
        logs_dir.mkdir(parents=True, exist_ok=True)
        path = log_path(logs_dir, unit, container)
        return cls(
            container=container,
            path=path,
            file=path.open("ab"),
            console=ConsoleLogWriter(container, console),
        )

    def write(self, line: bytes) -> None:
        self.file.write(line + b"\n")
        self.file.flush()
        self.console.write(line)

    def close(self) -> None:
        if not self.file.closed:
            self.file.close()


@dataclass(frozen=True)
class LogCopyError:
    """One failure reported on the multiplexer's side channel."""

    container: str
    message: str

    def __str__(self) -> str:
        return f"{self.container}: {self.message}"


class LogMultiplexer:
    """Fans out container streams of one unit to their sinks.

    Example:
        >>> mux = LogMultiplexer("b1-5-worker-0", Path("/srv/logs"), term)
        >>> mux.attach("init", init_stream)
        >>> mux.attach("b1-5-worker-0", main_stream)
        >>> ...
        >>> await mux.aclose()
        >>> mux.drain_errors()
        []
    """

    def __init__(
        self,
        unit: str,
        logs_dir: Path,
        termination: TerminationSignal,
        *,
        console: TextIO | None = None,
    ) -> None:
        self.unit = unit
        self._logs_dir = logs_dir
        self._term = termination
        self._console = console
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._open: list[tuple[LogSink, LogStream]] = []
        self.errors: asyncio.Queue[LogCopyError] = asyncio.Queue()

    @property
    def started(self) -> bool:
        return bool(self._tasks)

    @property
    def containers(self) -> list[str]:
        return list(self._tasks)

    def attach(self, container: str, stream: LogStream) -> asyncio.Task[None]:
        """Start copying ``stream`` for ``container`` in its own task."""
        try:
            sink = LogSink.open(self._logs_dir, self.unit, container, self._console)
        except OSError as exc:
            logger.error("Failed to create log for %s/%s: %s", self.unit, container, exc)
            self.report(container, f"failed to create log file: {exc}")
            task = asyncio.ensure_future(stream.aclose())
            self._tasks[container] = task
            return task

        logger.info("Logging %s/%s to %s", self.unit, container, sink.path)
        self._open.append((sink, stream))
        task = asyncio.create_task(
            self._copy(sink, stream), name=f"logs-{self.unit}-{container}",
        )
        self._tasks[container] = task
        return task

    def report(self, container: str, message: str) -> None:
        """Put a failure on the side channel."""
        self.errors.put_nowait(LogCopyError(container, message))

    def drain_errors(self) -> list[LogCopyError]:
        drained: list[LogCopyError] = []
        while not self.errors.empty():
            drained.append(self.errors.get_nowait())
        return drained

    async def wait(self, timeout: float | None = None) -> None:
        """Wait until every copy task finished (streams ended)."""
        if self._tasks:
            await asyncio.wait(list(self._tasks.values()), timeout=timeout)

    async def aclose(self) -> None:
        """Stop all copy tasks and close every file and stream."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # A task cancelled before its first step never ran its finally.
        for sink, stream in self._open:
            if not sink.file.closed:
                sink.close()
                await _close_stream(self.unit, sink.container, stream)
        self._open.clear()

    async def _copy(self, sink: LogSink, stream: LogStream) -> None:
        try:
            if self._term.fired:
                return
            done = await first_completed(
                copy_lines(stream, sink, self._term), self._term.wait(),
            )
            for fut in done:
                if not fut.cancelled() and fut.exception() is not None:
                    raise fut.exception()  # type: ignore[misc]
        except StreamClosed:
            logger.debug("Stream for %s/%s closed", self.unit, sink.container)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Log copy for %s/%s failed: %s", self.unit, sink.container, exc)
            self.report(sink.container, str(exc))
        finally:
            sink.close()
            await _close_stream(self.unit, sink.container, stream)
            logger.info("Logging terminated for %s/%s", self.unit, sink.container)


async def _close_stream(unit: str, container: str, stream: LogStream) -> None:
    try:
        await stream.aclose()
    except Exception as exc:
        logger.info("Failed closing log stream for %s/%s: %s", unit, container, exc)


async def copy_lines(
    stream: LogStream,
    sink: LogSink,
    termination: TerminationSignal,
) -> int:
    """Copy lines until the stream ends or termination fires.

    Returns the number of lines written.
    """
    count = 0
    async for line in stream:
        if termination.fired:
            break
        sink.write(line)
        count += 1
    return count
