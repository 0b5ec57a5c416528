"""Tests for the log multiplexer — sinks, console prefixing, side channel."""

from __future__ import annotations

import asyncio
import io

import pytest

from buildpod.runtimes.logs import (
    ConsoleLogWriter,
    LogMultiplexer,
    format_elapsed,
    log_path,
)
from buildpod.runtimes.mock_transports import FakeLogStream
from buildpod.runtimes.termination import TerminationSignal


# ── Formatting ───────────────────────────────────────────────────────────


class TestConsoleLogWriter:
    def test_elapsed_truncated_to_millis(self):
        assert format_elapsed(1.23456) == "1.234s"
        assert format_elapsed(0.0009) == "0.000s"
        assert format_elapsed(12.0) == "12.000s"

    def test_prefix_and_elapsed(self):
        ticks = iter([100.0, 101.5])
        out = io.StringIO()
        writer = ConsoleLogWriter("init", out, clock=lambda: next(ticks))
        writer.write(b"hello")
        assert out.getvalue() == "init [+1.500s]: hello\n"

    def test_invalid_utf8_is_replaced(self):
        out = io.StringIO()
        ConsoleLogWriter("c", out, clock=lambda: 0.0).write(b"\xffok")
        assert out.getvalue().endswith("�ok\n")

    def test_log_path(self, tmp_path):
        assert log_path(tmp_path, "u", "init") == tmp_path / "u-init.log"


# ── Multiplexer ──────────────────────────────────────────────────────────


class TestLogMultiplexer:
    @pytest.mark.asyncio
    async def test_copies_to_file_and_console(self, tmp_path, console):
        mux = LogMultiplexer("b1-5-worker-0", tmp_path, TerminationSignal(), console=console)
        mux.attach("init", FakeLogStream([b"one", b"two"]))
        await mux.wait(timeout=1.0)
        await mux.aclose()

        path = tmp_path / "b1-5-worker-0-init.log"
        assert path.read_bytes() == b"one\ntwo\n"
        lines = console.getvalue().splitlines()
        assert lines[0].startswith("init [+") and lines[0].endswith("]: one")
        assert mux.drain_errors() == []

    @pytest.mark.asyncio
    async def test_file_is_appended(self, tmp_path, console):
        for line in (b"first", b"second"):
            mux = LogMultiplexer("u", tmp_path, TerminationSignal(), console=console)
            mux.attach("c", FakeLogStream([line]))
            await mux.wait(timeout=1.0)
        assert (tmp_path / "u-c.log").read_bytes() == b"first\nsecond\n"

    @pytest.mark.asyncio
    async def test_stream_closed_is_normal_end(self, tmp_path, console):
        stream = FakeLogStream([b"x"], hold_open=True)
        mux = LogMultiplexer("u", tmp_path, TerminationSignal(), console=console)
        mux.attach("c", stream)
        await asyncio.sleep(0.01)
        await stream.aclose()  # peer closes: FakeLogStream raises StreamClosed
        await mux.wait(timeout=1.0)
        assert mux.drain_errors() == []

    @pytest.mark.asyncio
    async def test_copy_error_goes_to_side_channel(self, tmp_path, console):
        mux = LogMultiplexer("u", tmp_path, TerminationSignal(), console=console)
        broken = FakeLogStream([b"a"], error=RuntimeError("reset by peer"))
        healthy = FakeLogStream([b"b", b"c"])
        mux.attach("init", broken)
        mux.attach("main", healthy)
        await mux.wait(timeout=1.0)

        errors = mux.drain_errors()
        assert [e.container for e in errors] == ["init"]
        assert "reset by peer" in str(errors[0])
        # sibling unaffected
        assert (tmp_path / "u-main.log").read_bytes() == b"b\nc\n"
        assert broken.closed and healthy.closed

    @pytest.mark.asyncio
    async def test_termination_stops_copy_and_closes(self, tmp_path, console):
        term = TerminationSignal()
        stream = FakeLogStream([b"x"], hold_open=True)
        mux = LogMultiplexer("u", tmp_path, term, console=console)
        task = mux.attach("c", stream)
        await asyncio.sleep(0.01)
        term.fire()
        await asyncio.wait_for(task, timeout=1.0)
        assert stream.closed
        assert (tmp_path / "u-c.log").read_bytes() == b"x\n"

    @pytest.mark.asyncio
    async def test_aclose_cancels_open_streams(self, tmp_path, console):
        stream = FakeLogStream(hold_open=True)
        mux = LogMultiplexer("u", tmp_path, TerminationSignal(), console=console)
        task = mux.attach("c", stream)
        await mux.aclose()
        assert task.done()
        assert stream.closed

    @pytest.mark.asyncio
    async def test_unwritable_logs_dir_is_reported(self, tmp_path, console):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        stream = FakeLogStream([b"x"])
        mux = LogMultiplexer("u", blocker, TerminationSignal(), console=console)
        mux.attach("c", stream)
        await mux.wait(timeout=1.0)
        errors = mux.drain_errors()
        assert len(errors) == 1
        assert "failed to create log file" in errors[0].message
        assert stream.closed

    def test_started_tracks_attach(self, tmp_path):
        mux = LogMultiplexer("u", tmp_path, TerminationSignal())
        assert not mux.started
        assert mux.containers == []
