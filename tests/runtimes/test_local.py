"""Tests for the local runner — container translation, scratch dir, teardown."""

from __future__ import annotations

import asyncio
import shutil
import stat
from pathlib import Path

import pytest
import requests

from buildpod.runtimes._types import FailureKind, StreamClosed
from buildpod.runtimes.local import (
    CLEANER_COMMAND,
    LOCAL_MARKER_ENV,
    ContainerRequest,
    LocalRunner,
    ThreadedLineStream,
    _LocalSession,
)
from buildpod.runtimes.mock_transports import FakeLocalClient
from buildpod.runtimes.termination import TerminationSignal


# ── Helpers ──────────────────────────────────────────────────────────────


class _ObservingClient(FakeLocalClient):
    """Records the state of the scratch dir when each container is created."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.scratch_seen: list[tuple[bool, int]] = []

    async def create_container(self, request: ContainerRequest) -> str:
        source = Path(request.mounts[0][0])
        mode = stat.S_IMODE(source.stat().st_mode) if source.is_dir() else 0
        self.scratch_seen.append((source.is_dir(), mode))
        return await super().create_container(request)


def _runner(client, tmp_path, console, **kwargs) -> LocalRunner:
    kwargs.setdefault("work_dir", tmp_path / "work")
    kwargs.setdefault("selinux_label", None)
    kwargs.setdefault("teardown_delay", 0.0)
    kwargs.setdefault("log_drain_seconds", 1.0)
    kwargs.setdefault("host_uid", 1234)
    kwargs.setdefault("device_exists", lambda path: path == "/dev/kvm")
    return LocalRunner(client, logs_dir=tmp_path / "logs", console=console, **kwargs)


def _scratch(tmp_path, spec) -> Path:
    return tmp_path / "work" / spec.name


# ── ContainerRequest ─────────────────────────────────────────────────────


class TestContainerRequest:
    def test_translation(self, spec, tmp_path, console):
        runner = _runner(FakeLocalClient(), tmp_path, console)
        request = runner.container_request(spec, Path("/host/srv"))

        assert request.name == spec.name
        assert request.image == spec.image
        assert request.entrypoint == ("/usr/bin/dumb-init",)
        assert request.command == ("/usr/bin/buildpod", "builder")
        assert request.env[LOCAL_MARKER_ENV] == "1"
        assert request.env["FOO"] == "bar"
        assert request.user == "builder"
        assert request.privileged is True
        assert request.network_mode == "host"
        assert request.mounts == (("/host/srv", "/srv"),)
        assert request.devices == ("/dev/kvm",)
        assert request.uid_map == ((0, 1234, 1), (1000, 1234, 200000))

    def test_create_kwargs(self, spec, tmp_path, console):
        request = _runner(FakeLocalClient(), tmp_path, console).container_request(spec, Path("/h"))
        kwargs = request.to_create_kwargs()
        assert kwargs["mounts"] == [{"type": "bind", "source": "/h", "target": "/srv"}]
        assert kwargs["idmappings"]["UIDMap"][1] == {"container_id": 1000, "host_id": 1234, "size": 200000}
        assert kwargs["tty"] is False
        assert kwargs["working_dir"] == "/srv"
        assert "image" not in kwargs

    def test_cleaner(self, spec, tmp_path, console):
        request = _runner(FakeLocalClient(), tmp_path, console).container_request(spec, Path("/h"))
        cleaner = request.cleaner()
        assert cleaner.name == f"{spec.name}-cleaner"
        assert cleaner.user == "root"
        assert cleaner.entrypoint == CLEANER_COMMAND == ("/bin/rm", "-rvf", "/srv/")
        assert cleaner.command == ()
        assert cleaner.mounts == request.mounts


# ── Lifecycle ────────────────────────────────────────────────────────────


class TestLocalRunner:
    @pytest.mark.asyncio
    async def test_success(self, spec, termination, tmp_path, console):
        client = _ObservingClient(lines=[b"building", b"done"])
        result = await _runner(client, tmp_path, console).run(spec, termination)

        assert result.succeeded, result.error
        assert result.backend == "local"
        assert client.connected
        assert [r.name for r in client.created] == [spec.name, f"{spec.name}-cleaner"]
        assert client.removed == [f"{spec.name}-id", f"{spec.name}-cleaner-id"]
        assert client.closed
        log_file = tmp_path / "logs" / f"{spec.name}-{spec.name}.log"
        assert log_file.read_bytes() == b"building\ndone\n"

    @pytest.mark.asyncio
    async def test_ephemeral_scratch_lifecycle(self, spec, termination, tmp_path, console):
        client = _ObservingClient()
        await _runner(client, tmp_path, console).run(spec, termination)

        # existed with 0777 while the worker ran, gone afterwards
        assert client.scratch_seen[0] == (True, 0o777)
        assert client.created[0].mounts == ((str(_scratch(tmp_path, spec)), "/srv"),)
        assert not _scratch(tmp_path, spec).exists()

    @pytest.mark.asyncio
    async def test_nonzero_exit_still_cleans_up(self, spec, termination, tmp_path, console):
        client = FakeLocalClient(exit_code=3)
        result = await _runner(client, tmp_path, console).run(spec, termination)

        assert result.kind is FailureKind.EXIT_NONZERO
        assert result.exit_code == 3
        assert len(client.cleaners) == 1
        assert f"{spec.name}-id" in client.removed
        assert not _scratch(tmp_path, spec).exists()

    @pytest.mark.asyncio
    async def test_connection_failure(self, spec, termination, tmp_path, console):
        client = FakeLocalClient(connect_error=ConnectionError("no socket"))
        result = await _runner(client, tmp_path, console).run(spec, termination)

        assert result.kind is FailureKind.CONNECTION
        assert client.created == []
        assert not (tmp_path / "work").exists()
        assert client.closed

    @pytest.mark.asyncio
    async def test_create_failure(self, spec, termination, tmp_path, console):
        client = FakeLocalClient(create_error=RuntimeError("image not found"))
        result = await _runner(client, tmp_path, console).run(spec, termination)

        assert result.kind is FailureKind.CREATE
        assert f"{spec.name}-id" not in client.removed
        assert client.cleaners == []
        assert not _scratch(tmp_path, spec).exists()

    @pytest.mark.asyncio
    async def test_start_failure_removes_container(self, spec, termination, tmp_path, console):
        client = FakeLocalClient(start_error=RuntimeError("oci runtime error"))
        result = await _runner(client, tmp_path, console).run(spec, termination)

        assert result.kind is FailureKind.CREATE
        assert f"{spec.name}-id" in client.removed
        assert not _scratch(tmp_path, spec).exists()

    @pytest.mark.asyncio
    async def test_termination(self, spec, tmp_path, console):
        term = TerminationSignal()
        client = FakeLocalClient(block=True)
        task = asyncio.create_task(_runner(client, tmp_path, console).run(spec, term))
        await asyncio.sleep(0.05)
        term.fire()
        result = await asyncio.wait_for(task, timeout=2.0)

        assert result.kind is FailureKind.TERMINATED
        assert client.removed.count(f"{spec.name}-id") == 1
        assert not _scratch(tmp_path, spec).exists()

    @pytest.mark.asyncio
    async def test_already_terminated(self, spec, tmp_path, console):
        term = TerminationSignal()
        term.fire()
        client = FakeLocalClient()
        result = await _runner(client, tmp_path, console).run(spec, term)

        assert result.kind is FailureKind.TERMINATED
        assert not client.connected
        assert client.created == []
        assert client.started == []
        assert not (tmp_path / "work").exists()

    @pytest.mark.asyncio
    async def test_terminated_before_create(self, spec, tmp_path, console):
        term = TerminationSignal()

        class _FiresOnConnect(FakeLocalClient):
            async def connect(self) -> None:
                await super().connect()
                term.fire()

        client = _FiresOnConnect()
        result = await _runner(client, tmp_path, console).run(spec, term)

        assert result.kind is FailureKind.TERMINATED
        assert client.created == []
        assert not _scratch(tmp_path, spec).exists()
        assert client.closed

    @pytest.mark.asyncio
    async def test_run_timeout(self, spec, termination, tmp_path, console):
        client = FakeLocalClient(block=True)
        result = await _runner(client, tmp_path, console, run_timeout=0.05).run(spec, termination)
        assert result.kind is FailureKind.TIMEOUT
        assert f"{spec.name}-id" in client.removed

    @pytest.mark.asyncio
    async def test_task_cancellation_tears_down(self, spec, termination, tmp_path, console):
        client = FakeLocalClient(block=True)
        task = asyncio.create_task(_runner(client, tmp_path, console).run(spec, termination))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert f"{spec.name}-id" in client.removed
        assert not _scratch(tmp_path, spec).exists()

    @pytest.mark.asyncio
    async def test_prebound_scratch_is_kept(self, spec, termination, tmp_path, console):
        srv = tmp_path / "srv"
        srv.mkdir()
        client = FakeLocalClient()
        result = await _runner(client, tmp_path, console, scratch_dir=srv).run(spec, termination)

        assert result.succeeded
        assert client.created[0].mounts == ((str(srv), "/srv"),)
        assert client.cleaners == []
        assert srv.is_dir()

    @pytest.mark.asyncio
    async def test_attach_failure_is_side_channel(self, spec, termination, tmp_path, console):
        client = FakeLocalClient(attach_error=RuntimeError("attach refused"))
        result = await _runner(client, tmp_path, console).run(spec, termination)
        assert result.succeeded
        assert "attach refused" in result.log_errors[0]

    @pytest.mark.asyncio
    async def test_missing_chcon_is_skipped(self, spec, termination, tmp_path, console, monkeypatch):
        monkeypatch.setattr("buildpod.runtimes.local.shutil.which", lambda name: None)
        client = FakeLocalClient()
        runner = _runner(client, tmp_path, console, selinux_label="system_u:object_r:container_file_t:s0")
        result = await runner.run(spec, termination)
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_failing_chcon(self, spec, termination, tmp_path, console, monkeypatch):
        false = shutil.which("false")
        if false is None:
            pytest.skip("no 'false' binary")
        monkeypatch.setattr("buildpod.runtimes.local.shutil.which", lambda name: false)
        client = FakeLocalClient()
        runner = _runner(client, tmp_path, console, selinux_label="label")
        result = await runner.run(spec, termination)

        assert result.kind is FailureKind.CONNECTION
        assert client.created == []
        assert not _scratch(tmp_path, spec).exists()


# ── Teardown ─────────────────────────────────────────────────────────────


class TestTeardown:
    def _session(self, client, tmp_path, ephemeral=True) -> _LocalSession:
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        request = ContainerRequest(
            name="u", image="img", entrypoint=("e",), command=(), env={},
            mounts=((str(scratch), "/srv"),),
        )
        return _LocalSession(client=client, request=request, scratch_dir=scratch,
                             ephemeral=ephemeral, container_id="u-id", started=True)

    @pytest.mark.asyncio
    async def test_teardown_twice_removes_once(self, tmp_path):
        client = FakeLocalClient()
        await client.create_container(ContainerRequest(name="u", image="img", entrypoint=(), command=(), env={}))
        session = self._session(client, tmp_path)

        await asyncio.gather(session.teardown(), session.teardown())
        await session.teardown()

        assert client.removed.count("u-id") == 1
        assert len(client.cleaners) == 1

    @pytest.mark.asyncio
    async def test_teardown_removes_scratch(self, tmp_path):
        client = FakeLocalClient()
        session = self._session(client, tmp_path)
        (session.scratch_dir / "artifact").write_text("x")
        await session.teardown()
        assert not session.scratch_dir.exists()

    @pytest.mark.asyncio
    async def test_not_ephemeral_keeps_dir(self, tmp_path):
        client = FakeLocalClient()
        session = self._session(client, tmp_path, ephemeral=False)
        await session.teardown()
        assert session.scratch_dir.exists()
        assert client.cleaners == []

    @pytest.mark.asyncio
    async def test_remove_errors_are_logged(self, tmp_path):
        class _Failing(FakeLocalClient):
            async def remove(self, container_id, *, force=True, volumes=True):
                raise RuntimeError("no such container")

        session = self._session(_Failing(), tmp_path)
        await session.teardown()  # does not raise
        assert not session.scratch_dir.exists()


# ── Podman stream ────────────────────────────────────────────────────────


class _Response:
    def __init__(self):
        self.closed = False

    def close(self) -> None:
        self.closed = True


class TestThreadedLineStream:
    @pytest.mark.asyncio
    async def test_rejoins_split_frames(self):
        stream = ThreadedLineStream(iter([b"bui", b"lding\ndo", b"ne\ntail"]))
        assert [line async for line in stream] == [b"building", b"done", b"tail"]

    @pytest.mark.asyncio
    async def test_aclose_closes_response(self):
        response = _Response()
        stream = ThreadedLineStream(iter(()), response)
        await stream.aclose()
        assert stream.closed
        assert response.closed

    @pytest.mark.asyncio
    async def test_read_error_after_close_ends_stream(self):
        stream = ThreadedLineStream(iter(()), _Response())

        def _chunks():
            yield b"partial\n"
            stream._closed = True
            raise ValueError("I/O operation on closed file")

        stream._chunks = _chunks()
        assert [line async for line in stream] == [b"partial"]

    @pytest.mark.asyncio
    async def test_connection_error_is_closed_signal(self):
        def _chunks():
            raise requests.exceptions.ChunkedEncodingError("connection broken")
            yield b""

        with pytest.raises(StreamClosed):
            [line async for line in ThreadedLineStream(_chunks())]
