"""Tests for WorkerEngine — spec building, dispatch, result shaping."""

from __future__ import annotations

import pytest

from buildpod.config import WorkerSettings
from buildpod.runtimes import engine as engine_mod
from buildpod.runtimes._base import StubWorkerRunner
from buildpod.runtimes._types import BuildMetadata, FailureKind, WorkerError
from buildpod.runtimes.discovery import ClusterInfo
from buildpod.runtimes.engine import WorkerEngine
from buildpod.runtimes.local import LocalRunner
from buildpod.runtimes.logs import LogMultiplexer
from buildpod.runtimes.profiles import LEGACY_PROFILE, MODERN_PROFILE, VersionInfo
from buildpod.runtimes.router import BackendSelector
from buildpod.runtimes.spec_builder import UnitSpecBuilder


# ── Helpers ──────────────────────────────────────────────────────────────


class _ReportingRunner(StubWorkerRunner):
    """Succeeds but reports a log copy failure."""

    async def _do_run(self, spec, termination, logs: LogMultiplexer) -> None:
        logs.report(spec.name, "reset by peer")
        await super()._do_run(spec, termination, logs)


def _engine(runner: StubWorkerRunner, **settings) -> WorkerEngine:
    selector = BackendSelector(in_cluster=False, cluster=lambda: runner, local=lambda: runner)
    return WorkerEngine(
        WorkerSettings(**settings), selector, UnitSpecBuilder(MODERN_PROFILE),
    )


# ── run_worker ───────────────────────────────────────────────────────────


class TestRunWorker:
    @pytest.mark.asyncio
    async def test_success(self, build, termination, tmp_path):
        runner = StubWorkerRunner(logs_dir=tmp_path)
        result = await _engine(runner).run_worker(build, 3, [("FOO", "bar")], termination)

        assert result.succeeded
        assert result.unit == "b1-5-worker-3"
        assert runner.runs[0].env["FOO"] == "bar"

    @pytest.mark.asyncio
    async def test_failure_passes_through(self, build, termination, tmp_path):
        runner = StubWorkerRunner(exit_code=9, logs_dir=tmp_path)
        result = await _engine(runner).run_worker(build, 0, termination=termination)
        assert result.kind is FailureKind.EXIT_NONZERO
        assert result.exit_code == 9

    @pytest.mark.asyncio
    async def test_invalid_spec_never_reaches_backend(self, termination, tmp_path):
        runner = StubWorkerRunner(logs_dir=tmp_path)
        bad = BuildMetadata(build_config="b1", build_number="5", image="")
        result = await _engine(runner).run_worker(bad, 0, termination=termination)

        assert result.kind is FailureKind.INVALID_SPEC
        assert result.unit == "b1-5-worker-0"
        assert runner.runs == []

    @pytest.mark.asyncio
    async def test_negative_index_rejected(self, build, termination, tmp_path):
        runner = StubWorkerRunner(logs_dir=tmp_path)
        result = await _engine(runner).run_worker(build, -1, termination=termination)
        assert result.kind is FailureKind.INVALID_SPEC
        assert runner.runs == []

    @pytest.mark.asyncio
    async def test_log_errors_kept_on_success(self, build, termination, tmp_path):
        result = await _engine(_ReportingRunner(logs_dir=tmp_path)).run_worker(
            build, 0, termination=termination,
        )
        assert result.succeeded
        assert "reset by peer" in result.log_errors[0]

    @pytest.mark.asyncio
    async def test_fail_on_log_error(self, build, termination, tmp_path):
        engine = _engine(_ReportingRunner(logs_dir=tmp_path), fail_on_log_error=True)
        result = await engine.run_worker(build, 0, termination=termination)

        assert result.kind is FailureKind.BACKEND
        assert "reset by peer" in result.error.message
        assert result.log_errors

    @pytest.mark.asyncio
    async def test_unavailable_backend_becomes_result(self, build, termination):
        def _no_client():
            raise WorkerError(kind=FailureKind.CONNECTION, message="no API client")

        selector = BackendSelector(in_cluster=True, cluster=_no_client, local=_no_client)
        engine = WorkerEngine(WorkerSettings(), selector, UnitSpecBuilder(MODERN_PROFILE))
        result = await engine.run_worker(build, 0, termination=termination)

        assert result.kind is FailureKind.CONNECTION
        assert result.unit == "b1-5-worker-0"
        assert result.backend == "cluster"

    @pytest.mark.asyncio
    async def test_default_termination_signal(self, build, tmp_path):
        result = await _engine(StubWorkerRunner(logs_dir=tmp_path)).run_worker(build, 0)
        assert result.succeeded


# ── Wiring ───────────────────────────────────────────────────────────────


class TestCreate:
    @pytest.mark.asyncio
    async def test_outside_cluster_uses_local_backend(self, monkeypatch, tmp_path):
        async def _discover(settings):
            return ClusterInfo(in_cluster=False)

        monkeypatch.setattr(engine_mod, "discover_cluster", _discover)
        engine = await WorkerEngine.create(WorkerSettings(logs_dir=tmp_path))

        assert not engine.in_cluster
        assert engine.backend_name == "local"
        assert engine.builder.profile is MODERN_PROFILE
        assert repr(engine) == f"WorkerEngine(local, profile={MODERN_PROFILE.name})"
        await engine.aclose()

    @pytest.mark.asyncio
    async def test_legacy_cluster_selects_legacy_profile(self, monkeypatch):
        async def _discover(settings):
            return ClusterInfo(
                in_cluster=True,
                namespace="builds",
                version=VersionInfo(major="1", minor="11+"),
            )

        monkeypatch.setattr(engine_mod, "discover_cluster", _discover)
        engine = await WorkerEngine.create(WorkerSettings())
        assert engine.in_cluster
        assert engine.builder.profile is LEGACY_PROFILE

    @pytest.mark.asyncio
    async def test_bad_version_closes_client(self, monkeypatch):
        closed = []

        class _Info(ClusterInfo):
            async def aclose(self) -> None:
                closed.append(True)

        async def _discover(settings):
            return _Info(in_cluster=True, namespace="b", version=VersionInfo(major="1", minor="x"))

        monkeypatch.setattr(engine_mod, "discover_cluster", _discover)
        with pytest.raises(WorkerError) as exc_info:
            await WorkerEngine.create(WorkerSettings())
        assert exc_info.value.kind is FailureKind.INVALID_SPEC
        assert closed == [True]

    def test_local_runner_from_settings(self, tmp_path):
        settings = WorkerSettings(logs_dir=tmp_path, scratch_dir=tmp_path / "srv", selinux_label="")
        runner = engine_mod.local_runner(settings)
        assert isinstance(runner, LocalRunner)
        assert runner.backend_name == "local"

    def test_cluster_runner_requires_client(self):
        with pytest.raises(WorkerError) as exc_info:
            engine_mod.cluster_runner(WorkerSettings(), ClusterInfo(in_cluster=True))
        assert exc_info.value.kind is FailureKind.CONNECTION
