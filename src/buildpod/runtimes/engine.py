"""Worker Engine — builds a unit spec and runs it on the right backend.

The ``WorkerEngine`` is the single entry point callers use. It owns the
spec builder (with the version-selected profile) and the backend
selector, and turns every outcome, including a rejected spec, into one
``ExecutionResult``.

Architecture:

    .. code-block:: text

        WorkerEngine — Central Facade
        ┌─────────────────────────────────────────────────────────────┐
        │                                                             │
        │  WorkerEngine.create(settings)                              │
        │    ├── discover_cluster(settings) → ClusterInfo             │
        │    ├── select_profile(version)    → ExecutionProfile        │
        │    ├── UnitSpecBuilder(profile, defaults)                   │
        │    └── BackendSelector(in_cluster, cluster=…, local=…)      │
        │                                                             │
        │  run_worker(build, index, env, termination)                 │
        │    ├── builder.build()            INVALID_SPEC → result     │
        │    ├── selector.run(spec, termination)                      │
        │    └── fail_on_log_error?         log errors → BACKEND      │
        │                                                             │
        └─────────────────────────────────────────────────────────────┘

    .. mermaid::

        sequenceDiagram
            participant C as Caller
            participant E as WorkerEngine
            participant B as UnitSpecBuilder
            participant S as BackendSelector
            participant R as WorkerRunner

            C->>E: run_worker(build, index, env, term)
            E->>B: build(build, index, env)
            B-->>E: UnitSpec
            E->>S: run(spec, term)
            S->>R: run(spec, term)
            R-->>E: ExecutionResult
            E-->>C: ExecutionResult

Tags:
    buildpod, runtimes, engine, facade
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TextIO

from buildpod.config import WorkerSettings
from buildpod.runtimes._types import (
    BuildMetadata,
    ExecutionResult,
    FailureKind,
    UnitSpec,
    WorkerError,
)
from buildpod.runtimes.cluster import ClusterRunner, KubernetesPodClient
from buildpod.runtimes.discovery import ClusterInfo, discover_cluster
from buildpod.runtimes.local import LocalRunner, PodmanRuntimeClient
from buildpod.runtimes.profiles import select_profile
from buildpod.runtimes.router import BackendSelector
from buildpod.runtimes.spec_builder import DEFAULTS, UnitSpecBuilder, WorkerDefaults, unit_name
from buildpod.runtimes.termination import TerminationSignal

logger = logging.getLogger(__name__)


def cluster_runner(
    settings: WorkerSettings, info: ClusterInfo, console: TextIO | None = None,
) -> ClusterRunner:
    if info.api_client is None or info.namespace is None:
        raise WorkerError(
            kind=FailureKind.CONNECTION,
            message="cluster backend selected without an API client",
        )
    return ClusterRunner(
        KubernetesPodClient(info.api_client, info.namespace),
        logs_dir=settings.logs_dir,
        console=console,
        run_timeout=settings.run_timeout_seconds,
        watch_timeout=settings.watch_timeout_seconds,
        log_since_seconds=settings.log_since_seconds,
        delete_grace_seconds=settings.delete_grace_seconds,
        log_drain_seconds=settings.log_drain_seconds,
    )


def local_runner(settings: WorkerSettings, console: TextIO | None = None) -> LocalRunner:
    return LocalRunner(
        PodmanRuntimeClient(settings.podman_socket, start_socket=settings.start_socket),
        logs_dir=settings.logs_dir,
        console=console,
        work_dir=settings.work_dir,
        scratch_dir=settings.scratch_dir,
        run_timeout=settings.run_timeout_seconds,
        selinux_label=settings.selinux_label,
        devices=settings.devices,
        teardown_delay=settings.teardown_delay_seconds,
        log_drain_seconds=settings.log_drain_seconds,
    )


class WorkerEngine:
    """Builds and runs worker units.

    Example:
        >>> engine = await WorkerEngine.create(WorkerSettings.from_env())
        >>> result = await engine.run_worker(build, 0, [("FOO", "bar")], term)
        >>> result.succeeded
        True
    """

    def __init__(
        self,
        settings: WorkerSettings,
        selector: BackendSelector,
        builder: UnitSpecBuilder,
        cluster: ClusterInfo | None = None,
    ) -> None:
        self._settings = settings
        self._selector = selector
        self._builder = builder
        self._cluster = cluster or ClusterInfo(in_cluster=selector.in_cluster)

    @classmethod
    async def create(
        cls,
        settings: WorkerSettings,
        *,
        defaults: WorkerDefaults = DEFAULTS,
        console: TextIO | None = None,
    ) -> WorkerEngine:
        """Discover the environment and wire the engine for it."""
        info = await discover_cluster(settings)
        try:
            profile = select_profile(info.version)
        except WorkerError:
            await info.aclose()
            raise
        selector = BackendSelector(
            in_cluster=info.in_cluster,
            cluster=lambda: cluster_runner(settings, info, console),
            local=lambda: local_runner(settings, console),
        )
        return cls(settings, selector, UnitSpecBuilder(profile, defaults), info)

    @property
    def in_cluster(self) -> bool:
        return self._selector.in_cluster

    @property
    def builder(self) -> UnitSpecBuilder:
        return self._builder

    @property
    def backend_name(self) -> str:
        return "cluster" if self.in_cluster else "local"

    def build_spec(
        self,
        build: BuildMetadata,
        index: int,
        env: Iterable[tuple[str, str]] | Mapping[str, str] = (),
    ) -> UnitSpec:
        return self._builder.build(build, index, env)

    async def run_worker(
        self,
        build: BuildMetadata,
        index: int,
        env: Iterable[tuple[str, str]] | Mapping[str, str] = (),
        termination: TerminationSignal | None = None,
    ) -> ExecutionResult:
        """Run worker ``index`` of ``build`` and return its one result."""
        termination = termination or TerminationSignal()
        try:
            spec = self._builder.build(build, index, env)
        except WorkerError as exc:
            logger.error("Rejected worker %d of %s: %s", index, build.build_config, exc)
            return ExecutionResult.failure(
                unit_name(build, index), self.backend_name, exc,
            )

        try:
            result = await self._selector.run(spec, termination)
        except WorkerError as exc:
            logger.error("Backend for %s unavailable: %s", spec.name, exc)
            return ExecutionResult.failure(spec.name, self.backend_name, exc)
        if result.succeeded and result.log_errors and self._settings.fail_on_log_error:
            error = WorkerError(
                kind=FailureKind.BACKEND,
                message=f"log copy failed: {'; '.join(result.log_errors)}",
                backend=result.backend,
            )
            return ExecutionResult.failure(
                result.unit, result.backend, error, log_errors=result.log_errors,
            )
        return result

    async def aclose(self) -> None:
        await self._cluster.aclose()

    def __repr__(self) -> str:
        return f"WorkerEngine({self.backend_name}, profile={self._builder.profile.name})"
