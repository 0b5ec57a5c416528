"""Backend selector — picks the cluster or the local runner.

The selector is the only component that knows both runners exist.
Runners are built lazily through factories, so the client for the
inactive backend is never constructed (no kube config loading on a
laptop, no podman socket inside a cluster).

Architecture:

    .. mermaid::

        flowchart TD
            CI[ClusterInfo.in_cluster] --> S{BackendSelector}
            S -->|True| C[ClusterRunner]
            S -->|False| L[LocalRunner]

Example:
    >>> selector = BackendSelector(
    ...     in_cluster=False,
    ...     cluster=lambda: ClusterRunner(...),
    ...     local=lambda: LocalRunner(...),
    ... )
    >>> runner = selector.select()
    >>> runner.backend_name
    'local'

Tags:
    buildpod, runtimes, router, backend-selection, strategy
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from buildpod.runtimes._types import ExecutionResult, UnitSpec, WorkerRunner
    from buildpod.runtimes.termination import TerminationSignal

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[], "WorkerRunner"]


class BackendSelector:
    """Dispatches runs to one of exactly two runners.

    The choice is fixed at construction from the cluster-membership flag.
    The selected runner is created on first use and cached.
    """

    def __init__(
        self,
        *,
        in_cluster: bool,
        cluster: RunnerFactory,
        local: RunnerFactory,
    ) -> None:
        self._in_cluster = in_cluster
        self._factory = cluster if in_cluster else local
        self._runner: WorkerRunner | None = None

    @property
    def in_cluster(self) -> bool:
        return self._in_cluster

    def select(self) -> WorkerRunner:
        """Return the runner for the active backend."""
        if self._runner is None:
            self._runner = self._factory()
            logger.info("Selected %s backend", self._runner.backend_name)
        return self._runner

    async def run(
        self,
        spec: UnitSpec,
        termination: TerminationSignal,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        return await self.select().run(spec, termination, env)

    def __repr__(self) -> str:
        backend = "cluster" if self._in_cluster else "local"
        return f"BackendSelector({backend})"
