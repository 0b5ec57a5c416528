"""Base worker runner with shared lifecycle logic.

Provides ``BaseWorkerRunner`` with common patterns (logging, error
conversion, log-error collection) and ``StubWorkerRunner`` for unit
tests.

Architecture:

    .. code-block:: text

        WorkerRunner (Protocol)
              │
              ▼
        BaseWorkerRunner (Abstract Base)
        └── run()  → logging + WorkerError → ExecutionResult → _do_run()
              │
        ┌─────┴──────────────┬──────────────────────┐
        │                    │                      │
        ▼                    ▼                      ▼
    ClusterRunner        LocalRunner          StubWorkerRunner
    (pods + watch)       (podman socket)      (in-memory for tests)

    .. mermaid::

        classDiagram
            class BaseWorkerRunner {
                <<abstract>>
                +run(spec, term, env) ExecutionResult
                #_do_run(spec, term, mux)* None
            }
            class ClusterRunner {
                +backend_name = "cluster"
            }
            class LocalRunner {
                +backend_name = "local"
            }
            class StubWorkerRunner {
                +backend_name = "stub"
                +runs: list
            }
            BaseWorkerRunner <|-- ClusterRunner
            BaseWorkerRunner <|-- LocalRunner
            BaseWorkerRunner <|-- StubWorkerRunner

Usage:
    # In tests:
    runner = StubWorkerRunner(exit_code=2)
    result = await runner.run(spec, TerminationSignal())
    assert result.kind is FailureKind.EXIT_NONZERO

    # Subclassing for real runners:
    class ClusterRunner(BaseWorkerRunner):
        backend_name = "cluster"
        async def _do_run(self, spec, termination, logs): ...

Tags:
    buildpod, runtimes, base, abstract, runner-ABC
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import TextIO

from buildpod.runtimes._types import (
    ExecutionResult,
    FailureKind,
    UnitSpec,
    WorkerError,
)
from buildpod.runtimes.logs import LogMultiplexer
from buildpod.runtimes.termination import TerminationSignal

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Base runner
# ---------------------------------------------------------------------------

class BaseWorkerRunner:
    """Base class for worker runners.

    Subclasses MUST implement ``_do_run``, which returns normally on
    success and raises ``WorkerError`` on failure. It must release every
    remote resource it created before returning or raising.

    The base class wraps each run with:
        - Structured logging (start / outcome)
        - A fresh ``LogMultiplexer`` for the unit
        - Conversion of ``WorkerError`` (or any unexpected exception,
          as BACKEND) into exactly one ``ExecutionResult``

    .. code-block:: text

        run(spec, term, env)
          ├── spec = spec.with_env(env)
          ├── log: "Running unit 'X' on cluster"
          ├── _do_run(spec, term, mux)  ← subclass implements
          ├── collect mux side-channel errors
          └── on error: ExecutionResult.failure(kind=...)

    Task cancellation is not converted: it propagates after the
    subclass has cleaned up.
    """

    backend_name: str = "base"

    def __init__(self, *, logs_dir: Path, console: TextIO | None = None) -> None:
        self._logs_dir = logs_dir
        self._console = console

    async def run(
        self,
        spec: UnitSpec,
        termination: TerminationSignal,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        """Run one unit to completion and report its outcome."""
        spec = spec.with_env(env)
        logger.info(
            "Running unit '%s' on %s (image=%s)",
            spec.name, self.backend_name, spec.image,
        )
        mux = LogMultiplexer(spec.name, self._logs_dir, termination, console=self._console)
        error: WorkerError | None = None
        try:
            await self._do_run(spec, termination, mux)
        except WorkerError as exc:
            error = exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure running '%s'", spec.name)
            error = WorkerError(
                kind=FailureKind.BACKEND,
                message=f"{type(exc).__name__}: {exc}",
                backend=self.backend_name,
            )
        finally:
            await mux.aclose()

        log_errors = tuple(str(e) for e in mux.drain_errors())
        if error is None:
            logger.info("Unit '%s' succeeded on %s", spec.name, self.backend_name)
            return ExecutionResult.success(spec.name, self.backend_name, log_errors=log_errors)

        if error.backend is None:
            error = WorkerError(
                kind=error.kind,
                message=error.message,
                exit_code=error.exit_code,
                backend=self.backend_name,
            )
        logger.error("Unit '%s' failed on %s: %s", spec.name, self.backend_name, error)
        return ExecutionResult.failure(
            spec.name, self.backend_name, error, log_errors=log_errors,
        )

    async def _do_run(
        self,
        spec: UnitSpec,
        termination: TerminationSignal,
        logs: LogMultiplexer,
    ) -> None:
        """Implement in subclass. Raise WorkerError on failure."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Stub runner for testing
# ---------------------------------------------------------------------------

class StubWorkerRunner(BaseWorkerRunner):
    """In-memory runner for unit tests.

    Every run finishes with the configured exit code after ``delay``
    seconds, unless the termination signal fires first.

    .. code-block:: text

        StubWorkerRunner behavior:

        run(spec)
          ├── exit_code=0   → success
          ├── exit_code!=0  → EXIT_NONZERO
          ├── error=...     → that WorkerError
          └── term fired    → TERMINATED

        Track usage:
          runner.runs      → specs received, in order
          runner.created   → units "created"
          runner.deleted   → units "deleted"
    """

    backend_name = "stub"

    def __init__(
        self,
        *,
        exit_code: int = 0,
        error: WorkerError | None = None,
        delay: float = 0.0,
        logs_dir: Path = Path("logs"),
    ) -> None:
        super().__init__(logs_dir=logs_dir)
        self.exit_code = exit_code
        self.error = error
        self.delay = delay
        self.runs: list[UnitSpec] = []
        self.created: list[str] = []
        self.deleted: list[str] = []

    async def _do_run(
        self,
        spec: UnitSpec,
        termination: TerminationSignal,
        logs: LogMultiplexer,
    ) -> None:
        self.runs.append(spec)
        if self.error is not None:
            raise self.error

        self.created.append(spec.name)
        try:
            if self.delay:
                try:
                    await asyncio.wait_for(termination.wait(), timeout=self.delay)
                except TimeoutError:
                    pass
            if termination.fired:
                raise WorkerError.terminated(spec.name)
            if self.exit_code != 0:
                raise WorkerError.exit_nonzero(spec.name, self.exit_code)
        finally:
            self.deleted.append(spec.name)
