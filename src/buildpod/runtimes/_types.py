"""Worker unit types and protocols for the execution engine.

This module defines the canonical abstractions for running one build
worker unit on either backend:

- UnitSpec: Immutable description of a worker unit (image, env, mounts...)
- ExecutionProfile: Version-selected security/resource/init policy
- FailureKind / WorkerError: Structured error taxonomy
- ExecutionResult: Terminal outcome of one run
- WorkerRunner: Protocol implemented by the cluster and local runners
- LogStream: Protocol for line-oriented output streams

Design Notes:
    UnitSpec is backend-neutral. The cluster runner translates it into a
    ``V1Pod``, the local runner into a ``ContainerRequest``. No
    backend-specific type appears here.

Architecture:

    .. code-block:: text

        ┌─────────────────────────────────────────────────────────────┐
        │                    _types.py Module Map                     │
        ├─────────────────────────────────────────────────────────────┤
        │                                                             │
        │  ┌─────────────────┐    ┌──────────────────────────────┐    │
        │  │  FailureKind    │    │  UnitSpec (frozen)           │    │
        │  │  (Enum: 8 kinds)│    │  name, image, entrypoint     │    │
        │  └────────┬────────┘    │  env, resources, security    │    │
        │           │             │  init, volumes, labels       │    │
        │  ┌────────▼────────┐    └──────────┬───────────────────┘    │
        │  │   WorkerError   │               │                        │
        │  │  (Exception +   │    ┌──────────▼──────────────────┐     │
        │  │   dataclass)    │    │  WorkerRunner (Protocol)    │     │
        │  └────────┬────────┘    │  run(spec, term, env)       │     │
        │           │             └──────────┬──────────────────┘     │
        │  ┌────────▼────────┐               │                        │
        │  │ ExecutionResult │ ◄─────────────┘                        │
        │  └─────────────────┘                                        │
        └─────────────────────────────────────────────────────────────┘

    .. mermaid::

        graph LR
            BM[BuildMetadata] -->|"spec_builder"| US[UnitSpec]
            EP[ExecutionProfile] -->|"applied by"| US
            US -->|"run by"| WR[WorkerRunner]
            WR -->|"returns"| ER[ExecutionResult]
            WR -->|"raises internally"| WE[WorkerError]
            WE -->|"converted to"| ER

Tags:
    buildpod, runtimes, types, protocol, unit-spec, errors
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    from buildpod.runtimes.termination import TerminationSignal


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class FailureKind(str, Enum):
    """Normalized failure categories for a worker run.

    Every failed run is classified into exactly one of these kinds.
    Callers decide what to do with a failure using ``kind``, never by
    parsing ``message``.

    .. mermaid::

        graph TB
            WE[WorkerError] --> IS[INVALID_SPEC - malformed metadata]
            WE --> CO[CONNECTION - API or socket unreachable]
            WE --> CR[CREATE - unit creation rejected]
            WE --> EX[EXIT_NONZERO - container failed]
            WE --> TO[TIMEOUT - run deadline exceeded]
            WE --> WB[WATCH_BROKEN - orphaned pod]
            WE --> TE[TERMINATED - caller signalled]
            WE --> BE[BACKEND - other backend error]

    Kinds before ``CREATE`` (inclusive) happen before any remote unit
    exists. All other kinds happen after creation, so cleanup runs.
    """

    INVALID_SPEC = "invalid_spec"
    CONNECTION = "connection"
    CREATE = "create"
    EXIT_NONZERO = "exit_nonzero"
    TIMEOUT = "timeout"
    WATCH_BROKEN = "watch_broken"
    TERMINATED = "terminated"
    BACKEND = "backend"


@dataclass(frozen=True)
class WorkerError(Exception):
    """Structured error raised inside a runner.

    Both a dataclass AND an Exception. Runners raise it on any failure
    path; ``BaseWorkerRunner.run`` converts it into an
    ``ExecutionResult`` exactly once.

    Example:
        >>> err = WorkerError(
        ...     kind=FailureKind.EXIT_NONZERO,
        ...     message="container b1-5-worker-0 exited with code 2",
        ...     exit_code=2,
        ...     backend="cluster",
        ... )
        >>> str(err)
        '[exit_nonzero] container b1-5-worker-0 exited with code 2 (exit: 2)'
    """

    kind: FailureKind
    message: str
    exit_code: int | None = None
    backend: str | None = None

    def __str__(self) -> str:
        parts = [f"[{self.kind.value}] {self.message}"]
        if self.exit_code is not None:
            parts.append(f"(exit: {self.exit_code})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "exit_code": self.exit_code,
            "backend": self.backend,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerError:
        return cls(
            kind=FailureKind(data["kind"]),
            message=data["message"],
            exit_code=data.get("exit_code"),
            backend=data.get("backend"),
        )

    @classmethod
    def invalid_spec(cls, message: str) -> WorkerError:
        return cls(kind=FailureKind.INVALID_SPEC, message=message)

    @classmethod
    def exit_nonzero(
        cls, name: str, exit_code: int | None, *, backend: str | None = None,
    ) -> WorkerError:
        """Create an EXIT_NONZERO error, keeping the exit code when known."""
        if exit_code is None:
            message = f"container {name} failed"
        else:
            message = f"container {name} exited with code {exit_code}"
        return cls(
            kind=FailureKind.EXIT_NONZERO,
            message=message,
            exit_code=exit_code,
            backend=backend,
        )

    @classmethod
    def timed_out(cls, name: str, seconds: float, *, backend: str | None = None) -> WorkerError:
        return cls(
            kind=FailureKind.TIMEOUT,
            message=f"unit {name} did not complete work in {seconds:g}s",
            backend=backend,
        )

    @classmethod
    def terminated(cls, name: str, *, backend: str | None = None) -> WorkerError:
        return cls(
            kind=FailureKind.TERMINATED,
            message=f"unit {name} was signalled to terminate by main process",
            backend=backend,
        )


class StreamClosed(Exception):
    """Raised by a transport when the peer closed an output stream.

    The log multiplexer treats it as a normal end-of-stream. Transports
    raise it instead of leaking their own connection errors so that no
    caller has to match on error messages.
    """


# ---------------------------------------------------------------------------
# Build metadata
# ---------------------------------------------------------------------------

BUILD_CONFIG_ANNOTATION = "openshift.io/build-config.name"
BUILD_NUMBER_ANNOTATION = "openshift.io/build.number"


@dataclass(frozen=True)
class BuildMetadata:
    """The parts of a build request the spec builder needs.

    Example:
        >>> build = BuildMetadata(build_config="b1", build_number="5", image="quay.io/x/y:latest")
    """

    build_config: str
    build_number: str
    image: str
    labels: Mapping[str, str] = field(default_factory=dict)
    service_account: str | None = None

    @classmethod
    def from_build_object(cls, build: Mapping[str, Any]) -> BuildMetadata:
        """Read metadata from an OpenShift-style Build object (as a dict).

        Missing keys produce empty strings; the spec builder rejects them.
        """
        metadata = build.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        spec = build.get("spec") or {}
        strategy = (spec.get("strategy") or {}).get("customStrategy") or {}
        return cls(
            build_config=str(annotations.get(BUILD_CONFIG_ANNOTATION, "")),
            build_number=str(annotations.get(BUILD_NUMBER_ANNOTATION, "")),
            image=str((strategy.get("from") or {}).get("name", "")),
            labels=dict(metadata.get("labels") or {}),
            service_account=spec.get("serviceAccount"),
        )


# ---------------------------------------------------------------------------
# Resource and security specifications
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResourceRequirements:
    """CPU, memory, and optional device reservation for the worker.

    Used as both request and limit. ``devices`` maps an extended resource
    name (e.g. ``devices.kubevirt.io/kvm``) to a count.
    """

    cpu: str = "2"
    memory: str = "4Gi"
    devices: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, str]:
        d = {"cpu": self.cpu, "memory": self.memory}
        d.update(self.devices)
        return d


@dataclass(frozen=True)
class SecurityProfile:
    """Privilege level and run-as identity. ``None`` = image default."""

    privileged: bool = False
    run_as_user: int | None = None
    run_as_group: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in {
            "privileged": self.privileged or None,
            "run_as_user": self.run_as_user,
            "run_as_group": self.run_as_group,
        }.items() if v is not None}


@dataclass(frozen=True)
class VolumeMount:
    """Volume mount specification.

    Runners translate this into their native volume model:
    - cluster: emptyDir, secret or configMap volume
    - local: only the scratch area is bind-mounted
    """

    name: str
    mount_path: str
    source: Literal["empty_dir", "secret", "config_map"] = "empty_dir"
    source_name: str | None = None       # secret / config map name
    read_only: bool = False


@dataclass(frozen=True)
class ExecutionProfile:
    """Version-dependent policy bundle selected once per process.

    See :mod:`buildpod.runtimes.profiles` for the two concrete profiles.
    """

    name: str
    security: SecurityProfile
    resources: ResourceRequirements
    init_steps: tuple[str, ...] = ()


@dataclass(frozen=True)
class InitStep:
    """Auxiliary step run to completion before the main process."""

    name: str
    script: str

    @property
    def args(self) -> list[str]:
        return ["/bin/bash", "-xc", self.script]


# ---------------------------------------------------------------------------
# UnitSpec
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UnitSpec:
    """Immutable description of one worker unit.

    This is the canonical input to ``WorkerRunner.run()``. The runner
    translates it into its native format (``V1Pod`` or a podman container
    create request).

    .. code-block:: text

        UnitSpec
        ├── Identity: name  ({buildconfig}-{buildnumber}-worker-{index})
        ├── What: image, entrypoint, args, working_dir
        ├── Environment: env (read-only mapping, no duplicate keys)
        ├── Policy: resources, security, init
        ├── Storage: volumes (scratch + trust anchors + extras)
        └── Scheduling: labels, service_account, deadlines

    Built once by :class:`~buildpod.runtimes.spec_builder.UnitSpecBuilder`.
    """

    name: str
    image: str
    entrypoint: tuple[str, ...]
    args: tuple[str, ...]
    env: Mapping[str, str]
    resources: ResourceRequirements
    security: SecurityProfile
    volumes: tuple[VolumeMount, ...]
    working_dir: str = "/srv"
    init: InitStep | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    service_account: str | None = None
    active_deadline_seconds: int = 1800
    termination_grace_seconds: int = 300

    def __post_init__(self) -> None:
        # Freeze the mappings so a spec cannot change after construction.
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    def container_names(self) -> list[str]:
        """Containers in execution order: init first, then the main one."""
        names = [self.init.name] if self.init else []
        names.append(self.name)
        return names

    def with_env(self, overrides: Mapping[str, str] | None) -> UnitSpec:
        """Return a copy whose env is overlaid with ``overrides``."""
        if not overrides:
            return self
        merged = dict(self.env)
        merged.update(overrides)
        return replace(self, env=merged)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dict for JSON output."""
        d: dict[str, Any] = {
            "name": self.name,
            "image": self.image,
            "entrypoint": list(self.entrypoint),
            "args": list(self.args),
            "env": dict(self.env),
            "resources": self.resources.to_dict(),
            "security": self.security.to_dict(),
            "working_dir": self.working_dir,
            "volumes": [
                {"name": v.name, "mount_path": v.mount_path, "source": v.source,
                 "source_name": v.source_name, "read_only": v.read_only}
                for v in self.volumes
            ],
            "active_deadline_seconds": self.active_deadline_seconds,
            "termination_grace_seconds": self.termination_grace_seconds,
        }
        if self.init:
            d["init"] = {"name": self.init.name, "script": self.init.script}
        if self.labels:
            d["labels"] = dict(self.labels)
        if self.service_account:
            d["service_account"] = self.service_account
        return d


# ---------------------------------------------------------------------------
# Execution result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionResult:
    """Terminal outcome of one worker run.

    ``error`` is None on success. ``log_errors`` carries the messages the
    log multiplexer reported on its side channel; they never turn a
    success into a failure on their own.
    """

    unit: str
    backend: str
    error: WorkerError | None = None
    log_errors: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> FailureKind | None:
        return self.error.kind if self.error else None

    @property
    def exit_code(self) -> int | None:
        if self.error is None:
            return 0
        return self.error.exit_code

    @classmethod
    def success(cls, unit: str, backend: str, *, log_errors: tuple[str, ...] = ()) -> ExecutionResult:
        return cls(unit=unit, backend=backend, log_errors=log_errors)

    @classmethod
    def failure(
        cls, unit: str, backend: str, error: WorkerError, *, log_errors: tuple[str, ...] = (),
    ) -> ExecutionResult:
        return cls(unit=unit, backend=backend, error=error, log_errors=log_errors)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "unit": self.unit,
            "backend": self.backend,
            "succeeded": self.succeeded,
        }
        if self.error:
            d["error"] = self.error.to_dict()
        if self.log_errors:
            d["log_errors"] = list(self.log_errors)
        return d


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class LogStream(Protocol):
    """Line-oriented output of one container.

    Iteration yields lines without their trailing newline. A closed
    connection surfaces as :class:`StreamClosed`. ``aclose`` must be safe
    to call more than once.
    """

    def __aiter__(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...


@runtime_checkable
class WorkerRunner(Protocol):
    """Protocol for the two execution backends.

    .. code-block:: text

        WorkerRunner Protocol
        ┌────────────────────────────────────────────────────────┐
        │  backend_name            'cluster' or 'local'          │
        │  run(spec, term, env)    create → supervise → cleanup  │
        └────────────────────────────────────────────────────────┘

    ``run`` never raises for run failures; it returns exactly one
    ``ExecutionResult`` after every resource it created is gone.
    """

    @property
    def backend_name(self) -> str:
        ...

    async def run(
        self,
        spec: UnitSpec,
        termination: TerminationSignal,
        env: Mapping[str, str] | None = None,
    ) -> ExecutionResult:
        ...
