"""Worker runtimes for buildpod.

This package contains the unit types, the spec builder, both execution
backends, the backend selector, and the ``WorkerEngine`` facade that
ties them together.

Architecture:

    .. code-block:: text

        buildpod.runtimes
        ├── __init__.py        ← Public API (this file)
        ├── _types.py          ← UnitSpec, WorkerError, ExecutionResult, protocols
        ├── _base.py           ← BaseWorkerRunner + StubWorkerRunner
        ├── termination.py     ← TerminationSignal + first_completed
        ├── profiles.py        ← modern / legacy ExecutionProfile
        ├── spec_builder.py    ← UnitSpecBuilder (pure)
        ├── logs.py            ← LogMultiplexer (file + console sinks)
        ├── cluster.py         ← ClusterRunner (pods + watch)
        ├── local.py           ← LocalRunner (podman socket)
        ├── router.py          ← BackendSelector
        ├── discovery.py       ← discover_cluster
        ├── engine.py          ← WorkerEngine (central facade)
        └── mock_transports.py ← fake pod / podman clients for tests

    .. mermaid::

        graph TB
            subgraph runtimes["buildpod.runtimes"]
                TYPES["_types.py<br/>UnitSpec + Protocols"]
                BUILDER["spec_builder.py<br/>UnitSpecBuilder"]
                BASE["_base.py<br/>BaseWorkerRunner"]
                CLUSTER["cluster.py<br/>ClusterRunner"]
                LOCAL["local.py<br/>LocalRunner"]
                LOGS["logs.py<br/>LogMultiplexer"]
                ROUTER["router.py<br/>BackendSelector"]
                ENGINE["engine.py<br/>WorkerEngine"]
            end

            TYPES --> BUILDER & BASE
            BASE --> CLUSTER & LOCAL
            LOGS --> BASE
            CLUSTER & LOCAL --> ROUTER
            BUILDER & ROUTER --> ENGINE

Modules:
    _types       - UnitSpec, ExecutionProfile, FailureKind, WorkerError,
                   ExecutionResult, LogStream, WorkerRunner
    _base        - BaseWorkerRunner with shared lifecycle logic
    termination  - TerminationSignal and the first_completed race
    profiles     - execution profiles and version-based selection
    spec_builder - UnitSpecBuilder and WorkerDefaults
    logs         - LogMultiplexer, LogSink, ConsoleLogWriter
    cluster      - ClusterRunner, KubernetesPodClient, evaluate_pod_event
    local        - LocalRunner, PodmanRuntimeClient, ContainerRequest
    router       - BackendSelector
    discovery    - ClusterInfo, discover_cluster
    engine       - WorkerEngine

Tags:
    buildpod, runtimes, worker-engine, kubernetes, podman
"""

from buildpod.runtimes._base import BaseWorkerRunner, StubWorkerRunner
from buildpod.runtimes._types import (
    BuildMetadata,
    ExecutionProfile,
    ExecutionResult,
    FailureKind,
    InitStep,
    LogStream,
    ResourceRequirements,
    SecurityProfile,
    StreamClosed,
    UnitSpec,
    VolumeMount,
    WorkerError,
    WorkerRunner,
)
from buildpod.runtimes.cluster import (
    ClusterRunner,
    KubernetesPodClient,
    PodClient,
    PodVerdict,
    build_pod,
    evaluate_pod_event,
)
from buildpod.runtimes.discovery import ClusterInfo, discover_cluster
from buildpod.runtimes.engine import WorkerEngine
from buildpod.runtimes.local import (
    ContainerRequest,
    LocalRunner,
    LocalRuntimeClient,
    PodmanRuntimeClient,
)
from buildpod.runtimes.logs import ConsoleLogWriter, LogMultiplexer, LogSink
from buildpod.runtimes.profiles import (
    LEGACY_PROFILE,
    MODERN_PROFILE,
    VersionInfo,
    select_profile,
)
from buildpod.runtimes.router import BackendSelector
from buildpod.runtimes.spec_builder import (
    DEFAULTS,
    UnitSpecBuilder,
    WorkerDefaults,
    merge_env,
    unit_name,
)
from buildpod.runtimes.termination import TerminationSignal, first_completed

__all__ = [
    # Types
    "BuildMetadata",
    "ExecutionProfile",
    "ExecutionResult",
    "FailureKind",
    "InitStep",
    "LogStream",
    "ResourceRequirements",
    "SecurityProfile",
    "StreamClosed",
    "UnitSpec",
    "VolumeMount",
    "WorkerError",
    "WorkerRunner",
    # Termination
    "TerminationSignal",
    "first_completed",
    # Profiles
    "LEGACY_PROFILE",
    "MODERN_PROFILE",
    "VersionInfo",
    "select_profile",
    # Spec builder
    "DEFAULTS",
    "UnitSpecBuilder",
    "WorkerDefaults",
    "merge_env",
    "unit_name",
    # Logs
    "ConsoleLogWriter",
    "LogMultiplexer",
    "LogSink",
    # Runners
    "BaseWorkerRunner",
    "StubWorkerRunner",
    "ClusterRunner",
    "KubernetesPodClient",
    "PodClient",
    "PodVerdict",
    "build_pod",
    "evaluate_pod_event",
    "ContainerRequest",
    "LocalRunner",
    "LocalRuntimeClient",
    "PodmanRuntimeClient",
    # Selection + facade
    "BackendSelector",
    "ClusterInfo",
    "discover_cluster",
    "WorkerEngine",
]
