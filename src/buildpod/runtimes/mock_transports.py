"""Mock transports — scripted test doubles for both backends.

Replace the network-facing clients under the real runners so the full
create/supervise/cleanup lifecycle runs in unit tests without a cluster
or a podman socket.

Architecture::

    ClusterRunner ── PodClient
                     ├── KubernetesPodClient   (real)
                     └── FakePodClient         (scripted watch events)

    LocalRunner ──── LocalRuntimeClient
                     ├── PodmanRuntimeClient   (real)
                     └── FakeLocalClient       (scripted exit code)

Example::

    from buildpod.runtimes.mock_transports import FakePodClient, pod_event

    client = FakePodClient(events=[
        pod_event("Running"),
        pod_event("Succeeded"),
    ])
    runner = ClusterRunner(client, logs_dir=tmp_path)
    result = await runner.run(spec, TerminationSignal())
    assert client.deleted == [spec.name]

See Also:
    buildpod.runtimes.cluster — PodClient protocol
    buildpod.runtimes.local — LocalRuntimeClient protocol
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any

from kubernetes_asyncio import client as k8s

from buildpod.runtimes._types import StreamClosed
from buildpod.runtimes.local import ContainerRequest


# ---------------------------------------------------------------------------
# FakeLogStream — scripted line stream
# ---------------------------------------------------------------------------

class FakeLogStream:
    """Yields ``lines``, then ends, raises ``error``, or stays open.

    ``delay`` spaces the lines out like a container still printing.
    With ``hold_open`` the stream blocks after its lines until
    ``aclose()`` is called, like a followed stream of a live container.
    """

    def __init__(
        self,
        lines: Iterable[bytes] = (),
        *,
        error: Exception | None = None,
        hold_open: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.lines = list(lines)
        self.delay = delay
        self.error = error
        self.hold_open = hold_open
        self.closed = False
        self._released = asyncio.Event()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        for line in self.lines:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield line
        if self.error is not None:
            raise self.error
        if self.hold_open:
            await self._released.wait()
            raise StreamClosed("stream released")

    async def aclose(self) -> None:
        self.closed = True
        self._released.set()


# ---------------------------------------------------------------------------
# Pod events
# ---------------------------------------------------------------------------

def pod_event(
    phase: str,
    *,
    name: str = "b1-5-worker-0",
    event_type: str = "MODIFIED",
    condition_reason: str | None = None,
    exit_code: int | None = None,
    init_exit_code: int | None = None,
) -> tuple[str, k8s.V1Pod]:
    """Build one ``(event_type, V1Pod)`` watch event."""

    def _status(container: str, code: int | None) -> k8s.V1ContainerStatus:
        state = k8s.V1ContainerState()
        if code is not None:
            state = k8s.V1ContainerState(
                terminated=k8s.V1ContainerStateTerminated(exit_code=code),
            )
        return k8s.V1ContainerStatus(
            name=container, image="img", image_id="", ready=False,
            restart_count=0, state=state,
        )

    conditions = None
    if condition_reason is not None:
        conditions = [k8s.V1PodCondition(type="Ready", status="False", reason=condition_reason)]

    pod = k8s.V1Pod(
        metadata=k8s.V1ObjectMeta(name=name),
        status=k8s.V1PodStatus(
            phase=phase,
            conditions=conditions,
            init_container_statuses=[_status("init", init_exit_code)],
            container_statuses=[_status(name, exit_code)],
        ),
    )
    return event_type, pod


# ---------------------------------------------------------------------------
# FakePodClient
# ---------------------------------------------------------------------------

class FakePodClient:
    """Scripted ``PodClient``.

    Tracks usage:
        client.created       → V1Pod objects submitted
        client.deleted       → pod names deleted
        client.log_requests  → (pod, container) pairs opened

    When ``hold_open`` is set the watch stays open after the scripted
    events, like a server with no further changes to report.
    """

    def __init__(
        self,
        events: Iterable[tuple[str, Any]] = (),
        *,
        logs: Mapping[str, Iterable[bytes]] | None = None,
        create_error: Exception | None = None,
        watch_error: Exception | None = None,
        open_logs_error: Exception | None = None,
        delete_error: Exception | None = None,
        hold_open: bool = False,
        log_delay: float = 0.0,
    ) -> None:
        self.events = list(events)
        self.log_delay = log_delay
        self.logs = {k: list(v) for k, v in (logs or {}).items()}
        self.create_error = create_error
        self.watch_error = watch_error
        self.open_logs_error = open_logs_error
        self.delete_error = delete_error
        self.hold_open = hold_open
        self.created: list[k8s.V1Pod] = []
        self.deleted: list[str] = []
        self.log_requests: list[tuple[str, str]] = []
        self.streams: list[FakeLogStream] = []
        self.watch_calls: list[tuple[str, str, int]] = []

    async def create(self, pod: k8s.V1Pod) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(pod)
        return str(len(self.created))

    async def watch(
        self, name: str, resource_version: str, timeout_seconds: int,
    ) -> AsyncIterator[tuple[str, Any]]:
        self.watch_calls.append((name, resource_version, timeout_seconds))
        for event in self.events:
            await asyncio.sleep(0)
            yield event
        if self.watch_error is not None:
            raise self.watch_error
        if self.hold_open:
            await asyncio.Event().wait()

    async def open_logs(self, name: str, container: str, since_seconds: int) -> FakeLogStream:
        if self.open_logs_error is not None:
            raise self.open_logs_error
        self.log_requests.append((name, container))
        stream = FakeLogStream(self.logs.get(container, ()), delay=self.log_delay)
        self.streams.append(stream)
        return stream

    async def delete(self, name: str, grace_period_seconds: int) -> None:
        self.deleted.append(name)
        if self.delete_error is not None:
            raise self.delete_error


# ---------------------------------------------------------------------------
# FakeLocalClient
# ---------------------------------------------------------------------------

class FakeLocalClient:
    """Scripted ``LocalRuntimeClient``.

    The main container exits with ``exit_code`` unless ``block`` is set,
    in which case ``wait`` only returns once the container is removed.
    Cleaner containers (``*-cleaner``) always exit 0.

    Tracks usage:
        client.created   → ContainerRequest objects, in order
        client.started   → container ids started
        client.removed   → container ids removed
        client.closed    → aclose() was called
    """

    def __init__(
        self,
        exit_code: int = 0,
        *,
        lines: Iterable[bytes] = (),
        block: bool = False,
        connect_error: Exception | None = None,
        create_error: Exception | None = None,
        start_error: Exception | None = None,
        attach_error: Exception | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.lines = list(lines)
        self.block = block
        self.connect_error = connect_error
        self.create_error = create_error
        self.start_error = start_error
        self.attach_error = attach_error
        self.connected = False
        self.closed = False
        self.created: list[ContainerRequest] = []
        self.started: list[str] = []
        self.removed: list[str] = []
        self._gone: dict[str, asyncio.Event] = {}

    @property
    def cleaners(self) -> list[ContainerRequest]:
        return [r for r in self.created if r.name.endswith("-cleaner")]

    async def ensure_socket(self) -> None:
        return None

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def create_container(self, request: ContainerRequest) -> str:
        if self.create_error is not None and not request.name.endswith("-cleaner"):
            raise self.create_error
        self.created.append(request)
        container_id = f"{request.name}-id"
        self._gone[container_id] = asyncio.Event()
        return container_id

    async def start(self, container_id: str) -> None:
        if self.start_error is not None and not container_id.endswith("-cleaner-id"):
            raise self.start_error
        self.started.append(container_id)

    async def attach(self, container_id: str) -> FakeLogStream:
        if self.attach_error is not None:
            raise self.attach_error
        return FakeLogStream(self.lines)

    async def wait(self, container_id: str) -> int:
        if container_id.endswith("-cleaner-id"):
            return 0
        if self.block:
            await self._gone[container_id].wait()
            return 137
        return self.exit_code

    async def remove(self, container_id: str, *, force: bool = True, volumes: bool = True) -> None:
        self.removed.append(container_id)
        gone = self._gone.get(container_id)
        if gone is not None:
            gone.set()

    async def aclose(self) -> None:
        self.closed = True
