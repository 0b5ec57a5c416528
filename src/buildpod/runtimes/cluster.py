"""Cluster runner — runs a unit as a pod and supervises it via watch.

Architecture:

    .. code-block:: text

        ClusterRunner._do_run(spec)
          ├── build_pod(spec)            UnitSpec → V1Pod
          ├── client.create(pod)         failure → CREATE (nothing to clean)
          ├── try:
          │     race ─┬─ _watch()        ordered event evaluation
          │           ├─ termination     → TERMINATED
          │           └─ run timeout     → TIMEOUT
          └── finally:
                logs.aclose()
                client.delete(name, grace=0)   errors logged only

    Event evaluation (``evaluate_pod_event``), in this fixed order:

    .. code-block:: text

        1. DELETED / ERROR event           → WATCH_BROKEN
        2. any container exit code != 0    → EXIT_NONZERO (with code)
        3. condition reason PodCompleted   → success
        4. phase Running, logs not started → start log streams
        5. phase Succeeded / Failed        → success / EXIT_NONZERO

    Step 2 precedes 3 because a pod can report "completed" and a failed
    container in the same event. Step 5 comes after 4 so a pod seen
    running and completed in one event still gets its logs started.

    .. mermaid::

        sequenceDiagram
            participant R as ClusterRunner
            participant K as PodClient
            participant M as LogMultiplexer
            R->>K: create(pod)
            K-->>R: resource_version
            R->>K: watch(name, resource_version)
            loop events
                K-->>R: (type, pod)
                alt first Running
                    R->>K: open_logs(container) per container
                    R->>M: attach(container, stream)
                end
            end
            R->>K: delete(name, grace=0)

The watch subscription has its own hard ceiling (``watch_timeout``),
longer than the run timeout. It only guards against a server that never
closes the stream; the run timeout normally fires first.

Tags:
    buildpod, runtimes, cluster, kubernetes, pods, watch
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TextIO

import aiohttp
from kubernetes_asyncio import client as k8s
from kubernetes_asyncio import watch as k8s_watch
from kubernetes_asyncio.client.exceptions import ApiException

from buildpod.runtimes._base import BaseWorkerRunner
from buildpod.runtimes._types import (
    FailureKind,
    StreamClosed,
    UnitSpec,
    VolumeMount,
    WorkerError,
)
from buildpod.runtimes.logs import LogMultiplexer
from buildpod.runtimes.termination import TerminationSignal, first_completed

logger = logging.getLogger(__name__)

DEFAULT_RUN_TIMEOUT = 90 * 60
DEFAULT_WATCH_TIMEOUT = 2 * 60 * 60
DEFAULT_LOG_SINCE_SECONDS = 300
POD_COMPLETED_REASON = "PodCompleted"


# ---------------------------------------------------------------------------
# Transport protocol
# ---------------------------------------------------------------------------

class PodClient(Protocol):
    """What the cluster runner needs from the orchestrator API."""

    async def create(self, pod: k8s.V1Pod) -> str:
        """Create the pod; return the resource version of the creation."""
        ...

    def watch(
        self, name: str, resource_version: str, timeout_seconds: int,
    ) -> AsyncIterator[tuple[str, Any]]:
        """Yield ``(event_type, pod)`` for the named pod."""
        ...

    async def open_logs(self, name: str, container: str, since_seconds: int) -> Any:
        """Open a followed log stream (a ``LogStream``) for one container."""
        ...

    async def delete(self, name: str, grace_period_seconds: int) -> None:
        ...


# ---------------------------------------------------------------------------
# UnitSpec → V1Pod
# ---------------------------------------------------------------------------

def _volume(mount: VolumeMount) -> k8s.V1Volume:
    if mount.source == "secret":
        return k8s.V1Volume(
            name=mount.name,
            secret=k8s.V1SecretVolumeSource(secret_name=mount.source_name),
        )
    if mount.source == "config_map":
        return k8s.V1Volume(
            name=mount.name,
            config_map=k8s.V1ConfigMapVolumeSource(name=mount.source_name),
        )
    return k8s.V1Volume(name=mount.name, empty_dir=k8s.V1EmptyDirVolumeSource())


def _container(spec: UnitSpec, name: str, args: list[str]) -> k8s.V1Container:
    resources = spec.resources.to_dict()
    security = spec.security
    return k8s.V1Container(
        name=name,
        image=spec.image,
        command=list(spec.entrypoint),
        args=args,
        env=[k8s.V1EnvVar(name=k, value=v) for k, v in spec.env.items()],
        working_dir=spec.working_dir,
        volume_mounts=[
            k8s.V1VolumeMount(name=v.name, mount_path=v.mount_path, read_only=v.read_only or None)
            for v in spec.volumes
        ],
        security_context=k8s.V1SecurityContext(
            privileged=True if security.privileged else None,
            run_as_user=security.run_as_user,
            run_as_group=security.run_as_group,
        ),
        resources=k8s.V1ResourceRequirements(limits=resources, requests=dict(resources)),
    )


def build_pod(spec: UnitSpec) -> k8s.V1Pod:
    """Translate a ``UnitSpec`` into the pod object submitted to the cluster."""
    init_containers = []
    if spec.init:
        init_containers.append(_container(spec, spec.init.name, spec.init.args))

    return k8s.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=k8s.V1ObjectMeta(name=spec.name, labels=dict(spec.labels) or None),
        spec=k8s.V1PodSpec(
            active_deadline_seconds=spec.active_deadline_seconds,
            automount_service_account_token=True,
            containers=[_container(spec, spec.name, list(spec.args))],
            init_containers=init_containers or None,
            restart_policy="Never",
            service_account_name=spec.service_account,
            termination_grace_period_seconds=spec.termination_grace_seconds,
            volumes=[_volume(v) for v in spec.volumes],
        ),
    )


# ---------------------------------------------------------------------------
# Event evaluation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PodVerdict:
    """What the watch loop should do after one event."""

    start_logs: bool = False
    completed: bool = False
    error: WorkerError | None = None

    @property
    def terminal(self) -> bool:
        return self.completed or self.error is not None


def _failed_exit_code(pod: Any) -> int | None:
    status = pod.status
    statuses = list(status.init_container_statuses or []) + list(status.container_statuses or [])
    for cs in statuses:
        terminated = cs.state.terminated if cs.state else None
        if terminated is not None and terminated.exit_code:
            return terminated.exit_code
    return None


def evaluate_pod_event(event_type: str, pod: Any, *, logs_started: bool) -> PodVerdict:
    """Evaluate one watch event. See the module docstring for the order."""
    name = pod.metadata.name if getattr(pod, "metadata", None) else "<unknown>"

    if event_type in ("DELETED", "ERROR"):
        return PodVerdict(error=WorkerError(
            kind=FailureKind.WATCH_BROKEN,
            message=f"pod {name} was deleted or the watch reported an error ({event_type})",
        ))

    status = pod.status
    exit_code = _failed_exit_code(pod)
    if exit_code is not None:
        return PodVerdict(error=WorkerError.exit_nonzero(name, exit_code))

    for condition in status.conditions or []:
        if condition.reason == POD_COMPLETED_REASON:
            return PodVerdict(completed=True)

    start_logs = status.phase == "Running" and not logs_started

    if status.phase == "Succeeded":
        return PodVerdict(start_logs=start_logs, completed=True)
    if status.phase == "Failed":
        return PodVerdict(start_logs=start_logs, error=WorkerError.exit_nonzero(name, None))
    return PodVerdict(start_logs=start_logs)


# ---------------------------------------------------------------------------
# Kubernetes transport
# ---------------------------------------------------------------------------

class ResponseLogStream:
    """Line iterator over a streaming ``aiohttp`` response."""

    def __init__(self, response: aiohttp.ClientResponse) -> None:
        self._response = response

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._lines()

    async def _lines(self) -> AsyncIterator[bytes]:
        try:
            while True:
                line = await self._response.content.readline()
                if not line:
                    return
                yield line[:-1] if line.endswith(b"\n") else line
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError) as exc:
            raise StreamClosed(str(exc)) from exc

    async def aclose(self) -> None:
        self._response.close()


class KubernetesPodClient:
    """``PodClient`` backed by ``kubernetes_asyncio``."""

    def __init__(self, api_client: k8s.ApiClient, namespace: str) -> None:
        self._api = k8s.CoreV1Api(api_client)
        self._namespace = namespace

    async def create(self, pod: k8s.V1Pod) -> str:
        created = await self._api.create_namespaced_pod(self._namespace, pod)
        return created.metadata.resource_version

    async def watch(
        self, name: str, resource_version: str, timeout_seconds: int,
    ) -> AsyncIterator[tuple[str, Any]]:
        async with k8s_watch.Watch() as w:
            async for event in w.stream(
                self._api.list_namespaced_pod,
                self._namespace,
                field_selector=f"metadata.name={name}",
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
            ):
                yield event["type"], event["object"]

    async def open_logs(self, name: str, container: str, since_seconds: int) -> ResponseLogStream:
        response = await self._api.read_namespaced_pod_log(
            name,
            self._namespace,
            container=container,
            follow=True,
            since_seconds=since_seconds,
            _preload_content=False,
        )
        return ResponseLogStream(response)

    async def delete(self, name: str, grace_period_seconds: int) -> None:
        try:
            await self._api.delete_namespaced_pod(
                name, self._namespace, grace_period_seconds=grace_period_seconds,
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            logger.debug("Pod %s already gone", name)


# ---------------------------------------------------------------------------
# ClusterRunner
# ---------------------------------------------------------------------------

class ClusterRunner(BaseWorkerRunner):
    """Runs UnitSpecs as pods in the managed cluster.

    Example:
        >>> runner = ClusterRunner(KubernetesPodClient(api, "builds"), logs_dir=Path("/srv/logs"))
        >>> result = await runner.run(spec, termination)
    """

    backend_name = "cluster"

    def __init__(
        self,
        client: PodClient,
        *,
        logs_dir: Path,
        console: TextIO | None = None,
        run_timeout: float = DEFAULT_RUN_TIMEOUT,
        watch_timeout: int = DEFAULT_WATCH_TIMEOUT,
        log_since_seconds: int = DEFAULT_LOG_SINCE_SECONDS,
        delete_grace_seconds: int = 0,
        log_drain_seconds: float = 5.0,
    ) -> None:
        super().__init__(logs_dir=logs_dir, console=console)
        self._client = client
        self._run_timeout = run_timeout
        self._watch_timeout = watch_timeout
        self._log_since = log_since_seconds
        self._delete_grace = delete_grace_seconds
        self._log_drain = log_drain_seconds

    async def _do_run(
        self,
        spec: UnitSpec,
        termination: TerminationSignal,
        logs: LogMultiplexer,
    ) -> None:
        pod = build_pod(spec)
        if termination.fired:
            raise WorkerError.terminated(spec.name)
        try:
            resource_version = await self._client.create(pod)
        except Exception as exc:
            raise WorkerError(
                kind=FailureKind.CREATE,
                message=f"failed to create pod {spec.name}: {exc}",
            ) from exc
        logger.info("Pod created: %s", spec.name)

        try:
            await self._supervise(spec, resource_version, termination, logs)
        finally:
            await logs.aclose()
            await self._delete(spec.name)

    async def _supervise(
        self,
        spec: UnitSpec,
        resource_version: str,
        termination: TerminationSignal,
        logs: LogMultiplexer,
    ) -> None:
        watcher = asyncio.ensure_future(self._watch(spec, resource_version, termination, logs))
        done = await first_completed(
            watcher, termination.wait(), timeout=self._run_timeout,
        )
        if watcher in done:
            try:
                watcher.result()
            except WorkerError as exc:
                if exc.kind not in (FailureKind.TERMINATED, FailureKind.TIMEOUT):
                    await logs.wait(timeout=self._log_drain)
                raise
            # Let the followed streams flush what the containers printed last.
            await logs.wait(timeout=self._log_drain)
            return
        if done:
            raise WorkerError.terminated(spec.name)
        raise WorkerError.timed_out(spec.name, self._run_timeout)

    async def _watch(
        self,
        spec: UnitSpec,
        resource_version: str,
        termination: TerminationSignal,
        logs: LogMultiplexer,
    ) -> None:
        logs_started = False
        try:
            async for event_type, pod in self._client.watch(
                spec.name, resource_version, self._watch_timeout,
            ):
                if termination.fired:
                    raise WorkerError.terminated(spec.name)

                verdict = evaluate_pod_event(event_type, pod, logs_started=logs_started)
                if verdict.start_logs:
                    logger.info("Starting logging for pod %s", spec.name)
                    await self._start_logs(spec, logs)
                    logs_started = True
                if verdict.error is not None:
                    raise verdict.error
                if verdict.completed:
                    logger.info("Pod %s has completed", spec.name)
                    return

                logger.info(
                    "Waiting on pod %s (phase=%s, logging=%s)",
                    spec.name, pod.status.phase, logs_started,
                )
        except WorkerError:
            raise
        except Exception as exc:
            logger.error("Failed watching pod %s: %s", spec.name, exc)
            raise WorkerError(
                kind=FailureKind.WATCH_BROKEN,
                message=f"orphaned pod {spec.name}: {exc}",
            ) from exc

        logger.error("Watch on pod %s closed before completion", spec.name)
        raise WorkerError(
            kind=FailureKind.WATCH_BROKEN,
            message=f"orphaned pod {spec.name}: watch closed",
        )

    async def _start_logs(self, spec: UnitSpec, logs: LogMultiplexer) -> None:
        for container in spec.container_names():
            try:
                stream = await self._client.open_logs(spec.name, container, self._log_since)
            except Exception as exc:
                logger.warning("Failed to open logs for %s/%s: %s", spec.name, container, exc)
                logs.report(container, f"failed to open log stream: {exc}")
                continue
            logs.attach(container, stream)

    async def _delete(self, name: str) -> None:
        try:
            await self._client.delete(name, self._delete_grace)
            logger.info("Pod deleted: %s", name)
        except Exception as exc:
            logger.error("Failed delete on pod %s: %s", name, exc)
