"""Local runner — runs a unit as a podman container on the workstation.

Translates a ``UnitSpec`` into a ``ContainerRequest`` and drives it
through the podman socket API. Used when the process is not running
inside the managed cluster.

Architecture:

    .. code-block:: text

        LocalRunner._do_run(spec)
          ├── client.ensure_socket()     systemctl --user start podman.socket
          ├── client.connect()           failure → CONNECTION
          ├── scratch dir                pre-bound, or <work_dir>/<name> (0777 + chcon)
          ├── try:
          │     create + start           failure → CREATE
          │     attach → LogMultiplexer  (container "<name>")
          │     race ─┬─ client.wait()   exit code
          │           ├─ termination     → TERMINATED
          │           └─ run timeout     → TIMEOUT
          └── finally:
                session.teardown()       one shared task, idempotent
                client.aclose()          release the podman connection

        Teardown (errors are logged, never raised):
          ├── sleep(teardown_delay)      let the attach stream flush
          ├── remove(main, force, volumes)
          └── ephemeral scratch only:
                ├── <name>-cleaner as root: /bin/rm -rvf /srv/  (if started)
                └── rmtree(<work_dir>/<name>)

    UnitSpec field        │ ContainerRequest
    ──────────────────────┼──────────────────────────────────────────
    image                 │ image
    entrypoint + args     │ entrypoint + command
    env                   │ environment + BUILDPOD_FORCE_NO_CLUSTER=1
    volumes               │ one bind mount: scratch dir → /srv
    security              │ privileged, user "builder", uid mappings
    resources             │ host device nodes that exist (kvm, fuse)
    init                  │ not run locally

The cleaner container exists because files in the scratch area are
owned by mapped uids the invoking user cannot delete directly.

Tags:
    buildpod, runtimes, local, podman, containers, scratch
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import AsyncIterator, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol, TextIO

import requests
from podman import PodmanClient
from podman import api as podman_api

from buildpod.runtimes._base import BaseWorkerRunner
from buildpod.runtimes._types import (
    FailureKind,
    LogStream,
    StreamClosed,
    UnitSpec,
    WorkerError,
)
from buildpod.runtimes.logs import LogMultiplexer
from buildpod.runtimes.spec_builder import SCRATCH_MOUNT_PATH
from buildpod.runtimes.termination import TerminationSignal, first_completed

logger = logging.getLogger(__name__)

LOCAL_MARKER_ENV = "BUILDPOD_FORCE_NO_CLUSTER"
CONTAINER_USER = "builder"
MAPPED_UID_RANGE = 200000
DEFAULT_DEVICES = ("/dev/kvm", "/dev/fuse")
DEFAULT_SELINUX_LABEL = "system_u:object_r:container_file_t:s0"
DEFAULT_RUN_TIMEOUT = 90 * 60
CLEANER_COMMAND = ("/bin/rm", "-rvf", f"{SCRATCH_MOUNT_PATH}/")


def default_socket_url() -> str:
    """``unix://$XDG_RUNTIME_DIR/podman/podman.sock``"""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
    return f"unix://{runtime_dir}/podman/podman.sock"


# ---------------------------------------------------------------------------
# Container request
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContainerRequest:
    """Backend-native create request for one local container."""

    name: str
    image: str
    entrypoint: tuple[str, ...]
    command: tuple[str, ...]
    env: Mapping[str, str]
    user: str = CONTAINER_USER
    privileged: bool = True
    network_mode: str = "host"
    working_dir: str = SCRATCH_MOUNT_PATH
    mounts: tuple[tuple[str, str], ...] = ()         # (host source, container target)
    devices: tuple[str, ...] = ()
    uid_map: tuple[tuple[int, int, int], ...] = ()   # (container id, host id, size)

    def to_create_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``podman.PodmanClient.containers.create``."""
        kwargs: dict[str, Any] = {
            "name": self.name,
            "entrypoint": list(self.entrypoint),
            "command": list(self.command),
            "environment": dict(self.env),
            "network_mode": self.network_mode,
            "privileged": self.privileged,
            "user": self.user,
            "working_dir": self.working_dir,
            "mounts": [
                {"type": "bind", "source": source, "target": target}
                for source, target in self.mounts
            ],
            "devices": list(self.devices),
            "tty": False,
        }
        if self.uid_map:
            kwargs["idmappings"] = {
                "UIDMap": [
                    {"container_id": c, "host_id": h, "size": s}
                    for c, h, s in self.uid_map
                ],
            }
        return kwargs

    def cleaner(self) -> ContainerRequest:
        """The root container that empties the scratch mount."""
        return replace(
            self,
            name=f"{self.name}-cleaner",
            user="root",
            entrypoint=CLEANER_COMMAND,
            command=(),
        )


# ---------------------------------------------------------------------------
# Transport protocol
# ---------------------------------------------------------------------------

class LocalRuntimeClient(Protocol):
    """What the local runner needs from the container runtime."""

    async def ensure_socket(self) -> None: ...

    async def connect(self) -> None: ...

    async def create_container(self, request: ContainerRequest) -> str: ...

    async def start(self, container_id: str) -> None: ...

    async def attach(self, container_id: str) -> LogStream: ...

    async def wait(self, container_id: str) -> int: ...

    async def remove(self, container_id: str, *, force: bool = True, volumes: bool = True) -> None: ...

    async def aclose(self) -> None: ...


# ---------------------------------------------------------------------------
# Podman transport
# ---------------------------------------------------------------------------

class ThreadedLineStream:
    """Async line iterator over a blocking chunk iterator.

    Each ``next()`` runs in a worker thread. Chunks are re-split on
    newlines since podman frames are not line aligned. Closing the
    stream closes the HTTP response, which unblocks a thread still
    waiting in ``next()``.
    """

    def __init__(self, chunks: Iterator[bytes], response: Any = None) -> None:
        self._chunks = chunks
        self._response = response
        self._closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._lines()

    async def _lines(self) -> AsyncIterator[bytes]:
        pending = b""
        while not self._closed:
            try:
                chunk = await asyncio.to_thread(next, self._chunks, None)
            except (requests.exceptions.ConnectionError,
                    requests.exceptions.ChunkedEncodingError) as exc:
                raise StreamClosed(str(exc)) from exc
            except Exception:
                # Reads fail once aclose() has shut the response.
                if self._closed:
                    return
                raise
            if chunk is None:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                yield line
        if pending:
            yield pending

    async def aclose(self) -> None:
        self._closed = True
        if self._response is not None:
            self._response.close()

    @property
    def closed(self) -> bool:
        return self._closed


class PodmanRuntimeClient:
    """``LocalRuntimeClient`` backed by ``podman-py``.

    podman-py is synchronous; every call runs through ``asyncio.to_thread``.
    """

    def __init__(self, base_url: str | None = None, *, start_socket: bool = True) -> None:
        self._base_url = base_url or default_socket_url()
        self._start_socket = start_socket and base_url is None
        self._client: PodmanClient | None = None

    @property
    def client(self) -> PodmanClient:
        if self._client is None:
            raise RuntimeError("podman client is not connected")
        return self._client

    async def ensure_socket(self) -> None:
        if not self._start_socket:
            return
        proc = await asyncio.create_subprocess_exec(
            "systemctl", "--user", "start", "podman.socket",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ConnectionError(
                f"failed to start podman socket: {stderr.decode(errors='replace').strip()}"
            )

    async def connect(self) -> None:
        client = PodmanClient(base_url=self._base_url)
        if not await asyncio.to_thread(client.ping):
            raise ConnectionError(f"podman service at {self._base_url} did not answer")
        self._client = client
        logger.info("Connected to podman at %s", self._base_url)

    async def create_container(self, request: ContainerRequest) -> str:
        container = await asyncio.to_thread(
            self.client.containers.create, request.image, **request.to_create_kwargs(),
        )
        return container.id

    async def start(self, container_id: str) -> None:
        await asyncio.to_thread(lambda: self.client.containers.get(container_id).start())

    async def attach(self, container_id: str) -> ThreadedLineStream:
        def _open() -> requests.Response:
            response = self.client.api.get(
                f"/containers/{container_id}/logs",
                params={"follow": True, "stdout": True, "stderr": True},
                stream=True,
            )
            response.raise_for_status()
            return response

        response = await asyncio.to_thread(_open)
        return ThreadedLineStream(podman_api.stream_frames(response), response)

    async def wait(self, container_id: str) -> int:
        status = await asyncio.to_thread(lambda: self.client.containers.get(container_id).wait())
        return int(status)

    async def remove(self, container_id: str, *, force: bool = True, volumes: bool = True) -> None:
        await asyncio.to_thread(self.client.containers.remove, container_id, force=force, v=volumes)

    async def aclose(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            client.close()


# ---------------------------------------------------------------------------
# Teardown session
# ---------------------------------------------------------------------------

@dataclass
class _LocalSession:
    """Everything one local run created, and the single task removing it."""

    client: LocalRuntimeClient
    request: ContainerRequest
    scratch_dir: Path
    ephemeral: bool
    delay: float = 0.0
    container_id: str | None = None
    started: bool = False
    _task: asyncio.Future[None] | None = field(default=None, repr=False)

    async def teardown(self) -> None:
        """Run teardown once; every later call waits on the same task."""
        if self._task is None:
            self._task = asyncio.ensure_future(self._teardown())
        await asyncio.shield(self._task)

    async def _teardown(self) -> None:
        if self.started and self.delay:
            await asyncio.sleep(self.delay)
        if self.container_id is not None:
            await self._remove(self.container_id, self.request.name)
        if self.ephemeral:
            await self._clean_scratch()

    async def _remove(self, container_id: str, name: str) -> None:
        try:
            await self.client.remove(container_id, force=True, volumes=True)
            logger.info("Container removed: %s", name)
        except Exception as exc:
            logger.error("Failed to remove container %s: %s", name, exc)

    async def _clean_scratch(self) -> None:
        logger.info("Cleaning up ephemeral %s", self.scratch_dir)
        # Only a started container can leave mapped-uid files behind.
        if self.started:
            await self._run_cleaner()

        try:
            await asyncio.to_thread(shutil.rmtree, self.scratch_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Failed to remove %s: %s", self.scratch_dir, exc)

    async def _run_cleaner(self) -> None:
        cleaner = self.request.cleaner()
        try:
            cleaner_id = await self.client.create_container(cleaner)
        except Exception as exc:
            logger.error("Failed to create cleanup container %s: %s", cleaner.name, exc)
            return
        try:
            await self.client.start(cleaner_id)
            code = await self.client.wait(cleaner_id)
            logger.info("Cleanup container %s exited with %s", cleaner.name, code)
        except Exception as exc:
            logger.error("Cleanup container %s failed: %s", cleaner.name, exc)
        finally:
            await self._remove(cleaner_id, cleaner.name)


# ---------------------------------------------------------------------------
# LocalRunner
# ---------------------------------------------------------------------------

class LocalRunner(BaseWorkerRunner):
    """Runs UnitSpecs as podman containers.

    Example:
        >>> runner = LocalRunner(PodmanRuntimeClient(), logs_dir=Path("/srv/logs"))
        >>> result = await runner.run(spec, termination)
    """

    backend_name = "local"

    def __init__(
        self,
        client: LocalRuntimeClient,
        *,
        logs_dir: Path,
        console: TextIO | None = None,
        work_dir: Path = Path(SCRATCH_MOUNT_PATH),
        scratch_dir: Path | None = None,
        run_timeout: float = DEFAULT_RUN_TIMEOUT,
        selinux_label: str | None = DEFAULT_SELINUX_LABEL,
        devices: Sequence[str] = DEFAULT_DEVICES,
        teardown_delay: float = 1.0,
        log_drain_seconds: float = 5.0,
        host_uid: int | None = None,
        device_exists: Callable[[str], bool] = os.path.exists,
    ) -> None:
        super().__init__(logs_dir=logs_dir, console=console)
        self._client = client
        self._work_dir = work_dir
        self._scratch_dir = scratch_dir
        self._run_timeout = run_timeout
        self._selinux_label = selinux_label
        self._devices = tuple(devices)
        self._teardown_delay = teardown_delay
        self._log_drain = log_drain_seconds
        self._host_uid = os.getuid() if host_uid is None else host_uid
        self._device_exists = device_exists

    def container_request(self, spec: UnitSpec, scratch_dir: Path) -> ContainerRequest:
        """Translate ``spec`` for the local runtime."""
        env = dict(spec.env)
        env[LOCAL_MARKER_ENV] = "1"

        devices = []
        for device in self._devices:
            if self._device_exists(device):
                devices.append(device)
            else:
                logger.warning("Host device %s not found, not passing it through", device)

        return ContainerRequest(
            name=spec.name,
            image=spec.image,
            entrypoint=spec.entrypoint,
            command=spec.args,
            env=env,
            working_dir=spec.working_dir,
            mounts=((str(scratch_dir), SCRATCH_MOUNT_PATH),),
            devices=tuple(devices),
            uid_map=(
                (0, self._host_uid, 1),
                (1000, self._host_uid, MAPPED_UID_RANGE),
            ),
        )

    async def _do_run(
        self,
        spec: UnitSpec,
        termination: TerminationSignal,
        logs: LogMultiplexer,
    ) -> None:
        if termination.fired:
            raise WorkerError.terminated(spec.name)
        try:
            await self._run_connected(spec, termination, logs)
        finally:
            await self._client.aclose()

    async def _run_connected(
        self,
        spec: UnitSpec,
        termination: TerminationSignal,
        logs: LogMultiplexer,
    ) -> None:
        try:
            await self._client.ensure_socket()
            await self._client.connect()
        except Exception as exc:
            raise WorkerError(
                kind=FailureKind.CONNECTION,
                message=f"failed to connect to the container runtime: {exc}",
            ) from exc

        scratch_dir, ephemeral = await self._prepare_scratch(spec)
        logger.info("Using host directory %s for %s", scratch_dir, SCRATCH_MOUNT_PATH)

        session = _LocalSession(
            client=self._client,
            request=self.container_request(spec, scratch_dir),
            scratch_dir=scratch_dir,
            ephemeral=ephemeral,
            delay=self._teardown_delay,
        )
        try:
            exit_code = await self._run_container(spec, session, termination, logs)
        finally:
            await session.teardown()

        if exit_code != 0:
            raise WorkerError.exit_nonzero(spec.name, exit_code)

    async def _run_container(
        self,
        spec: UnitSpec,
        session: _LocalSession,
        termination: TerminationSignal,
        logs: LogMultiplexer,
    ) -> int:
        if termination.fired:
            raise WorkerError.terminated(spec.name)
        try:
            session.container_id = await self._client.create_container(session.request)
        except Exception as exc:
            raise WorkerError(
                kind=FailureKind.CREATE,
                message=f"failed to create container {spec.name}: {exc}",
            ) from exc
        logger.info("Container created: %s", spec.name)

        try:
            await self._client.start(session.container_id)
        except Exception as exc:
            raise WorkerError(
                kind=FailureKind.CREATE,
                message=f"failed to start container {spec.name}: {exc}",
            ) from exc
        session.started = True

        try:
            stream = await self._client.attach(session.container_id)
        except Exception as exc:
            logger.warning("Failed to attach to %s: %s", spec.name, exc)
            logs.report(spec.name, f"failed to attach: {exc}")
        else:
            logs.attach(spec.name, stream)

        waiter = asyncio.ensure_future(self._client.wait(session.container_id))
        done = await first_completed(waiter, termination.wait(), timeout=self._run_timeout)
        if waiter in done:
            try:
                exit_code = waiter.result()
            except Exception as exc:
                raise WorkerError(
                    kind=FailureKind.BACKEND,
                    message=f"failed waiting on container {spec.name}: {exc}",
                ) from exc
            logger.info("Container %s exited with %s", spec.name, exit_code)
            # The followed stream ends with the container; let it flush.
            await logs.wait(timeout=self._log_drain)
            return exit_code
        if done:
            raise WorkerError.terminated(spec.name)
        raise WorkerError.timed_out(spec.name, self._run_timeout)

    async def _prepare_scratch(self, spec: UnitSpec) -> tuple[Path, bool]:
        """Return ``(dir, ephemeral)``; ephemeral dirs are labelled for containers."""
        if self._scratch_dir is not None:
            return self._scratch_dir, False

        path = self._work_dir / spec.name
        try:
            path.mkdir(parents=True, exist_ok=True)
            path.chmod(0o777)
        except OSError as exc:
            raise WorkerError(
                kind=FailureKind.CONNECTION,
                message=f"failed to create ephemeral scratch dir {path}: {exc}",
            ) from exc

        try:
            await self._label(path)
        except WorkerError:
            shutil.rmtree(path, ignore_errors=True)
            raise
        return path, True

    async def _label(self, path: Path) -> None:
        if self._selinux_label is None:
            return
        chcon = shutil.which("chcon")
        if chcon is None:
            logger.warning("chcon not installed, leaving %s unlabelled", path)
            return
        proc = await asyncio.create_subprocess_exec(
            chcon, "-R", self._selinux_label, str(path),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise WorkerError(
                kind=FailureKind.CONNECTION,
                message=(
                    f"failed to set selinux context on {path}: "
                    f"{stderr.decode(errors='replace').strip()}"
                ),
            )
