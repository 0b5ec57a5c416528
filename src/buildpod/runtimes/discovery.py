"""Cluster discovery — are we running inside the managed cluster?

Loads the in-cluster service-account configuration. When that works the
process is in a cluster: the namespace comes from settings or the
mounted service account, and the server version is fetched once so the
execution profile can be selected.

.. code-block:: text

    discover_cluster(settings)
      ├── force_no_cluster?         → ClusterInfo(in_cluster=False)
      ├── load_incluster_config()   fails → ClusterInfo(in_cluster=False)
      ├── namespace                 settings.namespace or SA namespace file
      └── VersionApi.get_code()     fails → WorkerError(CONNECTION)

Tags:
    buildpod, runtimes, discovery, kubernetes, version
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from kubernetes_asyncio import client as k8s
from kubernetes_asyncio import config as k8s_config
from kubernetes_asyncio.config.config_exception import ConfigException

from buildpod.config import WorkerSettings
from buildpod.runtimes._types import FailureKind, WorkerError
from buildpod.runtimes.profiles import VersionInfo

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_NAMESPACE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")


@dataclass(frozen=True)
class ClusterInfo:
    """Outcome of discovery. ``api_client`` is set only in a cluster."""

    in_cluster: bool
    namespace: str | None = None
    version: VersionInfo | None = None
    api_client: k8s.ApiClient | None = None

    async def aclose(self) -> None:
        if self.api_client is not None:
            await self.api_client.close()


def _namespace(settings: WorkerSettings, path: Path = SERVICE_ACCOUNT_NAMESPACE) -> str:
    if settings.namespace:
        return settings.namespace
    try:
        return path.read_text().strip()
    except OSError as exc:
        raise WorkerError(
            kind=FailureKind.CONNECTION,
            message=f"no namespace configured and {path} is unreadable: {exc}",
        ) from exc


async def discover_cluster(settings: WorkerSettings) -> ClusterInfo:
    """Detect the backend and, in a cluster, its namespace and version."""
    if settings.force_no_cluster:
        logger.info("Cluster use disabled by settings, running locally")
        return ClusterInfo(in_cluster=False)

    try:
        k8s_config.load_incluster_config()
    except ConfigException as exc:
        logger.info("Not running in a cluster (%s)", exc)
        return ClusterInfo(in_cluster=False)

    namespace = _namespace(settings)
    api_client = k8s.ApiClient()
    try:
        code = await k8s.VersionApi(api_client).get_code()
    except Exception as exc:
        await api_client.close()
        raise WorkerError(
            kind=FailureKind.CONNECTION,
            message=f"failed to query cluster version: {exc}",
        ) from exc

    version = VersionInfo(major=code.major, minor=code.minor, git_version=code.git_version or "")
    logger.info("Running in cluster namespace %s (%s)", namespace, version)
    return ClusterInfo(
        in_cluster=True,
        namespace=namespace,
        version=version,
        api_client=api_client,
    )
