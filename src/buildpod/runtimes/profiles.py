"""Execution profiles selected from the cluster version.

Two profiles exist:

- ``MODERN_PROFILE``: unprivileged, requests one KVM device from the
  cluster's device plugin, init steps only set up trust anchors.
- ``LEGACY_PROFILE``: for clusters reporting minor version ``11``.
  ``/dev/kvm`` is rarely world-writable there, so the worker runs
  privileged as UID 0 / GID 1000 and an extra init step repairs the
  device permissions.

Selection happens once, from the version triple the discovery
collaborator returns. Outside a cluster the modern profile applies.

Tags:
    buildpod, runtimes, profiles, security, versions
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from buildpod.runtimes._types import (
    ExecutionProfile,
    ResourceRequirements,
    SecurityProfile,
    WorkerError,
)

logger = logging.getLogger(__name__)

KVM_DEVICE_RESOURCE = "devices.kubevirt.io/kvm"
LEGACY_MINOR_VERSION = 11

# Run before the worker on every backend that supports init steps.
TRUST_ANCHOR_STEPS: tuple[str, ...] = (
    "mkdir -vp /etc/pki/ca-trust/extracted/{openssl,pem,java,edk2}",
    # Extra anchors mounted from secrets
    "cp -av /etc/pki/ca-trust/source/anchors2/*{crt,pem} /etc/pki/ca-trust/anchors/ || :",
    # Cluster-provided certificates are always trusted
    "cp -av /run/secrets/kubernetes.io/serviceaccount/ca.crt /etc/pki/ca-trust/anchors/cluster-ca.crt || :",
    "cp -av /run/secrets/kubernetes.io/serviceaccount/service-ca.crt /etc/pki/ca-trust/anchors/service-ca.crt || :",
    "update-ca-trust",
    # Container tooling reads its own bundle
    "mkdir -vp /etc/containers/certs.d",
    "cat /run/secrets/kubernetes.io/serviceaccount/*crt >> /etc/containers/certs.d/ca.crt || :",
    "cat /etc/pki/ca-trust/extracted/pem/* >> /etc/containers/certs.d/ca.crt ||:",
)

DEVICE_REPAIR_STEPS: tuple[str, ...] = (
    "/usr/bin/chmod 0666 /dev/kvm || echo missing kvm",
    "/usr/bin/stat /dev/kvm || :",
)

MODERN_PROFILE = ExecutionProfile(
    name="modern",
    security=SecurityProfile(),
    resources=ResourceRequirements(
        cpu="2",
        memory="4Gi",
        devices={KVM_DEVICE_RESOURCE: "1"},
    ),
    init_steps=TRUST_ANCHOR_STEPS,
)

LEGACY_PROFILE = ExecutionProfile(
    name="legacy",
    security=SecurityProfile(privileged=True, run_as_user=0, run_as_group=1000),
    resources=ResourceRequirements(cpu="2", memory="4Gi"),
    init_steps=TRUST_ANCHOR_STEPS + DEVICE_REPAIR_STEPS,
)


@dataclass(frozen=True)
class VersionInfo:
    """Server version triple reported by the orchestrator."""

    major: str
    minor: str
    git_version: str = ""

    @property
    def minor_number(self) -> int:
        """Minor version as an int; providers append ``+`` (e.g. ``11+``)."""
        try:
            return int(self.minor.rstrip("+"))
        except ValueError as exc:
            raise WorkerError.invalid_spec(
                f"cannot parse cluster minor version {self.minor!r}"
            ) from exc

    def __str__(self) -> str:
        return self.git_version or f"v{self.major}.{self.minor}"


def select_profile(version: VersionInfo | None) -> ExecutionProfile:
    """Pick the execution profile for a cluster version.

    Args:
        version: The discovered version, or None when not in a cluster.

    Raises:
        WorkerError: INVALID_SPEC when the minor version is not numeric.
    """
    if version is None:
        return MODERN_PROFILE

    minor = version.minor_number
    logger.info("Cluster version is %s (%s.%d)", version, version.major, minor)
    if minor == LEGACY_MINOR_VERSION:
        logger.info("Using legacy execution profile")
        return LEGACY_PROFILE
    return MODERN_PROFILE
