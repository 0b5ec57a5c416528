"""Unit spec builder — turns build metadata into a ``UnitSpec``.

The builder is pure: no network calls, no filesystem access. Everything
it needs arrives through its constructor (``WorkerDefaults`` and the
``ExecutionProfile``) or through ``build()``.

.. code-block:: text

    BuildMetadata + index + caller env
          │
          ▼
    UnitSpecBuilder.build()
    ├── name      = {buildconfig}-{buildnumber}-worker-{index}
    ├── env       = base env, then caller env (caller wins, no dupes)
    ├── profile   → security, resources, init steps
    ├── init      = one bash script from all init steps (or None)
    └── volumes   = base mounts + pre-computed extra mounts
          │
          ▼
    UnitSpec (frozen)

Tags:
    buildpod, runtimes, spec-builder, naming, environment
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from buildpod.runtimes._types import (
    BuildMetadata,
    ExecutionProfile,
    InitStep,
    UnitSpec,
    VolumeMount,
    WorkerError,
)

logger = logging.getLogger(__name__)

INIT_STEP_NAME = "init"
INIT_PATH = "/usr/sbin:/usr/bin:/usr/local/bin:/usr/local/sbin:$PATH"
SCRATCH_MOUNT_PATH = "/srv"

BASE_VOLUMES: tuple[VolumeMount, ...] = (
    VolumeMount(name="srv", mount_path=SCRATCH_MOUNT_PATH),
    VolumeMount(name="pki-trust", mount_path="/etc/pki/ca-trust/extracted"),
    VolumeMount(name="pki-anchors", mount_path="/etc/pki/ca-trust/anchors"),
    VolumeMount(name="container-certs", mount_path="/etc/containers/cert.d"),
)

BASE_ENV: tuple[tuple[str, str], ...] = (
    # Go and OpenSSL tooling both honour SSL_CERT_FILE; the init step fills it.
    ("SSL_CERT_FILE", "/etc/containers/cert.d/ca.crt"),
    ("OSCONTAINER_CERT_DIR", "/etc/containers/cert.d"),
)


@dataclass(frozen=True)
class WorkerDefaults:
    """Process-wide defaults, constructed once at startup."""

    entrypoint: tuple[str, ...] = ("/usr/bin/dumb-init",)
    args: tuple[str, ...] = ("/usr/bin/buildpod", "builder")
    working_dir: str = SCRATCH_MOUNT_PATH
    base_env: tuple[tuple[str, str], ...] = BASE_ENV
    base_volumes: tuple[VolumeMount, ...] = BASE_VOLUMES
    extra_volumes: tuple[VolumeMount, ...] = field(default_factory=tuple)
    active_deadline_seconds: int = 1800
    termination_grace_seconds: int = 300


DEFAULTS = WorkerDefaults()


def unit_name(build: BuildMetadata, index: int) -> str:
    """Deterministic unit identity, unique per worker of a build.

    Example:
        >>> unit_name(BuildMetadata("b1", "5", "img"), 0)
        'b1-5-worker-0'
    """
    return f"{build.build_config}-{build.build_number}-worker-{index}"


def merge_env(
    base: Iterable[tuple[str, str]],
    caller: Iterable[tuple[str, str]] | Mapping[str, str],
) -> dict[str, str]:
    """Apply base entries first, then caller entries.

    A caller entry with the same key replaces the base value; the key
    keeps its original position. The result never holds duplicate keys.
    """
    merged = dict(base)
    items = caller.items() if isinstance(caller, Mapping) else caller
    for key, value in items:
        merged[key] = value
    return merged


def init_script(steps: Iterable[str]) -> str:
    """Concatenate init steps into one bash script with a fixed PATH."""
    body = "\n".join(steps)
    return f"#!/bin/bash\nexport PATH={INIT_PATH}\n{body}\n"


class UnitSpecBuilder:
    """Builds ``UnitSpec`` values for the workers of a build.

    Example:
        >>> builder = UnitSpecBuilder(profile=MODERN_PROFILE)
        >>> spec = builder.build(build, 0, [("FOO", "bar")])
        >>> spec.name
        'b1-5-worker-0'
    """

    def __init__(
        self,
        profile: ExecutionProfile,
        defaults: WorkerDefaults = DEFAULTS,
    ) -> None:
        self._profile = profile
        self._defaults = defaults

    @property
    def profile(self) -> ExecutionProfile:
        return self._profile

    def build(
        self,
        build: BuildMetadata,
        index: int,
        env: Iterable[tuple[str, str]] | Mapping[str, str] = (),
    ) -> UnitSpec:
        """Produce the spec for worker ``index`` of ``build``.

        Raises:
            WorkerError: INVALID_SPEC on missing metadata or a negative index.
        """
        self._validate(build, index)
        name = unit_name(build, index)
        logger.info("Building unit spec %s (profile=%s)", name, self._profile.name)

        init = None
        if self._profile.init_steps:
            init = InitStep(name=INIT_STEP_NAME, script=init_script(self._profile.init_steps))

        d = self._defaults
        return UnitSpec(
            name=name,
            image=build.image,
            entrypoint=d.entrypoint,
            args=d.args,
            env=merge_env(d.base_env, env),
            resources=self._profile.resources,
            security=self._profile.security,
            volumes=d.base_volumes + d.extra_volumes,
            working_dir=d.working_dir,
            init=init,
            labels=build.labels,
            service_account=build.service_account,
            active_deadline_seconds=d.active_deadline_seconds,
            termination_grace_seconds=d.termination_grace_seconds,
        )

    @staticmethod
    def _validate(build: BuildMetadata, index: int) -> None:
        missing = [
            label for label, value in (
                ("build config", build.build_config),
                ("build number", build.build_number),
                ("image", build.image),
            ) if not value
        ]
        if missing:
            raise WorkerError.invalid_spec(
                f"build metadata is missing: {', '.join(missing)}"
            )
        if index < 0:
            raise WorkerError.invalid_spec(f"worker index must be >= 0, got {index}")
