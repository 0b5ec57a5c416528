"""Configuration for the buildpod worker engine.

Provides a Pydantic v2 settings model for everything a worker run needs
beyond the build metadata itself: namespace, directories, deadlines, the
podman socket, and the device nodes passed through locally. Every field
can be overridden from the environment.

Key Concepts:
    WorkerSettings: One immutable-in-practice settings object built at
        startup and handed to the engine. Uses ``BUILDPOD_*`` env vars
        via ``from_env()``.

Architecture Decisions:
    - Pydantic v2 (not dataclass): field validation plus
      ``model_validator(mode="after")`` for cross-field checks.
    - from_env() classmethod: explicit env-var parsing rather than
      ``pydantic-settings``.
    - Override precedence: kwargs > env vars > field defaults.
    - The watch ceiling must outlive the run timeout, otherwise a healthy
      long build would be reported as an orphaned pod.

Related Modules:
    - :mod:`buildpod.runtimes.engine` — consumes the settings
    - :mod:`buildpod.cli` — builds the settings from flags + env

Tags:
    config, settings, pydantic, environment
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "BUILDPOD_"

_LIST_FIELDS = {"devices"}
_BOOL_FIELDS = {"start_socket", "force_no_cluster", "fail_on_log_error"}
_INT_FIELDS = {"log_since_seconds", "delete_grace_seconds", "watch_timeout_seconds"}
_FLOAT_FIELDS = {"run_timeout_seconds", "teardown_delay_seconds", "log_drain_seconds"}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


class WorkerSettings(BaseModel):
    """Settings for one worker process.

    Example::

        settings = WorkerSettings.from_env(namespace="builds")
        settings.run_timeout_seconds
        5400.0
    """

    # Cluster
    namespace: str | None = Field(
        default=None,
        description="Namespace for worker pods (defaults to the in-cluster namespace)",
    )
    watch_timeout_seconds: int = Field(
        default=2 * 60 * 60,
        gt=0,
        description="Hard ceiling of one pod watch subscription",
    )
    log_since_seconds: int = Field(
        default=300,
        ge=0,
        description="How far back pod log streams start",
    )
    delete_grace_seconds: int = Field(
        default=0,
        ge=0,
        description="Grace period used when deleting the worker pod",
    )
    force_no_cluster: bool = Field(
        default=False,
        description="Run locally even when cluster credentials are present",
    )

    # Shared
    logs_dir: Path = Field(default=Path("/srv/logs"), description="Per-container log files")
    run_timeout_seconds: float = Field(
        default=90 * 60,
        gt=0,
        description="Deadline for one worker run on either backend",
    )
    log_drain_seconds: float = Field(
        default=5.0,
        ge=0,
        description="How long to let log streams flush after the unit completes",
    )
    fail_on_log_error: bool = Field(
        default=False,
        description="Turn a successful run with log-copy errors into a failure",
    )

    # Local
    work_dir: Path = Field(default=Path("/srv"), description="Parent of ephemeral scratch dirs")
    scratch_dir: Path | None = Field(
        default=None,
        description="Pre-bound host dir mounted at /srv; never cleaned up",
    )
    podman_socket: str | None = Field(
        default=None,
        description="Podman API URL (default unix://$XDG_RUNTIME_DIR/podman/podman.sock)",
    )
    start_socket: bool = Field(
        default=True,
        description="Start podman.socket via systemctl --user before connecting",
    )
    selinux_label: str | None = Field(
        default="system_u:object_r:container_file_t:s0",
        description="Label applied to ephemeral scratch dirs (empty disables)",
    )
    devices: list[str] = Field(
        default_factory=lambda: ["/dev/kvm", "/dev/fuse"],
        description="Host device nodes passed through when they exist",
    )
    teardown_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Pause before removing the local container so output flushes",
    )

    @model_validator(mode="after")
    def _check_timeouts(self) -> WorkerSettings:
        if self.watch_timeout_seconds <= self.run_timeout_seconds:
            raise ValueError(
                f"watch_timeout_seconds ({self.watch_timeout_seconds}) must be longer "
                f"than run_timeout_seconds ({self.run_timeout_seconds:g})"
            )
        if self.selinux_label == "":
            self.selinux_label = None
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> WorkerSettings:
        """Create settings from BUILDPOD_* environment variables."""
        values: dict[str, Any] = {}
        for field_name in cls.model_fields:
            env_val = os.environ.get(f"{ENV_PREFIX}{field_name.upper()}")
            if env_val is None:
                continue
            if field_name in _LIST_FIELDS:
                values[field_name] = [d.strip() for d in env_val.split(",") if d.strip()]
            elif field_name in _BOOL_FIELDS:
                values[field_name] = _parse_bool(env_val)
            elif field_name in _INT_FIELDS:
                values[field_name] = int(env_val)
            elif field_name in _FLOAT_FIELDS:
                values[field_name] = float(env_val)
            else:
                values[field_name] = env_val
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
