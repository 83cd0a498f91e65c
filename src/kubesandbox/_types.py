# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from functools import cached_property
from typing import Any


class SandboxStatus(StrEnum):
    """Sandbox status values."""

    CREATING = "creating"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


# A sandbox in error may still own a live pod until stop() is retried
TERMINAL_STATUSES = frozenset({SandboxStatus.STOPPED})


class SandboxEventType(StrEnum):
    """Lifecycle events emitted by a SandboxProvider."""

    CREATING = "sandbox:creating"
    CREATED = "sandbox:created"
    STARTING = "sandbox:starting"
    STARTED = "sandbox:started"
    IDLE = "sandbox:idle"
    STOPPING = "sandbox:stopping"
    STOPPED = "sandbox:stopped"
    ERROR = "sandbox:error"


@dataclass(frozen=True)
class SandboxEvent:
    type: SandboxEventType
    sandbox_id: str
    project_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = field(default_factory=dict)


class WarmPodState(StrEnum):
    """Warm pod states. ``claimed`` is terminal for the pool."""

    PROVISIONING = "provisioning"
    AVAILABLE = "available"
    CLAIMED = "claimed"
    DRAINING = "draining"


@dataclass
class WarmPodInfo:
    """A pod tracked by the warm pool."""

    pod_name: str
    created_at: datetime
    state: WarmPodState = WarmPodState.PROVISIONING
    image: str | None = None
    available_at: datetime | None = None
    claimed_at: datetime | None = None
    project_id: str | None = None


class PssProfile(StrEnum):
    """Pod Security Standards profiles, most to least permissive."""

    PRIVILEGED = "privileged"
    BASELINE = "baseline"
    RESTRICTED = "restricted"


@dataclass(frozen=True)
class PssValidationResult:
    """Outcome of validating a pod spec against a profile."""

    valid: bool
    profile: PssProfile
    violations: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass
class ExecResult:
    """Result from a completed sandbox exec operation.

    A non-zero returncode is a normal outcome, not an error.

    Attributes:
        stdout_bytes: Raw stdout bytes from the command
        stderr_bytes: Raw stderr bytes from the command
        returncode: Exit code from the command
        command: The command that was executed (for debugging)

    Properties:
        stdout: Decoded, trimmed stdout
        stderr: Decoded, trimmed stderr
    """

    stdout_bytes: bytes
    stderr_bytes: bytes
    returncode: int
    command: list[str] = field(default_factory=list)

    @cached_property
    def stdout(self) -> str:
        """Decode stdout as UTF-8 (lazy, cached)."""
        return self.stdout_bytes.decode("utf-8", errors="replace").strip()

    @cached_property
    def stderr(self) -> str:
        """Decode stderr as UTF-8 (lazy, cached)."""
        return self.stderr_bytes.decode("utf-8", errors="replace").strip()

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class TmuxSession:
    name: str
    windows: int
    attached: bool
    sandbox_id: str | None = None


@dataclass(frozen=True)
class SandboxMetrics:
    """Point-in-time resource metrics for a sandbox.

    Only uptime is measured; usage fields read 0 without a metrics server.
    """

    uptime_seconds: float = 0.0
    cpu_usage_percent: float = 0.0
    memory_usage_mb: float = 0.0
    memory_limit_mb: float = 0.0
    disk_usage_mb: float = 0.0
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0


@dataclass(frozen=True)
class HealthCheckResult:
    """Structured cluster health. Unreachability is reported, never raised."""

    healthy: bool
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"healthy": self.healthy, "message": self.message, "details": self.details}


@dataclass(frozen=True)
class SandboxPodInfo:
    """A sandbox pod as seen in the cluster, independent of any provider registry."""

    pod_name: str
    phase: str | None = None
    sandbox_id: str | None = None
    project_id: str | None = None
    warm_pool_state: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pod_name": self.pod_name,
            "phase": self.phase,
            "sandbox_id": self.sandbox_id,
            "project_id": self.project_id,
            "warm_pool_state": self.warm_pool_state,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
