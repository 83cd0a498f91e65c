# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from kubesandbox.exceptions import ErrorKind, WarmPoolError

DEFAULT_NAMESPACE: str = "agentpane-sandboxes"
DEFAULT_CREATE_NAMESPACE: bool = True
DEFAULT_POD_STARTUP_TIMEOUT_SECONDS: float = 120.0
DEFAULT_EXEC_TIMEOUT_SECONDS: float = 60.0
DEFAULT_STOP_GRACE_PERIOD_SECONDS: int = 10
DEFAULT_NETWORK_POLICY_ENABLED: bool = True
DEFAULT_RBAC_ENABLED: bool = True
DEFAULT_AUDIT_LOGGING_ENABLED: bool = True

# Pod readiness is polled on a fixed interval
DEFAULT_POLL_INTERVAL_SECONDS: float = 1.0

# Exec websocket is drained in bounded steps so timeouts and cancellation are observed
DEFAULT_EXEC_READ_STEP_SECONDS: float = 1.0

# Upper bound on opening the exec websocket, never longer than the exec timeout
DEFAULT_EXEC_CONNECT_TIMEOUT_SECONDS: float = 10.0

DEFAULT_CONTAINER_IMAGE: str = "ghcr.io/agentpane/agent-sandbox:latest"
DEFAULT_MEMORY_MB: int = 4096
DEFAULT_CPU_CORES: float = 2.0
DEFAULT_IDLE_TIMEOUT_MINUTES: int = 30

DEFAULT_WARM_POOL_ENABLED: bool = False
DEFAULT_WARM_POOL_MIN_SIZE: int = 2
DEFAULT_WARM_POOL_MAX_SIZE: int = 10
DEFAULT_WARM_POOL_AUTO_SCALING: bool = True
DEFAULT_WARM_POOL_REPLENISH_INTERVAL_SECONDS: float = 30.0
DEFAULT_WARM_POOL_SCALE_UP_THRESHOLD: float = 0.8
DEFAULT_WARM_POOL_SCALE_DOWN_THRESHOLD: float = 0.2
DEFAULT_WARM_POOL_USAGE_WINDOW_SECONDS: float = 300.0
DEFAULT_WARM_POOL_ID: str = "default"

DEFAULT_TMUX_CAPTURE_LINES: int = 100

CONTAINER_NAME: str = "sandbox"
WORKSPACE_PATH: str = "/workspace"
SANDBOX_USER_ID: int = 1000

# Pod labels used for identification and filtering
LABEL_SANDBOX: str = "agentpane.io/sandbox"
LABEL_SANDBOX_ID: str = "agentpane.io/sandbox-id"
LABEL_PROJECT_ID: str = "agentpane.io/project-id"
LABEL_MANAGED: str = "agentpane.io/managed"
LABEL_WARM_POOL: str = "agentpane.io/warm-pool"
LABEL_WARM_POOL_STATE: str = "agentpane.io/warm-pool-state"
LABEL_POOL_ID: str = "agentpane.io/pool-id"

ANNOTATION_PROJECT_ID: str = "agentpane.io/project-id"
ANNOTATION_CREATED_AT: str = "agentpane.io/created-at"


@dataclass(frozen=True)
class VolumeMount:
    """Host directory mounted into the sandbox container."""

    host_path: str
    container_path: str
    read_only: bool = False


@dataclass(frozen=True)
class SandboxConfig:
    """Immutable request descriptor for a project's sandbox.

    Created by the caller and never mutated. Use ``with_overrides`` to derive
    a variant.

    Example:
        ```python
        config = SandboxConfig(
            project_id="proj-42",
            image="python:3.12",
            memory_mb=2048,
            cpu_cores=1,
            volume_mounts=(VolumeMount("/srv/repos/proj-42", "/workspace/repo"),),
            env={"LOG_LEVEL": "info"},
        )
        ```
    """

    project_id: str
    image: str = DEFAULT_CONTAINER_IMAGE
    memory_mb: int = DEFAULT_MEMORY_MB
    cpu_cores: float = DEFAULT_CPU_CORES
    idle_timeout_minutes: int = DEFAULT_IDLE_TIMEOUT_MINUTES
    volume_mounts: tuple[VolumeMount, ...] = field(default_factory=tuple)
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.project_id:
            raise ValueError("project_id cannot be empty")
        if self.memory_mb <= 0:
            raise ValueError(f"memory_mb must be positive, got {self.memory_mb}")
        if self.cpu_cores <= 0:
            raise ValueError(f"cpu_cores must be positive, got {self.cpu_cores}")

    def with_overrides(self, **kwargs: Any) -> SandboxConfig:
        """Create a new config with some values overridden."""
        return replace(self, **kwargs)


@dataclass(frozen=True)
class NetworkPolicyConfig:
    """Egress allow-list applied to every sandbox namespace.

    Ingress is always denied. ``allowed_egress_hosts`` accepts IPv4
    addresses and CIDR blocks only; hostnames cannot be expressed in a
    NetworkPolicy and are ignored.
    """

    allow_dns: bool = True
    allow_https: bool = False
    allow_http: bool = False
    allow_ssh: bool = False
    allowed_egress_hosts: tuple[str, ...] = field(default_factory=tuple)

    def with_overrides(self, **kwargs: Any) -> NetworkPolicyConfig:
        """Create a new config with some values overridden."""
        return replace(self, **kwargs)


@dataclass(frozen=True)
class WarmPoolConfig:
    """Sizing and scaling parameters for the warm pool.

    Warm pods are created from ``image``/``memory_mb``/``cpu_cores``; only
    sandbox requests with the same values are served from the pool.
    """

    min_size: int = DEFAULT_WARM_POOL_MIN_SIZE
    max_size: int = DEFAULT_WARM_POOL_MAX_SIZE
    auto_scaling: bool = DEFAULT_WARM_POOL_AUTO_SCALING
    replenish_interval_seconds: float = DEFAULT_WARM_POOL_REPLENISH_INTERVAL_SECONDS
    scale_up_threshold: float = DEFAULT_WARM_POOL_SCALE_UP_THRESHOLD
    scale_down_threshold: float = DEFAULT_WARM_POOL_SCALE_DOWN_THRESHOLD
    usage_window_seconds: float = DEFAULT_WARM_POOL_USAGE_WINDOW_SECONDS
    pool_id: str = DEFAULT_WARM_POOL_ID
    image: str = DEFAULT_CONTAINER_IMAGE
    memory_mb: int = DEFAULT_MEMORY_MB
    cpu_cores: float = DEFAULT_CPU_CORES

    def validate(self) -> None:
        """Raise WarmPoolError if the sizing or thresholds are inconsistent."""
        problems: list[str] = []
        if self.min_size < 0:
            problems.append(f"min_size must be >= 0, got {self.min_size}")
        if self.max_size < 1:
            problems.append(f"max_size must be >= 1, got {self.max_size}")
        if self.min_size > self.max_size:
            problems.append(
                f"min_size ({self.min_size}) cannot exceed max_size ({self.max_size})"
            )
        if not 0 < self.scale_up_threshold <= 1:
            problems.append(
                f"scale_up_threshold must be in (0, 1], got {self.scale_up_threshold}"
            )
        if not 0 <= self.scale_down_threshold < 1:
            problems.append(
                f"scale_down_threshold must be in [0, 1), got {self.scale_down_threshold}"
            )
        if self.scale_down_threshold >= self.scale_up_threshold:
            problems.append(
                f"scale_down_threshold ({self.scale_down_threshold}) must be less than "
                f"scale_up_threshold ({self.scale_up_threshold})"
            )
        if problems:
            raise WarmPoolError(
                "Invalid warm pool config: " + "; ".join(problems),
                kind=ErrorKind.WARM_POOL_CONFIG_INVALID,
                context={"problems": problems},
            )

    def matches(self, config: SandboxConfig) -> bool:
        """Whether a warm pod built from this config can serve ``config``.

        Volumes and env cannot be added to a running pod, so requests that
        carry either are never served from the pool.
        """
        return (
            config.image == self.image
            and config.memory_mb == self.memory_mb
            and float(config.cpu_cores) == float(self.cpu_cores)
            and not config.volume_mounts
            and not config.env
        )

    def with_overrides(self, **kwargs: Any) -> WarmPoolConfig:
        """Create a new config with some values overridden."""
        return replace(self, **kwargs)


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable configuration for a SandboxProvider.

    All fields have documented defaults. Override only what you need.

    Cluster credentials are resolved from ``kubeconfig_path``/``context``
    when given, otherwise through the standard discovery tiers (see
    ClusterConfigResolver).

    Example:
        ```python
        config = ProviderConfig(
            namespace="team-sandboxes",
            create_namespace=False,
            network_policy=NetworkPolicyConfig(allowed_egress_hosts=("10.1.2.3",)),
            warm_pool_enabled=True,
            warm_pool=WarmPoolConfig(min_size=1, max_size=4),
        )
        ```
    """

    namespace: str = DEFAULT_NAMESPACE
    create_namespace: bool = DEFAULT_CREATE_NAMESPACE
    kubeconfig_path: str | None = None
    context: str | None = None
    pod_startup_timeout_seconds: float = DEFAULT_POD_STARTUP_TIMEOUT_SECONDS
    exec_timeout_seconds: float = DEFAULT_EXEC_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    stop_grace_period_seconds: int = DEFAULT_STOP_GRACE_PERIOD_SECONDS
    network_policy_enabled: bool = DEFAULT_NETWORK_POLICY_ENABLED
    network_policy: NetworkPolicyConfig = field(default_factory=NetworkPolicyConfig)
    rbac_enabled: bool = DEFAULT_RBAC_ENABLED
    audit_logging_enabled: bool = DEFAULT_AUDIT_LOGGING_ENABLED
    warm_pool_enabled: bool = DEFAULT_WARM_POOL_ENABLED
    warm_pool: WarmPoolConfig = field(default_factory=WarmPoolConfig)

    @property
    def allowed_egress_hosts(self) -> tuple[str, ...]:
        return self.network_policy.allowed_egress_hosts

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ProviderConfig:
        """Defaults overridden by ``KUBESANDBOX_*`` environment variables."""
        from kubesandbox._env import provider_config_from_env

        return provider_config_from_env(environ, base=cls())

    def with_overrides(self, **kwargs: Any) -> ProviderConfig:
        """Create new config with some values overridden."""
        return replace(self, **kwargs)
