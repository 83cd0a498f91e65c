# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Secured, per-project Kubernetes sandboxes for coding-agent workloads."""

from kubesandbox._audit import AuditEvent, AuditEventType, AuditLogger, AuditSeverity
from kubesandbox._defaults import (
    NetworkPolicyConfig,
    ProviderConfig,
    SandboxConfig,
    VolumeMount,
    WarmPoolConfig,
)
from kubesandbox._env import load_dotenv, provider_config_from_env
from kubesandbox._kubeconfig import ClusterConfigResolver, ResolvedClusterConfig
from kubesandbox._network_policy import NetworkPolicyManager
from kubesandbox._provider import SandboxProvider
from kubesandbox._rbac import RbacManager
from kubesandbox._sandbox import Sandbox
from kubesandbox._security import (
    PodSecurityValidator,
    ensure_restricted_pod_security,
    validate_pod_security,
)
from kubesandbox._tmux import TmuxManager
from kubesandbox._types import (
    ExecResult,
    HealthCheckResult,
    PssProfile,
    PssValidationResult,
    SandboxEvent,
    SandboxEventType,
    SandboxMetrics,
    SandboxPodInfo,
    SandboxStatus,
    TmuxSession,
    WarmPodInfo,
    WarmPodState,
)
from kubesandbox._warm_pool import WarmPoolController, WarmPoolMetrics
from kubesandbox.exceptions import (
    ClusterConnectionError,
    ErrorKind,
    ExecConnectionError,
    ExecError,
    ExecTimeoutError,
    ImageError,
    ImagePullError,
    KubeSandboxError,
    NamespaceError,
    NamespaceNotFoundError,
    NetworkPolicyError,
    PodAlreadyExistsError,
    PodDeletionError,
    PodError,
    PodNotFoundError,
    PodNotRunningError,
    PodSecurityViolationError,
    PodStartupTimeoutError,
    RbacError,
    ResourceError,
    TmuxError,
    WarmPoolError,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "AuditSeverity",
    "ClusterConfigResolver",
    "ClusterConnectionError",
    "ErrorKind",
    "ExecConnectionError",
    "ExecError",
    "ExecResult",
    "ExecTimeoutError",
    "HealthCheckResult",
    "ImageError",
    "ImagePullError",
    "KubeSandboxError",
    "NamespaceError",
    "NamespaceNotFoundError",
    "NetworkPolicyConfig",
    "NetworkPolicyError",
    "NetworkPolicyManager",
    "PodAlreadyExistsError",
    "PodDeletionError",
    "PodError",
    "PodNotFoundError",
    "PodNotRunningError",
    "PodSecurityValidator",
    "PodSecurityViolationError",
    "PodStartupTimeoutError",
    "ProviderConfig",
    "PssProfile",
    "PssValidationResult",
    "RbacError",
    "RbacManager",
    "ResolvedClusterConfig",
    "ResourceError",
    "Sandbox",
    "SandboxConfig",
    "SandboxEvent",
    "SandboxEventType",
    "SandboxMetrics",
    "SandboxPodInfo",
    "SandboxProvider",
    "SandboxStatus",
    "TmuxError",
    "TmuxManager",
    "TmuxSession",
    "VolumeMount",
    "WarmPodInfo",
    "WarmPodState",
    "WarmPoolConfig",
    "WarmPoolController",
    "WarmPoolError",
    "WarmPoolMetrics",
    "ensure_restricted_pod_security",
    "load_dotenv",
    "provider_config_from_env",
    "validate_pod_security",
]
