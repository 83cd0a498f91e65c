# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Exception hierarchy for sandbox orchestration.

Every exception carries a machine-readable ``kind`` and a ``context`` dict
with the structured details of the failure (resource names, namespace,
numeric limits).
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Machine-readable error kinds."""

    # Connectivity and credentials
    CLUSTER_UNREACHABLE = "CLUSTER_UNREACHABLE"
    KUBECONFIG_NOT_FOUND = "KUBECONFIG_NOT_FOUND"
    KUBECONFIG_INVALID = "KUBECONFIG_INVALID"
    CONTEXT_NOT_FOUND = "CONTEXT_NOT_FOUND"

    # Namespace
    NAMESPACE_NOT_FOUND = "NAMESPACE_NOT_FOUND"
    NAMESPACE_CREATION_FAILED = "NAMESPACE_CREATION_FAILED"
    NAMESPACE_ACCESS_DENIED = "NAMESPACE_ACCESS_DENIED"

    # Pod lifecycle
    POD_NOT_FOUND = "POD_NOT_FOUND"
    POD_CREATION_FAILED = "POD_CREATION_FAILED"
    POD_STARTUP_TIMEOUT = "POD_STARTUP_TIMEOUT"
    POD_DELETION_FAILED = "POD_DELETION_FAILED"
    POD_NOT_RUNNING = "POD_NOT_RUNNING"
    POD_ALREADY_EXISTS = "POD_ALREADY_EXISTS"

    # Exec
    EXEC_FAILED = "EXEC_FAILED"
    EXEC_TIMEOUT = "EXEC_TIMEOUT"
    EXEC_CONNECTION_FAILED = "EXEC_CONNECTION_FAILED"

    # Image
    IMAGE_PULL_FAILED = "IMAGE_PULL_FAILED"
    IMAGE_PULL_BACKOFF = "IMAGE_PULL_BACKOFF"
    IMAGE_NOT_FOUND = "IMAGE_NOT_FOUND"

    # Resources
    INSUFFICIENT_RESOURCES = "INSUFFICIENT_RESOURCES"

    # Security
    POD_SECURITY_VIOLATION = "POD_SECURITY_VIOLATION"
    NETWORK_POLICY_CREATION_FAILED = "NETWORK_POLICY_CREATION_FAILED"
    NETWORK_POLICY_UPDATE_FAILED = "NETWORK_POLICY_UPDATE_FAILED"
    NETWORK_POLICY_DELETION_FAILED = "NETWORK_POLICY_DELETION_FAILED"
    SERVICE_ACCOUNT_CREATION_FAILED = "SERVICE_ACCOUNT_CREATION_FAILED"
    ROLE_CREATION_FAILED = "ROLE_CREATION_FAILED"
    ROLE_BINDING_CREATION_FAILED = "ROLE_BINDING_CREATION_FAILED"
    LIMIT_RANGE_CREATION_FAILED = "LIMIT_RANGE_CREATION_FAILED"

    # Warm pool
    WARM_POOL_EMPTY = "WARM_POOL_EMPTY"
    WARM_POOL_EXHAUSTED = "WARM_POOL_EXHAUSTED"
    WARM_POOL_ALLOCATION_FAILED = "WARM_POOL_ALLOCATION_FAILED"
    WARM_POOL_NOT_ENABLED = "WARM_POOL_NOT_ENABLED"
    WARM_POOL_DISCOVERY_FAILED = "WARM_POOL_DISCOVERY_FAILED"
    WARM_POOL_CONFIG_INVALID = "WARM_POOL_CONFIG_INVALID"

    # tmux
    TMUX_SESSION_NOT_FOUND = "TMUX_SESSION_NOT_FOUND"
    TMUX_SESSION_ALREADY_EXISTS = "TMUX_SESSION_ALREADY_EXISTS"
    TMUX_CREATION_FAILED = "TMUX_CREATION_FAILED"

    API_ERROR = "API_ERROR"


class KubeSandboxError(Exception):
    """Base exception for all kubesandbox errors.

    Attributes:
        kind: Machine-readable error kind
        context: Structured details about the failure
    """

    default_kind: ErrorKind = ErrorKind.API_ERROR

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.context: dict[str, Any] = dict(context or {})

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs and JSON output."""
        return {"kind": self.kind.value, "message": self.message, "context": self.context}


class ClusterConnectionError(KubeSandboxError):
    """Raised when the cluster cannot be reached or credentials cannot be loaded.

    These are fatal and never retried internally.
    """

    default_kind = ErrorKind.CLUSTER_UNREACHABLE


class NamespaceError(KubeSandboxError):
    """Raised when the sandbox namespace cannot be used."""

    default_kind = ErrorKind.NAMESPACE_CREATION_FAILED


class NamespaceNotFoundError(NamespaceError):
    """Raised when the namespace is absent and may not be created."""

    default_kind = ErrorKind.NAMESPACE_NOT_FOUND


class PodError(KubeSandboxError):
    """Raised when a pod lifecycle operation fails."""

    default_kind = ErrorKind.POD_CREATION_FAILED


class PodNotFoundError(PodError):
    default_kind = ErrorKind.POD_NOT_FOUND


class PodAlreadyExistsError(PodError):
    """Raised when a project already has a non-terminal sandbox.

    This is a conflict, not a retryable error.
    """

    default_kind = ErrorKind.POD_ALREADY_EXISTS


class PodStartupTimeoutError(PodError):
    default_kind = ErrorKind.POD_STARTUP_TIMEOUT


class PodNotRunningError(PodError):
    default_kind = ErrorKind.POD_NOT_RUNNING


class PodDeletionError(PodError):
    default_kind = ErrorKind.POD_DELETION_FAILED


class ExecError(KubeSandboxError):
    """Raised when a command cannot be executed.

    A command that runs and exits non-zero is not an error; its exit code is
    reported on the ExecResult.
    """

    default_kind = ErrorKind.EXEC_FAILED


class ExecTimeoutError(ExecError):
    """Raised when an exec channel opened but the command did not complete in time."""

    default_kind = ErrorKind.EXEC_TIMEOUT


class ExecConnectionError(ExecError):
    """Raised when the exec channel could not be opened."""

    default_kind = ErrorKind.EXEC_CONNECTION_FAILED


class ImageError(KubeSandboxError):
    default_kind = ErrorKind.IMAGE_PULL_FAILED


class ImagePullError(ImageError):
    """Raised as soon as a container reports an image pull back-off."""

    default_kind = ErrorKind.IMAGE_PULL_BACKOFF


class ResourceError(KubeSandboxError):
    default_kind = ErrorKind.INSUFFICIENT_RESOURCES


class PodSecurityViolationError(KubeSandboxError):
    """Raised when a pod spec fails Pod Security Standards validation.

    Access the failed rules via violations
    """

    default_kind = ErrorKind.POD_SECURITY_VIOLATION

    def __init__(
        self,
        message: str,
        *,
        violations: list[str] | None = None,
        kind: ErrorKind | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, kind=kind, context=context)
        self.violations = list(violations or [])
        self.context.setdefault("violations", self.violations)


class NetworkPolicyError(KubeSandboxError):
    default_kind = ErrorKind.NETWORK_POLICY_CREATION_FAILED


class RbacError(KubeSandboxError):
    default_kind = ErrorKind.ROLE_CREATION_FAILED


class WarmPoolError(KubeSandboxError):
    default_kind = ErrorKind.WARM_POOL_ALLOCATION_FAILED


class TmuxError(KubeSandboxError):
    default_kind = ErrorKind.TMUX_CREATION_FAILED
