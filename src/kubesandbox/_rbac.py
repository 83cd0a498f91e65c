# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Least-privilege, namespace-scoped RBAC and resource limits.

Only namespaced objects are created. No ClusterRole or ClusterRoleBinding
is ever requested.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from kubernetes.client.rest import ApiException

from kubesandbox._audit import AuditEventType, AuditSeverity
from kubesandbox._cluster import _translate_api_error, call_api, is_conflict
from kubesandbox._defaults import DEFAULT_CPU_CORES, DEFAULT_MEMORY_MB, LABEL_MANAGED
from kubesandbox._pods import cpu_quantity
from kubesandbox.exceptions import ErrorKind, RbacError

if TYPE_CHECKING:
    from kubesandbox._audit import AuditLogger
    from kubesandbox._cluster import ClusterApis

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_NAME = "agentpane-sandbox-controller"
ROLE_NAME = "sandbox-manager"
ROLE_BINDING_NAME = "agentpane-sandbox-controller-binding"
LIMIT_RANGE_NAME = "sandbox-limits"

DEFAULT_MAX_MEMORY_MB: int = 16384
DEFAULT_MAX_CPU_CORES: float = 8.0

# Pods and the exec subresource only
ROLE_RULES: list[dict[str, Any]] = [
    {
        "apiGroups": [""],
        "resources": ["pods"],
        "verbs": ["get", "list", "watch", "create", "delete", "patch"],
    },
    {"apiGroups": [""], "resources": ["pods/exec"], "verbs": ["create", "get"]},
]

RbacAction = Literal["created", "updated", "exists"]


def _metadata(name: str) -> dict[str, Any]:
    return {"name": name, "labels": {LABEL_MANAGED: "true"}}


@dataclass(frozen=True)
class _RbacResource:
    """One namespaced object and the API calls that manage it."""

    label: str
    name: str
    kind: ErrorKind
    body: dict[str, Any]
    create: Callable[..., Any]
    replace: Callable[..., Any] | None


class RbacManager:
    """Provisions the ServiceAccount, Role, RoleBinding and LimitRange for a namespace.

    Args:
        apis: Cluster API bundle (core and rbac groups are used)
        max_memory_mb: Per-container memory ceiling enforced by the LimitRange
        max_cpu_cores: Per-container CPU ceiling enforced by the LimitRange
        audit: Optional audit logger
    """

    def __init__(
        self,
        apis: ClusterApis,
        *,
        max_memory_mb: int = DEFAULT_MAX_MEMORY_MB,
        max_cpu_cores: float = DEFAULT_MAX_CPU_CORES,
        audit: AuditLogger | None = None,
    ) -> None:
        self._core = apis.core
        self._rbac = apis.rbac
        self.max_memory_mb = max_memory_mb
        self.max_cpu_cores = max_cpu_cores
        self._audit = audit

    def build_resources(self, namespace: str) -> list[_RbacResource]:
        service_account = {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": _metadata(SERVICE_ACCOUNT_NAME),
            "automountServiceAccountToken": False,
        }
        role = {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "Role",
            "metadata": _metadata(ROLE_NAME),
            "rules": ROLE_RULES,
        }
        role_binding = {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "RoleBinding",
            "metadata": _metadata(ROLE_BINDING_NAME),
            "subjects": [
                {"kind": "ServiceAccount", "name": SERVICE_ACCOUNT_NAME, "namespace": namespace}
            ],
            "roleRef": {
                "apiGroup": "rbac.authorization.k8s.io",
                "kind": "Role",
                "name": ROLE_NAME,
            },
        }
        limit_range = {
            "apiVersion": "v1",
            "kind": "LimitRange",
            "metadata": _metadata(LIMIT_RANGE_NAME),
            "spec": {
                "limits": [
                    {
                        "type": "Container",
                        "default": {
                            "memory": f"{DEFAULT_MEMORY_MB}Mi",
                            "cpu": cpu_quantity(DEFAULT_CPU_CORES),
                        },
                        "defaultRequest": {
                            "memory": f"{DEFAULT_MEMORY_MB // 2}Mi",
                            "cpu": cpu_quantity(DEFAULT_CPU_CORES / 2),
                        },
                        "max": {
                            "memory": f"{self.max_memory_mb}Mi",
                            "cpu": cpu_quantity(self.max_cpu_cores),
                        },
                    }
                ]
            },
        }
        return [
            _RbacResource(
                "ServiceAccount",
                SERVICE_ACCOUNT_NAME,
                ErrorKind.SERVICE_ACCOUNT_CREATION_FAILED,
                service_account,
                self._core.create_namespaced_service_account,
                None,
            ),
            _RbacResource(
                "Role",
                ROLE_NAME,
                ErrorKind.ROLE_CREATION_FAILED,
                role,
                self._rbac.create_namespaced_role,
                self._rbac.replace_namespaced_role,
            ),
            _RbacResource(
                "RoleBinding",
                ROLE_BINDING_NAME,
                ErrorKind.ROLE_BINDING_CREATION_FAILED,
                role_binding,
                self._rbac.create_namespaced_role_binding,
                self._rbac.replace_namespaced_role_binding,
            ),
            _RbacResource(
                "LimitRange",
                LIMIT_RANGE_NAME,
                ErrorKind.LIMIT_RANGE_CREATION_FAILED,
                limit_range,
                self._core.create_namespaced_limit_range,
                self._core.replace_namespaced_limit_range,
            ),
        ]

    async def ensure(self, namespace: str) -> dict[str, RbacAction]:
        """Create or converge every RBAC object in ``namespace``.

        Returns:
            Resource kind to the action taken

        Raises:
            RbacError: With the failing resource name in context
        """
        actions: dict[str, RbacAction] = {}
        for resource in self.build_resources(namespace):
            actions[resource.label] = await self._ensure_one(namespace, resource)
        return actions

    async def _ensure_one(self, namespace: str, resource: _RbacResource) -> RbacAction:
        try:
            await call_api(resource.create, namespace=namespace, body=resource.body)
        except ApiException as e:
            if not is_conflict(e):
                raise self._error(e, namespace, resource) from e
        else:
            logger.info("Created %s %s in %s", resource.label, resource.name, namespace)
            self._log(AuditEventType.RBAC_CREATED, namespace, resource)
            return "created"

        if resource.replace is None:
            return "exists"
        try:
            await call_api(
                resource.replace, name=resource.name, namespace=namespace, body=resource.body
            )
        except ApiException as e:
            raise self._error(e, namespace, resource) from e
        logger.debug("Converged %s %s in %s", resource.label, resource.name, namespace)
        return "updated"

    def _error(self, e: ApiException, namespace: str, resource: _RbacResource) -> RbacError:
        self._log(
            AuditEventType.RBAC_FAILED,
            namespace,
            resource,
            severity=AuditSeverity.ERROR,
            error=str(e),
        )
        err = _translate_api_error(
            e,
            error_cls=RbacError,
            kind=resource.kind,
            operation=f"Create {resource.label} {resource.name}",
            resource_kind=resource.label,
            resource_name=resource.name,
        )
        err.context["namespace"] = namespace
        return err  # type: ignore[return-value]

    def _log(
        self,
        event_type: AuditEventType,
        namespace: str,
        resource: _RbacResource,
        *,
        severity: AuditSeverity = AuditSeverity.INFO,
        error: str | None = None,
    ) -> None:
        if self._audit is not None:
            self._audit.log(
                event_type,
                severity,
                namespace=namespace,
                error=error,
                detail={"resource_kind": resource.label, "resource_name": resource.name},
            )
