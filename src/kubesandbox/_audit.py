# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Append-only audit trail for security-relevant events.

Events go to an in-memory record and to a sink. The default sink writes
``[K8S_AUDIT] <json>`` lines to the ``kubesandbox.audit`` logger. Audit
calls never raise: sink failures are logged and dropped.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from kubesandbox._types import PssValidationResult

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("kubesandbox.audit")

DEFAULT_MAX_AUDIT_EVENTS = 10_000


class AuditEventType(StrEnum):
    POD_CREATED = "pod.created"
    POD_DELETED = "pod.deleted"
    POD_CREATION_FAILED = "pod.creation_failed"
    POD_DELETION_FAILED = "pod.deletion_failed"
    NETWORK_POLICY_CREATED = "network_policy.created"
    NETWORK_POLICY_UPDATED = "network_policy.updated"
    NETWORK_POLICY_DELETED = "network_policy.deleted"
    NETWORK_POLICY_FAILED = "network_policy.failed"
    RBAC_CREATED = "rbac.created"
    RBAC_FAILED = "rbac.failed"
    CONFIG_LOADED = "config.loaded"
    EXEC_COMMAND = "security.exec_command"
    EXEC_AS_ROOT_ATTEMPTED = "security.exec_as_root_attempted"
    PSS_VALIDATION_PASSED = "security.pss_validation_passed"
    PSS_VALIDATION_FAILED = "security.pss_validation_failed"
    NAMESPACE_CREATED = "namespace.created"
    WARM_POOL_POD_CREATED = "warm_pool.pod_created"
    WARM_POOL_POD_ADOPTED = "warm_pool.pod_adopted"
    WARM_POOL_POD_DISCARDED = "warm_pool.pod_discarded"
    WARM_POOL_POD_DRAINED = "warm_pool.pod_drained"
    WARM_POOL_ALLOCATED = "warm_pool.allocated"
    WARM_POOL_EXHAUSTED = "warm_pool.exhausted"


class AuditSeverity(StrEnum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


_LOG_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARN: logging.WARNING,
    AuditSeverity.ERROR: logging.ERROR,
    AuditSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class AuditEvent:
    """A single write-once audit record."""

    type: AuditEventType
    severity: AuditSeverity
    pod_name: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    detail: dict[str, Any] = field(default_factory=dict)
    component: str = "kubesandbox"
    namespace: str | None = None
    sandbox_id: str | None = None
    project_id: str | None = None
    error: str | None = None
    duration_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        data["timestamp"] = self.timestamp.isoformat()
        return {k: v for k, v in data.items() if v is not None and v != {}}


def _log_to_logger(event: AuditEvent) -> None:
    audit_logger.log(
        _LOG_LEVELS[event.severity],
        "[K8S_AUDIT] %s",
        json.dumps(event.to_dict(), default=str, sort_keys=True),
    )


class AuditLogger:
    """Append-only sink for security-relevant events.

    Args:
        enabled: When False, events are neither recorded nor emitted
        sink: Called with each event; defaults to the ``kubesandbox.audit`` logger
        max_events: Bound on the in-memory record (oldest dropped first)
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        sink: Callable[[AuditEvent], None] | None = None,
        max_events: int = DEFAULT_MAX_AUDIT_EVENTS,
    ) -> None:
        self.enabled = enabled
        self._sink = sink or _log_to_logger
        self._events: deque[AuditEvent] = deque(maxlen=max_events)

    @property
    def events(self) -> tuple[AuditEvent, ...]:
        return tuple(self._events)

    def log(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity = AuditSeverity.INFO,
        **fields: Any,
    ) -> AuditEvent | None:
        if not self.enabled:
            return None
        event = AuditEvent(type=event_type, severity=severity, **fields)
        self._events.append(event)
        try:
            self._sink(event)
        except Exception:
            logger.warning("Audit sink failed for %s event", event_type.value, exc_info=True)
        return event

    def log_pss_validation(
        self,
        result: PssValidationResult,
        *,
        pod_name: str | None = None,
        namespace: str | None = None,
    ) -> AuditEvent | None:
        if result.valid:
            return self.log(
                AuditEventType.PSS_VALIDATION_PASSED,
                pod_name=pod_name,
                namespace=namespace,
                detail={"profile": result.profile.value, "warnings": list(result.warnings)},
            )
        return self.log(
            AuditEventType.PSS_VALIDATION_FAILED,
            AuditSeverity.ERROR,
            pod_name=pod_name,
            namespace=namespace,
            detail={
                "profile": result.profile.value,
                "violations": list(result.violations),
                "warnings": list(result.warnings),
            },
        )

    def log_exec(
        self,
        command: list[str],
        *,
        pod_name: str,
        namespace: str,
        sandbox_id: str | None = None,
        as_root_requested: bool = False,
    ) -> AuditEvent | None:
        if as_root_requested:
            return self.log(
                AuditEventType.EXEC_AS_ROOT_ATTEMPTED,
                AuditSeverity.WARN,
                pod_name=pod_name,
                namespace=namespace,
                sandbox_id=sandbox_id,
                detail={"command": command, "blocked": True, "ran_as_user": "sandbox"},
            )
        return self.log(
            AuditEventType.EXEC_COMMAND,
            pod_name=pod_name,
            namespace=namespace,
            sandbox_id=sandbox_id,
            detail={"command": command},
        )
