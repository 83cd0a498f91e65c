# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Pod manifests, status classification and the readiness poll."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from kubernetes.client.rest import ApiException

from kubesandbox import _defaults
from kubesandbox._cluster import call_api, is_not_found
from kubesandbox._defaults import (
    CONTAINER_NAME,
    SANDBOX_USER_ID,
    WORKSPACE_PATH,
    VolumeMount,
)
from kubesandbox._security import ensure_restricted_pod_security
from kubesandbox.exceptions import (
    ClusterConnectionError,
    ErrorKind,
    ImagePullError,
    PodNotFoundError,
    PodNotRunningError,
    PodStartupTimeoutError,
)

logger = logging.getLogger(__name__)

IMAGE_PULL_FAILURE_REASONS = frozenset(
    {"ImagePullBackOff", "ErrImagePull", "InvalidImageName", "ErrImageNeverPull"}
)

MIN_REQUEST_TIMEOUT_SECONDS = 0.1

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9-]")
_INVALID_LABEL_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _sanitize(value: str) -> str:
    return _INVALID_NAME_CHARS.sub("-", value.lower())


def label_value(value: str) -> str:
    """Coerce an identifier into a valid label value (63 chars, alnum at both ends)."""
    return _INVALID_LABEL_CHARS.sub("-", value)[:63].strip("-_.")


def make_pod_name(project_id: str, sandbox_id: str) -> str:
    """``agentpane-{project[:20]}-{id[:8]}``, restricted to ``[a-z0-9-]``."""
    return _sanitize(f"agentpane-{project_id[:20]}-{sandbox_id[:8]}")


def make_warm_pod_name(pool_id: str, suffix: str) -> str:
    return _sanitize(f"agentpane-warm-{pool_id}-{suffix[:8]}")


def cpu_quantity(cores: float) -> str:
    return f"{int(round(cores * 1000))}m"


def build_pod_manifest(
    *,
    name: str,
    image: str,
    memory_mb: int,
    cpu_cores: float,
    labels: dict[str, str],
    env: dict[str, str] | None = None,
    volume_mounts: tuple[VolumeMount, ...] = (),
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build a sandbox Pod manifest hardened for the restricted profile.

    Limits come from ``memory_mb``/``cpu_cores``; requests are half of the
    limits. Each volume mount becomes a ``volume-{i}`` hostPath volume.
    """
    limits = {"memory": f"{memory_mb}Mi", "cpu": cpu_quantity(cpu_cores)}
    requests = {"memory": f"{max(memory_mb // 2, 1)}Mi", "cpu": cpu_quantity(cpu_cores / 2)}

    mounts: list[dict[str, Any]] = [{"name": "workspace", "mountPath": WORKSPACE_PATH}]
    volumes: list[dict[str, Any]] = [{"name": "workspace", "emptyDir": {}}]
    for i, mount in enumerate(volume_mounts):
        mounts.append(
            {"name": f"volume-{i}", "mountPath": mount.container_path, "readOnly": mount.read_only}
        )
        volumes.append({"name": f"volume-{i}", "hostPath": {"path": mount.host_path}})

    manifest: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "labels": dict(labels), "annotations": dict(annotations or {})},
        "spec": {
            "restartPolicy": "Never",
            "automountServiceAccountToken": False,
            "securityContext": {
                "runAsNonRoot": True,
                "runAsUser": SANDBOX_USER_ID,
                "runAsGroup": SANDBOX_USER_ID,
                "fsGroup": SANDBOX_USER_ID,
                "seccompProfile": {"type": "RuntimeDefault"},
            },
            "containers": [
                {
                    "name": CONTAINER_NAME,
                    "image": image,
                    "workingDir": WORKSPACE_PATH,
                    "command": ["tail", "-f", "/dev/null"],
                    "resources": {"limits": limits, "requests": requests},
                    "env": [{"name": k, "value": v} for k, v in sorted((env or {}).items())],
                    "volumeMounts": mounts,
                    "securityContext": {
                        "allowPrivilegeEscalation": False,
                        "capabilities": {"drop": ["ALL"]},
                    },
                }
            ],
            "volumes": volumes,
        },
    }
    return ensure_restricted_pod_security(manifest)


@dataclass(frozen=True)
class PodReadiness:
    """Classification of a pod's observed status."""

    state: Literal["ready", "pending", "failed", "image_pull_failure"]
    phase: str | None = None
    reason: str | None = None
    message: str | None = None
    image: str | None = None


def classify_pod(pod: Any) -> PodReadiness:
    """Classify a V1Pod for the readiness poll.

    An image pull failure on any container wins over the phase, so callers
    fail fast instead of waiting out their timeout.
    """
    status = getattr(pod, "status", None)
    phase = getattr(status, "phase", None)
    container_statuses = list(getattr(status, "container_statuses", None) or [])
    init_statuses = list(getattr(status, "init_container_statuses", None) or [])

    for cs in init_statuses + container_statuses:
        waiting = getattr(getattr(cs, "state", None), "waiting", None)
        if waiting is not None and waiting.reason in IMAGE_PULL_FAILURE_REASONS:
            return PodReadiness(
                "image_pull_failure",
                phase=phase,
                reason=waiting.reason,
                message=waiting.message,
                image=getattr(cs, "image", None),
            )

    if phase in ("Failed", "Succeeded"):
        return PodReadiness(
            "failed",
            phase=phase,
            reason=getattr(status, "reason", None),
            message=getattr(status, "message", None),
        )
    if phase == "Running" and container_statuses and all(cs.ready for cs in container_statuses):
        return PodReadiness("ready", phase=phase)
    return PodReadiness("pending", phase=phase)


def container_started_at(pod: Any) -> datetime | None:
    status = getattr(pod, "status", None)
    for cs in getattr(status, "container_statuses", None) or []:
        running = getattr(getattr(cs, "state", None), "running", None)
        if cs.name == CONTAINER_NAME and running is not None:
            return running.started_at
    return None


async def wait_for_pod_running(
    core: Any,
    name: str,
    namespace: str,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float | None = None,
) -> Any:
    """Poll a pod on a fixed interval until it is running with all containers ready.

    Transient API errors are retried inside the timeout budget only.

    Returns:
        The ready V1Pod

    Raises:
        ImagePullError: As soon as a container reports an image pull failure
        PodNotRunningError: If the pod reaches Failed or Succeeded
        PodNotFoundError: If the pod disappears while polling
        PodStartupTimeoutError: If the deadline passes first
    """
    interval = (
        poll_interval_seconds
        if poll_interval_seconds is not None
        else _defaults.DEFAULT_POLL_INTERVAL_SECONDS
    )
    deadline = time.monotonic() + timeout_seconds
    last_error: str | None = None
    context = {"pod_name": name, "namespace": namespace}

    while True:
        pod = None
        try:
            # Each read is bounded by what is left of the deadline
            pod = await call_api(
                core.read_namespaced_pod,
                name=name,
                namespace=namespace,
                _request_timeout=max(deadline - time.monotonic(), MIN_REQUEST_TIMEOUT_SECONDS),
            )
        except ApiException as e:
            if is_not_found(e):
                raise PodNotFoundError(
                    f"Pod {name} disappeared while waiting for startup", context=context
                ) from e
            last_error = f"{e.status}: {e.reason}"
            logger.debug("Transient error polling pod %s: %s", name, last_error)
        except ClusterConnectionError as e:
            last_error = str(e)
            logger.debug("Cluster unreachable while polling pod %s: %s", name, e)

        if pod is not None:
            readiness = classify_pod(pod)
            logger.debug("Pod %s readiness: %s (phase %s)", name, readiness.state, readiness.phase)
            if readiness.state == "ready":
                return pod
            if readiness.state == "image_pull_failure":
                raise ImagePullError(
                    f"Image pull failed for pod {name}: {readiness.reason}"
                    + (f" ({readiness.message})" if readiness.message else ""),
                    kind=ErrorKind.IMAGE_PULL_BACKOFF,
                    context={**context, "image": readiness.image, "reason": readiness.reason},
                )
            if readiness.state == "failed":
                raise PodNotRunningError(
                    f"Pod {name} is not running (phase {readiness.phase})",
                    context={**context, "phase": readiness.phase, "reason": readiness.reason},
                )

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PodStartupTimeoutError(
                f"Pod {name} did not become ready within {timeout_seconds}s",
                context={**context, "timeout_seconds": timeout_seconds, "last_error": last_error},
            )
        await asyncio.sleep(min(interval, remaining))
