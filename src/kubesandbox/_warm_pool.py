# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Standby pool of pre-validated sandbox pods.

Per-pod states: ``provisioning -> available -> claimed`` (handed to a
sandbox) or ``-> draining -> removed`` (scale-down or failed health).

A background control loop reconciles the pool on a timer and whenever a
claim drains it. The controller owns provisioning, available and draining
pods; ``minSize <= owned <= maxSize`` is the steady-state invariant and
``owned`` never grows past ``maxSize``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from kubernetes.client.rest import ApiException

from kubesandbox._audit import AuditEventType, AuditSeverity
from kubesandbox._cluster import call_api, is_not_found, to_plain
from kubesandbox._defaults import (
    DEFAULT_POD_STARTUP_TIMEOUT_SECONDS,
    LABEL_MANAGED,
    LABEL_POOL_ID,
    LABEL_PROJECT_ID,
    LABEL_SANDBOX,
    LABEL_SANDBOX_ID,
    LABEL_WARM_POOL,
    LABEL_WARM_POOL_STATE,
    SandboxConfig,
    WarmPoolConfig,
)
from kubesandbox._pods import build_pod_manifest, classify_pod, label_value, make_warm_pod_name
from kubesandbox._security import PodSecurityValidator
from kubesandbox._types import PssProfile, WarmPodInfo, WarmPodState
from kubesandbox.exceptions import ClusterConnectionError, ErrorKind, WarmPoolError

if TYPE_CHECKING:
    from kubesandbox._audit import AuditLogger

logger = logging.getLogger(__name__)

# Allocation time samples kept for the moving average
ALLOCATION_SAMPLES: int = 100

# Utilization the autoscaler aims for when scaling up
_TARGET_UTILIZATION: float = 0.6


@dataclass(frozen=True)
class WarmPoolMetrics:
    available: int
    provisioning: int
    draining: int
    claimed: int
    total: int
    hits: int
    misses: int
    hit_rate: float
    average_allocation_ms: float
    target_size: int
    discarded: int


@dataclass(frozen=True)
class _UsageSample:
    timestamp: float
    warm: int
    claimed: int


class WarmPoolController:
    """Maintains a pool of ready, restricted-profile sandbox pods.

    Example:
        ```python
        pool = WarmPoolController(apis.core, "agentpane-sandboxes", WarmPoolConfig(min_size=2))
        await pool.start()
        info = await pool.claim(config, project_id="p1", sandbox_id=sandbox_id)
        if info is None:
            ...  # cold start
        await pool.stop()
        ```
    """

    def __init__(
        self,
        core: Any,
        namespace: str,
        config: WarmPoolConfig | None = None,
        *,
        audit: AuditLogger | None = None,
        validator: PodSecurityValidator | None = None,
        startup_timeout_seconds: float = DEFAULT_POD_STARTUP_TIMEOUT_SECONDS,
    ) -> None:
        self.config = config or WarmPoolConfig()
        self.config.validate()
        self._core = core
        self.namespace = namespace
        self._audit = audit
        self._validator = validator or PodSecurityValidator(audit)
        self._startup_timeout_seconds = startup_timeout_seconds

        self._pods: dict[str, WarmPodInfo] = {}
        self._claimed: dict[str, WarmPodInfo] = {}
        self._claim_lock = asyncio.Lock()
        self._tick_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

        self._hits = 0
        self._misses = 0
        self._discarded = 0
        self._allocation_ms: deque[float] = deque(maxlen=ALLOCATION_SAMPLES)
        self._usage: deque[_UsageSample] = deque()

    def __repr__(self) -> str:
        return (
            f"<WarmPoolController pool={self.config.pool_id!r} available={self.available_count} "
            f"total={self.total_count} running={self.running}>"
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def available_count(self) -> int:
        return self._count(WarmPodState.AVAILABLE)

    @property
    def total_count(self) -> int:
        """Pods owned by the pool (provisioning, available and draining)."""
        return len(self._pods)

    def _count(self, state: WarmPodState) -> int:
        return sum(1 for p in self._pods.values() if p.state is state)

    def list_pods(self) -> list[WarmPodInfo]:
        return [*self._pods.values(), *self._claimed.values()]

    def metrics(self) -> WarmPoolMetrics:
        attempts = self._hits + self._misses
        return WarmPoolMetrics(
            available=self.available_count,
            provisioning=self._count(WarmPodState.PROVISIONING),
            draining=self._count(WarmPodState.DRAINING),
            claimed=len(self._claimed),
            total=self.total_count,
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / attempts if attempts else 0.0,
            average_allocation_ms=(
                sum(self._allocation_ms) / len(self._allocation_ms) if self._allocation_ms else 0.0
            ),
            target_size=self.target_size(),
            discarded=self._discarded,
        )

    def target_size(self) -> int:
        """Desired number of warm pods, clamped to [min_size, max_size]."""
        cfg = self.config
        if not cfg.auto_scaling:
            return cfg.min_size
        self._trim_usage()
        if not self._usage:
            return cfg.min_size

        avg_claimed = sum(s.claimed for s in self._usage) / len(self._usage)
        avg_total = sum(s.warm + s.claimed for s in self._usage) / len(self._usage)
        if avg_total == 0:
            return cfg.min_size

        utilization = avg_claimed / avg_total
        if utilization > cfg.scale_up_threshold:
            target = math.ceil(avg_claimed / _TARGET_UTILIZATION)
        elif utilization < cfg.scale_down_threshold:
            target = math.ceil(avg_claimed * 1.5)
        else:
            target = math.ceil(avg_total)
        return max(cfg.min_size, min(cfg.max_size, target))

    def _record_usage(self) -> None:
        warm = self.available_count + self._count(WarmPodState.PROVISIONING)
        self._usage.append(_UsageSample(time.monotonic(), warm, len(self._claimed)))
        self._trim_usage()

    def _trim_usage(self) -> None:
        cutoff = time.monotonic() - self.config.usage_window_seconds
        while self._usage and self._usage[0].timestamp < cutoff:
            self._usage.popleft()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Adopt existing warm pods, reconcile once, then start the control loop.

        Raises:
            WarmPoolError: WARM_POOL_DISCOVERY_FAILED if existing pods cannot be listed
        """
        if self.running:
            return
        await self._discover()
        await self.reconcile()
        self._task = asyncio.create_task(self._run(), name=f"warm-pool-{self.config.pool_id}")
        logger.info(
            "Warm pool %s started (min=%d, max=%d)",
            self.config.pool_id,
            self.config.min_size,
            self.config.max_size,
        )

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the control loop and, by default, delete every unclaimed pod."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        if not drain:
            return
        async with self._tick_lock:
            pods = list(self._pods.values())
            for info in pods:
                info.state = WarmPodState.DRAINING
            results = await asyncio.gather(
                *[self._delete_pod(info.pod_name) for info in pods], return_exceptions=True
            )
            for info, result in zip(pods, results, strict=True):
                if isinstance(result, Exception):
                    logger.warning("Failed to delete warm pod %s: %s", info.pod_name, result)
                else:
                    self._pods.pop(info.pod_name, None)
        logger.info("Warm pool %s stopped", self.config.pool_id)

    async def _run(self) -> None:
        interval = self.config.replenish_interval_seconds
        while True:
            with contextlib.suppress(TimeoutError):
                async with asyncio.timeout(interval):
                    await self._wake.wait()
            self._wake.clear()
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Warm pool %s reconcile failed", self.config.pool_id)

    def _kick(self) -> None:
        """Ask the control loop for an early tick."""
        if self.running:
            self._wake.set()

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _selector(self) -> str:
        return f"{LABEL_WARM_POOL}=true,{LABEL_POOL_ID}={self.config.pool_id}"

    async def _list_cluster_pods(self) -> list[Any]:
        result = await call_api(
            self._core.list_namespaced_pod,
            namespace=self.namespace,
            label_selector=self._selector(),
        )
        return list(result.items or [])

    async def _discover(self) -> None:
        try:
            cluster_pods = await self._list_cluster_pods()
        except (ApiException, ClusterConnectionError) as e:
            raise WarmPoolError(
                f"Failed to discover existing warm pods in {self.namespace}: {e}",
                kind=ErrorKind.WARM_POOL_DISCOVERY_FAILED,
                context={"namespace": self.namespace, "pool_id": self.config.pool_id},
            ) from e

        for pod in cluster_pods:
            name = pod.metadata.name
            labels = pod.metadata.labels or {}
            if labels.get(LABEL_WARM_POOL_STATE) == WarmPodState.CLAIMED.value:
                continue
            if name in self._pods:
                continue
            created = pod.metadata.creation_timestamp or datetime.now(UTC)
            self._pods[name] = WarmPodInfo(
                pod_name=name,
                created_at=created,
                state=WarmPodState.PROVISIONING,
                image=self.config.image,
            )
            logger.info("Adopted existing warm pod %s", name)
            self._log(AuditEventType.WARM_POOL_POD_ADOPTED, name)

    async def reconcile(self) -> None:
        """Run one control-loop tick: refresh pod states, then scale."""
        async with self._tick_lock:
            await self._refresh()
            await self._scale()
            self._record_usage()

    async def _refresh(self) -> None:
        try:
            cluster_pods = {p.metadata.name: p for p in await self._list_cluster_pods()}
        except (ApiException, ClusterConnectionError) as e:
            logger.warning("Warm pool %s refresh failed: %s", self.config.pool_id, e)
            return

        now = datetime.now(UTC)
        for info in list(self._pods.values()):
            if self._pods.get(info.pod_name) is not info:
                continue
            pod = cluster_pods.get(info.pod_name)
            if pod is None:
                logger.info("Warm pod %s no longer exists", info.pod_name)
                self._pods.pop(info.pod_name, None)
                continue

            readiness = classify_pod(pod)
            if info.state is WarmPodState.PROVISIONING:
                if readiness.state == "ready":
                    await self._promote(info, pod)
                elif readiness.state in ("failed", "image_pull_failure"):
                    await self._discard(info, f"pod {readiness.state}: {readiness.reason}")
                elif (now - info.created_at).total_seconds() > self._startup_timeout_seconds:
                    await self._discard(info, "startup timeout")
            elif info.state is WarmPodState.AVAILABLE and readiness.state != "ready":
                info.state = WarmPodState.DRAINING
                logger.warning("Warm pod %s failed health check; draining", info.pod_name)
                await self._drain(info)
            elif info.state is WarmPodState.DRAINING:
                await self._drain(info)

    async def _promote(self, info: WarmPodInfo, pod: Any) -> None:
        """Mark a ready pod available once its live spec passes the restricted profile."""
        result = self._validator.validate(
            {"spec": to_plain(pod.spec)},
            PssProfile.RESTRICTED,
            pod_name=info.pod_name,
            namespace=self.namespace,
        )
        if not result.valid:
            reason = "failed restricted validation: " + "; ".join(result.violations)
            await self._discard(info, reason)
            return
        if self._pods.get(info.pod_name) is info and info.state is WarmPodState.PROVISIONING:
            info.state = WarmPodState.AVAILABLE
            info.available_at = datetime.now(UTC)
            logger.debug("Warm pod %s is available", info.pod_name)

    async def _discard(self, info: WarmPodInfo, reason: str) -> None:
        self._discarded += 1
        logger.warning("Discarding warm pod %s: %s", info.pod_name, reason)
        self._log(
            AuditEventType.WARM_POOL_POD_DISCARDED,
            info.pod_name,
            severity=AuditSeverity.WARN,
            error=reason,
        )
        info.state = WarmPodState.DRAINING
        await self._drain(info)

    async def _drain(self, info: WarmPodInfo) -> None:
        try:
            await self._delete_pod(info.pod_name)
        except (ApiException, ClusterConnectionError) as e:
            # Stays draining and counted; retried on the next tick
            logger.warning("Failed to delete warm pod %s: %s", info.pod_name, e)
            return
        self._pods.pop(info.pod_name, None)
        self._log(AuditEventType.WARM_POOL_POD_DRAINED, info.pod_name)

    async def _scale(self) -> None:
        cfg = self.config
        target = self.target_size()
        total = self.total_count
        warm = self.available_count + self._count(WarmPodState.PROVISIONING)

        if total > cfg.max_size:
            await self._drain_oldest(total - cfg.max_size)
        elif warm < target and total < cfg.max_size:
            to_create = min(target - warm, cfg.max_size - total)
            logger.debug("Warm pool %s provisioning %d pod(s)", cfg.pool_id, to_create)
            await asyncio.gather(*[self._provision_one() for _ in range(to_create)])
        elif cfg.auto_scaling and warm > target:
            await self._drain_oldest(warm - target)

    async def _drain_oldest(self, count: int) -> None:
        available = sorted(
            (p for p in self._pods.values() if p.state is WarmPodState.AVAILABLE),
            key=lambda p: p.created_at,
        )
        victims = available[:count]
        for info in victims:
            info.state = WarmPodState.DRAINING
        for info in victims:
            await self._drain(info)

    async def _provision_one(self) -> WarmPodInfo | None:
        cfg = self.config
        name = make_warm_pod_name(cfg.pool_id, uuid.uuid4().hex)
        manifest = build_pod_manifest(
            name=name,
            image=cfg.image,
            memory_mb=cfg.memory_mb,
            cpu_cores=cfg.cpu_cores,
            labels={
                LABEL_SANDBOX: "true",
                LABEL_MANAGED: "true",
                LABEL_WARM_POOL: "true",
                LABEL_WARM_POOL_STATE: "warm",
                LABEL_POOL_ID: cfg.pool_id,
            },
        )
        result = self._validator.validate(
            manifest, PssProfile.RESTRICTED, pod_name=name, namespace=self.namespace
        )
        if not result.valid:
            self._discarded += 1
            logger.error("Warm pod %s spec rejected: %s", name, "; ".join(result.violations))
            return None

        try:
            await call_api(
                self._core.create_namespaced_pod, namespace=self.namespace, body=manifest
            )
        except (ApiException, ClusterConnectionError) as e:
            logger.warning("Failed to create warm pod %s: %s", name, e)
            return None

        info = WarmPodInfo(pod_name=name, created_at=datetime.now(UTC), image=cfg.image)
        self._pods[name] = info
        self._log(AuditEventType.WARM_POOL_POD_CREATED, name)
        return info

    async def _delete_pod(self, name: str) -> None:
        try:
            await call_api(
                self._core.delete_namespaced_pod,
                name=name,
                namespace=self.namespace,
                grace_period_seconds=0,
            )
        except ApiException as e:
            if not is_not_found(e):
                raise

    # ------------------------------------------------------------------
    # Claim / release
    # ------------------------------------------------------------------

    async def claim(
        self,
        config: SandboxConfig | None = None,
        *,
        project_id: str,
        sandbox_id: str,
    ) -> WarmPodInfo | None:
        """Atomically hand one available pod to a sandbox.

        Returns None when the pool is empty or ``config`` cannot be served by
        a warm pod; the caller falls back to cold creation.
        """
        if config is not None and not self.config.matches(config):
            self._misses += 1
            logger.debug("Sandbox config for %s is ineligible for the warm pool", project_id)
            return None

        started = time.monotonic()
        async with self._claim_lock:
            candidates = sorted(
                (p for p in self._pods.values() if p.state is WarmPodState.AVAILABLE),
                key=lambda p: p.available_at or p.created_at,
            )
            if not candidates:
                self._misses += 1
                self._log(
                    AuditEventType.WARM_POOL_EXHAUSTED,
                    None,
                    severity=AuditSeverity.WARN,
                    project_id=project_id,
                )
                self._record_usage()
                self._kick()
                return None

            info = candidates[0]
            del self._pods[info.pod_name]
            info.state = WarmPodState.CLAIMED

            try:
                await call_api(
                    self._core.patch_namespaced_pod,
                    name=info.pod_name,
                    namespace=self.namespace,
                    body={
                        "metadata": {
                            "labels": {
                                LABEL_WARM_POOL_STATE: WarmPodState.CLAIMED.value,
                                LABEL_PROJECT_ID: label_value(project_id),
                                LABEL_SANDBOX_ID: sandbox_id,
                            }
                        }
                    },
                )
            except (ApiException, ClusterConnectionError) as e:
                self._misses += 1
                if not (isinstance(e, ApiException) and is_not_found(e)):
                    info.state = WarmPodState.AVAILABLE
                    self._pods[info.pod_name] = info
                logger.warning("Failed to claim warm pod %s: %s", info.pod_name, e)
                return None

            info.claimed_at = datetime.now(UTC)
            info.project_id = project_id
            self._claimed[info.pod_name] = info
            self._hits += 1
            elapsed_ms = (time.monotonic() - started) * 1000
            self._allocation_ms.append(elapsed_ms)
            self._record_usage()

        self._log(
            AuditEventType.WARM_POOL_ALLOCATED,
            info.pod_name,
            project_id=project_id,
            sandbox_id=sandbox_id,
            duration_ms=elapsed_ms,
        )
        self._kick()
        return info

    def forget(self, pod_name: str) -> WarmPodInfo | None:
        """Stop tracking a claimed pod without touching the cluster."""
        return self._claimed.pop(pod_name, None)

    async def release(self, pod_name: str, *, delete: bool = True) -> None:
        """Forget a claimed pod, deleting it unless the caller already has.

        Claimed pods are never returned to the pool.
        """
        info = self.forget(pod_name)
        if info is None or not delete:
            return
        try:
            await self._delete_pod(pod_name)
        except (ApiException, ClusterConnectionError) as e:
            logger.warning("Failed to delete released pod %s: %s", pod_name, e)

    def _log(
        self,
        event_type: AuditEventType,
        pod_name: str | None,
        *,
        severity: AuditSeverity = AuditSeverity.INFO,
        **fields: Any,
    ) -> None:
        if self._audit is not None:
            self._audit.log(
                event_type,
                severity,
                pod_name=pod_name,
                namespace=self.namespace,
                detail={"pool_id": self.config.pool_id},
                **fields,
            )
