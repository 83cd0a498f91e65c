# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Unit tests for kubesandbox._warm_pool module."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import pytest
from kubernetes.client.rest import ApiException

from kubesandbox._audit import AuditEventType, AuditLogger
from kubesandbox._defaults import SandboxConfig, WarmPoolConfig
from kubesandbox._pods import build_pod_manifest
from kubesandbox._types import WarmPodState
from kubesandbox._warm_pool import WarmPoolController, _UsageSample
from kubesandbox.exceptions import ErrorKind, WarmPoolError

NS = "agentpane-sandboxes"
IMAGE = "ghcr.io/agentpane/agent-sandbox:latest"

WARM_LABELS = {
    "agentpane.io/sandbox": "true",
    "agentpane.io/warm-pool": "true",
    "agentpane.io/pool-id": "default",
    "agentpane.io/warm-pool-state": "warm",
}


def make_pool(core: Any, audit: AuditLogger | None = None, **config: Any) -> WarmPoolController:
    config.setdefault("auto_scaling", False)
    return WarmPoolController(
        core, NS, WarmPoolConfig(**config), audit=audit, startup_timeout_seconds=5
    )


def add_warm_pod(core: Any, name: str, *, state: str = "ready", hardened: bool = True) -> None:
    """Put a pod carrying the pool's labels into the fake cluster."""
    spec = None
    if hardened:
        spec = build_pod_manifest(
            name=name, image=IMAGE, memory_mb=4096, cpu_cores=2.0, labels=WARM_LABELS
        )["spec"]
    core.add_pod(NS, name, labels=WARM_LABELS, state=state, spec=spec)


async def fill(pool: WarmPoolController) -> None:
    """Provision, then promote on the next tick."""
    await pool.reconcile()
    await pool.reconcile()


class TestWarmPoolConfigValidation:
    """Tests for configuration checks at construction."""

    def test_invalid_config_rejected(self, fake_core: Any) -> None:
        """Test an inconsistent config fails fast."""
        with pytest.raises(WarmPoolError) as exc_info:
            make_pool(fake_core, min_size=4, max_size=2)
        assert exc_info.value.kind is ErrorKind.WARM_POOL_CONFIG_INVALID


class TestReconcile:
    """Tests for the control loop tick."""

    @pytest.mark.asyncio
    async def test_converges_to_min(self, fake_core: Any) -> None:
        """Test the pool provisions min_size pods and promotes them when ready."""
        pool = make_pool(fake_core, min_size=2, max_size=4)
        await pool.reconcile()
        assert pool.total_count == 2
        assert pool.available_count == 0

        await pool.reconcile()
        assert pool.available_count == 2
        assert pool.total_count == 2
        assert len(fake_core.pods_in(NS, "agentpane.io/warm-pool=true")) == 2

    @pytest.mark.asyncio
    async def test_warm_pods_are_labelled(self, fake_core: Any) -> None:
        """Test provisioned pods carry the pool selector labels."""
        pool = make_pool(fake_core, min_size=1, max_size=1)
        await pool.reconcile()
        (pod,) = fake_core.pods_in(NS)
        labels = pod.metadata.labels
        assert labels["agentpane.io/warm-pool"] == "true"
        assert labels["agentpane.io/pool-id"] == "default"
        assert labels["agentpane.io/warm-pool-state"] == "warm"

    @pytest.mark.asyncio
    async def test_never_exceeds_max(self, fake_core: Any) -> None:
        """Test adopted surplus pods are drained down to max_size."""
        for i in range(5):
            add_warm_pod(fake_core, f"agentpane-warm-default-{i}")
        pool = make_pool(fake_core, min_size=1, max_size=3)
        await pool.start()
        try:
            assert pool.total_count <= 3
            assert len(fake_core.pods_in(NS)) == 3
            await pool.reconcile()
            assert pool.total_count <= 3
        finally:
            await pool.stop()

    @pytest.mark.asyncio
    async def test_unready_pods_not_promoted(self, fake_core: Any) -> None:
        """Test pending pods stay provisioning."""
        fake_core.startup_state = "pending"
        pool = make_pool(fake_core, min_size=2, max_size=2)
        await fill(pool)
        assert pool.available_count == 0
        assert pool.metrics().provisioning == 2

    @pytest.mark.asyncio
    async def test_failed_image_pull_discarded(self, fake_core: Any) -> None:
        """Test pods that cannot pull their image are discarded and deleted."""
        fake_core.startup_state = "image_pull_backoff"
        audit = AuditLogger(sink=lambda event: None)
        pool = make_pool(fake_core, audit, min_size=1, max_size=1)
        await pool.reconcile()
        (name,) = [p.pod_name for p in pool.list_pods()]
        fake_core.startup_state = "ready"
        await pool.reconcile()
        assert (NS, name) not in fake_core.pods
        assert pool.metrics().discarded == 1
        assert AuditEventType.WARM_POOL_POD_DISCARDED in [e.type for e in audit.events]

    @pytest.mark.asyncio
    async def test_vanished_pod_forgotten(self, fake_core: Any) -> None:
        """Test a pod deleted out of band is dropped and replaced."""
        pool = make_pool(fake_core, min_size=1, max_size=1)
        await fill(pool)
        (name,) = [p.pod_name for p in pool.list_pods()]
        fake_core.pods.pop((NS, name))
        await pool.reconcile()
        assert name not in [p.pod_name for p in pool.list_pods()]
        assert pool.total_count == 1

    @pytest.mark.asyncio
    async def test_unhealthy_available_pod_drained(self, fake_core: Any) -> None:
        """Test an available pod that stops being ready is drained."""
        pool = make_pool(fake_core, min_size=1, max_size=1)
        await fill(pool)
        (name,) = [p.pod_name for p in pool.list_pods()]
        fake_core.set_pod_state(NS, name, "failed")
        await pool.reconcile()
        assert (NS, name) not in fake_core.pods


class TestDiscovery:
    """Tests for adopting pods left by a previous process."""

    @pytest.mark.asyncio
    async def test_adopts_existing_pods(self, fake_core: Any) -> None:
        """Test labelled pods are adopted instead of duplicated."""
        add_warm_pod(fake_core, "agentpane-warm-default-a")
        add_warm_pod(fake_core, "agentpane-warm-default-b")
        audit = AuditLogger(sink=lambda event: None)
        pool = make_pool(fake_core, audit, min_size=2, max_size=2)
        await pool.start()
        try:
            assert pool.running
            names = sorted(p.pod_name for p in pool.list_pods())
            assert names == ["agentpane-warm-default-a", "agentpane-warm-default-b"]
            assert pool.available_count == 2
            assert fake_core.call_count("create_namespaced_pod") == 0
            adopted = [e for e in audit.events if e.type is AuditEventType.WARM_POOL_POD_ADOPTED]
            assert len(adopted) == 2
        finally:
            await pool.stop()

    @pytest.mark.asyncio
    async def test_claimed_pods_not_adopted(self, fake_core: Any) -> None:
        """Test pods already handed to a sandbox are left alone."""
        add_warm_pod(fake_core, "agentpane-warm-default-a")
        fake_core.pods[(NS, "agentpane-warm-default-a")].metadata.labels[
            "agentpane.io/warm-pool-state"
        ] = "claimed"
        pool = make_pool(fake_core, min_size=0, max_size=2)
        await pool.start()
        try:
            assert pool.list_pods() == []
        finally:
            await pool.stop()
        assert (NS, "agentpane-warm-default-a") in fake_core.pods

    @pytest.mark.asyncio
    async def test_adopted_pod_failing_validation_discarded(self, fake_core: Any) -> None:
        """Test a ready pod whose live spec fails restricted is never offered."""
        add_warm_pod(fake_core, "agentpane-warm-default-bad", hardened=False)
        pool = make_pool(fake_core, min_size=0, max_size=2)
        await pool.start()
        try:
            assert pool.available_count == 0
            assert (NS, "agentpane-warm-default-bad") not in fake_core.pods
            assert pool.metrics().discarded == 1
        finally:
            await pool.stop()

    @pytest.mark.asyncio
    async def test_discovery_failure(self, fake_core: Any) -> None:
        """Test a list failure at start raises WARM_POOL_DISCOVERY_FAILED."""
        fake_core.list_error = ApiException(status=500)
        pool = make_pool(fake_core, min_size=1, max_size=1)
        with pytest.raises(WarmPoolError) as exc_info:
            await pool.start()
        assert exc_info.value.kind is ErrorKind.WARM_POOL_DISCOVERY_FAILED
        assert not pool.running


class TestClaim:
    """Tests for claiming and releasing warm pods."""

    @pytest.mark.asyncio
    async def test_claim_marks_pod(self, fake_core: Any) -> None:
        """Test a claim relabels the pod and removes it from the pool."""
        pool = make_pool(fake_core, min_size=1, max_size=1)
        await fill(pool)
        config = SandboxConfig(project_id="proj/1")
        info = await pool.claim(config, project_id="proj/1", sandbox_id="sid")
        assert info is not None
        assert info.state is WarmPodState.CLAIMED
        assert info.project_id == "proj/1"
        assert pool.available_count == 0
        assert pool.total_count == 0
        labels = fake_core.pods[(NS, info.pod_name)].metadata.labels
        assert labels["agentpane.io/warm-pool-state"] == "claimed"
        assert labels["agentpane.io/project-id"] == "proj-1"
        assert labels["agentpane.io/sandbox-id"] == "sid"
        metrics = pool.metrics()
        assert metrics.hits == 1
        assert metrics.claimed == 1
        assert metrics.hit_rate == 1.0

    @pytest.mark.asyncio
    async def test_empty_pool_misses(self, fake_core: Any) -> None:
        """Test an empty pool returns None and records a miss."""
        audit = AuditLogger(sink=lambda event: None)
        pool = make_pool(fake_core, audit, min_size=0, max_size=1)
        assert await pool.claim(project_id="p", sandbox_id="s") is None
        assert pool.metrics().misses == 1
        assert audit.events[-1].type is AuditEventType.WARM_POOL_EXHAUSTED

    @pytest.mark.asyncio
    async def test_ineligible_config_misses(self, fake_core: Any) -> None:
        """Test a config with env is never served from the pool."""
        pool = make_pool(fake_core, min_size=1, max_size=1)
        await fill(pool)
        config = SandboxConfig(project_id="p", env={"TOKEN": "x"})
        assert await pool.claim(config, project_id="p", sandbox_id="s") is None
        assert pool.available_count == 1
        assert fake_core.call_count("patch_namespaced_pod") == 0

    @pytest.mark.asyncio
    async def test_concurrent_claims_are_distinct(self, fake_core: Any) -> None:
        """Test N concurrent claims never hand out the same pod twice."""
        pool = make_pool(fake_core, min_size=3, max_size=3)
        await fill(pool)
        results = await asyncio.gather(
            *[pool.claim(project_id=f"p{i}", sandbox_id=f"s{i}") for i in range(5)]
        )
        claimed = [r.pod_name for r in results if r is not None]
        assert len(claimed) == 3
        assert len(set(claimed)) == 3
        assert results.count(None) == 2
        assert pool.metrics().hits == 3
        assert pool.metrics().misses == 2

    @pytest.mark.asyncio
    async def test_claimed_pod_deleted_out_of_band(self, fake_core: Any) -> None:
        """Test a pod that vanished before the claim patch is not handed out."""
        pool = make_pool(fake_core, min_size=1, max_size=1)
        await fill(pool)
        (name,) = [p.pod_name for p in pool.list_pods()]
        fake_core.pods.pop((NS, name))
        assert await pool.claim(project_id="p", sandbox_id="s") is None
        assert pool.total_count == 0

    @pytest.mark.asyncio
    async def test_release_and_forget(self, fake_core: Any) -> None:
        """Test release deletes the pod while forget only stops tracking it."""
        pool = make_pool(fake_core, min_size=2, max_size=2)
        await fill(pool)
        first = await pool.claim(project_id="a", sandbox_id="sa")
        second = await pool.claim(project_id="b", sandbox_id="sb")
        assert first is not None and second is not None

        await pool.release(first.pod_name)
        assert (NS, first.pod_name) not in fake_core.pods

        assert pool.forget(second.pod_name) is second
        assert (NS, second.pod_name) in fake_core.pods
        assert pool.metrics().claimed == 0


class TestStop:
    """Tests for stopping the pool."""

    @pytest.mark.asyncio
    async def test_stop_drains_unclaimed_only(self, fake_core: Any) -> None:
        """Test stop deletes pool pods but leaves claimed pods running."""
        pool = make_pool(fake_core, min_size=2, max_size=2)
        await pool.start()
        await pool.reconcile()
        claimed = await pool.claim(project_id="p", sandbox_id="s")
        assert claimed is not None
        await pool.stop()
        assert not pool.running
        assert pool.total_count == 0
        assert [p.metadata.name for p in fake_core.pods_in(NS)] == [claimed.pod_name]

    @pytest.mark.asyncio
    async def test_stop_without_drain(self, fake_core: Any) -> None:
        """Test drain=False leaves pods for the next process to adopt."""
        pool = make_pool(fake_core, min_size=1, max_size=1)
        await pool.start()
        await pool.stop(drain=False)
        assert len(fake_core.pods_in(NS)) == 1


class TestAutoScaling:
    """Tests for the target size computation."""

    def test_fixed_size_without_auto_scaling(self, fake_core: Any) -> None:
        """Test target is min_size when auto-scaling is off."""
        assert make_pool(fake_core, min_size=2, max_size=5).target_size() == 2

    def test_no_samples_is_min(self, fake_core: Any) -> None:
        """Test target is min_size before any usage is recorded."""
        pool = make_pool(fake_core, min_size=1, max_size=4, auto_scaling=True)
        assert pool.target_size() == 1

    def test_high_utilization_scales_up_to_max(self, fake_core: Any) -> None:
        """Test sustained high utilization grows the target, clamped to max."""
        pool = make_pool(fake_core, min_size=1, max_size=4, auto_scaling=True)
        now = time.monotonic()
        pool._usage.extend(_UsageSample(now, warm=0, claimed=4) for _ in range(3))
        assert pool.target_size() == 4

    def test_low_utilization_scales_down_to_min(self, fake_core: Any) -> None:
        """Test an idle pool shrinks to min_size."""
        pool = make_pool(fake_core, min_size=1, max_size=4, auto_scaling=True)
        now = time.monotonic()
        pool._usage.extend(_UsageSample(now, warm=4, claimed=0) for _ in range(3))
        assert pool.target_size() == 1

    def test_old_samples_expire(self, fake_core: Any) -> None:
        """Test samples outside the usage window are ignored."""
        pool = make_pool(
            fake_core, min_size=1, max_size=4, auto_scaling=True, usage_window_seconds=10
        )
        pool._usage.append(_UsageSample(time.monotonic() - 60, warm=0, claimed=4))
        assert pool.target_size() == 1
