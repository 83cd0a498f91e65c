# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Unit tests for kubesandbox._pods module."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from kubesandbox._defaults import VolumeMount
from kubesandbox._pods import (
    build_pod_manifest,
    classify_pod,
    container_started_at,
    cpu_quantity,
    label_value,
    make_pod_name,
    make_warm_pod_name,
    wait_for_pod_running,
)
from kubesandbox._security import validate_pod_security
from kubesandbox.exceptions import (
    ErrorKind,
    ImagePullError,
    PodNotFoundError,
    PodNotRunningError,
    PodStartupTimeoutError,
)

NS = "agentpane-sandboxes"


def manifest(**overrides: Any) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "name": "agentpane-p1-abcd1234",
        "image": "python:3.12",
        "memory_mb": 2048,
        "cpu_cores": 1.5,
        "labels": {"agentpane.io/sandbox": "true"},
    }
    kwargs.update(overrides)
    return build_pod_manifest(**kwargs)


class TestNaming:
    """Tests for pod and label naming helpers."""

    def test_pod_name_format(self) -> None:
        """Test agentpane-{project[:20]}-{id[:8]} restricted to [a-z0-9-]."""
        name = make_pod_name("My_Project.With-A-Very-Long-Name", "ABCDEF1234567890")
        assert name == "agentpane-my-project-with-a-ve-abcdef12"

    def test_warm_pod_name(self) -> None:
        """Test warm pod names carry the pool id."""
        assert make_warm_pod_name("default", "0123456789") == "agentpane-warm-default-01234567"

    def test_label_value(self) -> None:
        """Test identifiers are coerced into valid label values."""
        assert label_value("team/proj 1") == "team-proj-1"
        assert label_value("-x-") == "x"
        assert len(label_value("a" * 100)) == 63

    @pytest.mark.parametrize(
        ("cores", "expected"), [(2.0, "2000m"), (0.5, "500m"), (1.25, "1250m")]
    )
    def test_cpu_quantity(self, cores: float, expected: str) -> None:
        """Test cores are expressed in millicores."""
        assert cpu_quantity(cores) == expected


class TestBuildPodManifest:
    """Tests for build_pod_manifest."""

    def test_passes_restricted(self) -> None:
        """Test the manifest passes the restricted profile as built."""
        assert validate_pod_security(manifest()).valid

    def test_resources(self) -> None:
        """Test limits come from the config and requests are half."""
        resources = manifest()["spec"]["containers"][0]["resources"]
        assert resources["limits"] == {"memory": "2048Mi", "cpu": "1500m"}
        assert resources["requests"] == {"memory": "1024Mi", "cpu": "750m"}

    def test_hardening(self) -> None:
        """Test the pod never restarts and mounts no service account token."""
        spec = manifest()["spec"]
        assert spec["restartPolicy"] == "Never"
        assert spec["automountServiceAccountToken"] is False
        assert spec["securityContext"]["runAsUser"] == 1000
        assert spec["containers"][0]["command"] == ["tail", "-f", "/dev/null"]

    def test_volumes_and_env(self) -> None:
        """Test mounts become hostPath volumes and env is sorted."""
        spec = manifest(
            volume_mounts=(VolumeMount("/srv/repo", "/workspace/repo", read_only=True),),
            env={"B": "2", "A": "1"},
        )["spec"]
        container = spec["containers"][0]
        assert container["env"] == [{"name": "A", "value": "1"}, {"name": "B", "value": "2"}]
        assert {"name": "volume-0", "mountPath": "/workspace/repo", "readOnly": True} in (
            container["volumeMounts"]
        )
        assert {"name": "volume-0", "hostPath": {"path": "/srv/repo"}} in spec["volumes"]

    def test_annotations(self) -> None:
        """Test annotations are carried onto the metadata."""
        meta = manifest(annotations={"agentpane.io/project-id": "p1"})["metadata"]
        assert meta["annotations"] == {"agentpane.io/project-id": "p1"}


def pod_with(
    phase: str,
    *,
    waiting_reason: str | None = None,
    ready: bool = True,
    init_waiting: str | None = None,
) -> client.V1Pod:
    state = (
        client.V1ContainerState(waiting=client.V1ContainerStateWaiting(reason=waiting_reason))
        if waiting_reason
        else client.V1ContainerState(running=client.V1ContainerStateRunning())
    )
    statuses = [
        client.V1ContainerStatus(
            name="sandbox", image="img", image_id="", ready=ready, restart_count=0, state=state
        )
    ]
    init = None
    if init_waiting:
        init = [
            client.V1ContainerStatus(
                name="init",
                image="init-img",
                image_id="",
                ready=False,
                restart_count=0,
                state=client.V1ContainerState(
                    waiting=client.V1ContainerStateWaiting(reason=init_waiting)
                ),
            )
        ]
    return client.V1Pod(
        status=client.V1PodStatus(
            phase=phase, container_statuses=statuses, init_container_statuses=init
        )
    )


class TestClassifyPod:
    """Tests for classify_pod."""

    def test_ready(self) -> None:
        """Test a running pod with ready containers is ready."""
        assert classify_pod(pod_with("Running")).state == "ready"

    def test_running_not_ready_is_pending(self) -> None:
        """Test a running pod with unready containers is still pending."""
        assert classify_pod(pod_with("Running", ready=False)).state == "pending"

    @pytest.mark.parametrize("reason", ["ImagePullBackOff", "ErrImagePull", "InvalidImageName"])
    def test_image_pull_failure(self, reason: str) -> None:
        """Test image pull reasons win over the pending phase."""
        readiness = classify_pod(pod_with("Pending", waiting_reason=reason, ready=False))
        assert readiness.state == "image_pull_failure"
        assert readiness.reason == reason
        assert readiness.image == "img"

    def test_init_container_pull_failure(self) -> None:
        """Test init container pull failures are detected."""
        readiness = classify_pod(pod_with("Pending", ready=False, init_waiting="ErrImagePull"))
        assert readiness.state == "image_pull_failure"
        assert readiness.image == "init-img"

    @pytest.mark.parametrize("phase", ["Failed", "Succeeded"])
    def test_terminal_phases(self, phase: str) -> None:
        """Test finished pods are failed for startup purposes."""
        assert classify_pod(pod_with(phase)).state == "failed"

    def test_started_at(self) -> None:
        """Test the sandbox container's start time is read."""
        pod = pod_with("Running")
        assert container_started_at(pod) is None
        started = client.V1ContainerStateRunning(started_at=datetime.now(UTC))
        pod.status.container_statuses[0].state.running = started
        assert container_started_at(pod) == started.started_at


class TestWaitForPodRunning:
    """Tests for wait_for_pod_running against the fake core API."""

    @pytest.mark.asyncio
    async def test_returns_ready_pod(self, fake_core: Any) -> None:
        """Test a ready pod is returned."""
        fake_core.add_pod(NS, "p", state="ready")
        pod = await wait_for_pod_running(
            fake_core, "p", NS, timeout_seconds=1, poll_interval_seconds=0.01
        )
        assert pod.metadata.name == "p"

    @pytest.mark.asyncio
    async def test_image_pull_fails_fast(self, fake_core: Any) -> None:
        """Test ImagePullBackOff raises long before the timeout."""
        fake_core.add_pod(NS, "p", state="image_pull_backoff")
        started = time.monotonic()
        with pytest.raises(ImagePullError) as exc_info:
            await wait_for_pod_running(
                fake_core, "p", NS, timeout_seconds=30, poll_interval_seconds=0.01
            )
        assert time.monotonic() - started < 5
        assert exc_info.value.kind is ErrorKind.IMAGE_PULL_BACKOFF
        assert exc_info.value.context["reason"] == "ImagePullBackOff"

    @pytest.mark.asyncio
    async def test_failed_pod(self, fake_core: Any) -> None:
        """Test a failed pod raises PodNotRunningError."""
        fake_core.add_pod(NS, "p", state="failed")
        with pytest.raises(PodNotRunningError):
            await wait_for_pod_running(
                fake_core, "p", NS, timeout_seconds=1, poll_interval_seconds=0.01
            )

    @pytest.mark.asyncio
    async def test_timeout(self, fake_core: Any) -> None:
        """Test a pod stuck pending times out."""
        fake_core.add_pod(NS, "p", state="pending")
        with pytest.raises(PodStartupTimeoutError) as exc_info:
            await wait_for_pod_running(
                fake_core, "p", NS, timeout_seconds=0.05, poll_interval_seconds=0.01
            )
        assert exc_info.value.context["timeout_seconds"] == 0.05

    @pytest.mark.asyncio
    async def test_disappeared(self, fake_core: Any) -> None:
        """Test a missing pod raises PodNotFoundError."""
        with pytest.raises(PodNotFoundError):
            await wait_for_pod_running(
                fake_core, "ghost", NS, timeout_seconds=1, poll_interval_seconds=0.01
            )

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, fake_core: Any) -> None:
        """Test a transient API error is retried inside the budget."""
        fake_core.add_pod(NS, "p", state="ready")
        real_read = fake_core.read_namespaced_pod
        failures = iter([ApiException(status=500, reason="Internal")])

        def flaky(name: str, namespace: str, **kwargs: Any) -> Any:
            error = next(failures, None)
            if error is not None:
                raise error
            return real_read(name, namespace, **kwargs)

        fake_core.read_namespaced_pod = flaky
        pod = await wait_for_pod_running(
            fake_core, "p", NS, timeout_seconds=1, poll_interval_seconds=0.01
        )
        assert pod.metadata.name == "p"

    @pytest.mark.asyncio
    async def test_stalled_read_bounded_by_deadline(self, fake_core: Any) -> None:
        """Test a hung pod read cannot carry the wait past its timeout."""
        fake_core.add_pod(NS, "p", state="pending")
        fake_core.read_delay = 3.0
        started = time.monotonic()
        with pytest.raises(PodStartupTimeoutError) as exc_info:
            await wait_for_pod_running(
                fake_core, "p", NS, timeout_seconds=0.2, poll_interval_seconds=0.01
            )
        assert time.monotonic() - started < 1.5
        assert "Read timed out" in exc_info.value.context["last_error"]
        assert all(t is not None and t <= 0.2 for t in fake_core.request_timeouts)
