# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Shared fixtures for kubesandbox unit tests.

The cluster is faked with in-memory stand-ins for the kubernetes API
classes. They are synchronous, like the real client, and are driven through
``asyncio.to_thread`` by the code under test.
"""

from __future__ import annotations

import copy
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

import pytest
import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from kubesandbox import _defaults
from kubesandbox._audit import AuditLogger
from kubesandbox._cluster import ClusterApis
from kubesandbox._defaults import ProviderConfig

# Environment variables that affect configuration and credential discovery.
# These are cleared before each test to ensure isolation.
CONFIG_ENV_VARS = (
    "KUBECONFIG",
    "K8S_KUBECONFIG",
    "KUBERNETES_SERVICE_HOST",
    "KUBESANDBOX_NAMESPACE",
    "KUBESANDBOX_CREATE_NAMESPACE",
    "KUBESANDBOX_KUBECONFIG",
    "KUBESANDBOX_CONTEXT",
    "KUBESANDBOX_POD_STARTUP_TIMEOUT_SECONDS",
    "KUBESANDBOX_EXEC_TIMEOUT_SECONDS",
    "KUBESANDBOX_NETWORK_POLICY_ENABLED",
    "KUBESANDBOX_RBAC_ENABLED",
    "KUBESANDBOX_AUDIT_LOGGING_ENABLED",
    "KUBESANDBOX_WARM_POOL_ENABLED",
    "KUBESANDBOX_ALLOWED_EGRESS_HOSTS",
    "KUBESANDBOX_WARM_POOL_MIN_SIZE",
    "KUBESANDBOX_WARM_POOL_MAX_SIZE",
    "KUBESANDBOX_WARM_POOL_AUTO_SCALING",
)


@pytest.fixture(autouse=True)
def clean_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Clear configuration env vars so tests don't see the developer's cluster."""
    for var in CONFIG_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def fast_poll(monkeypatch: pytest.MonkeyPatch) -> None:
    """Shrink the default readiness poll and exec read step."""
    monkeypatch.setattr(_defaults, "DEFAULT_POLL_INTERVAL_SECONDS", 0.01)
    monkeypatch.setattr(_defaults, "DEFAULT_EXEC_READ_STEP_SECONDS", 0.01)


# ---------------------------------------------------------------------------
# Fake cluster
# ---------------------------------------------------------------------------


def api_error(status: int, reason: str = "", body: str | None = None) -> ApiException:
    error = ApiException(status=status, reason=reason)
    error.body = body
    return error


def _matches_selector(labels: dict[str, str], selector: str | None) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


def _to_model(data: Any, type_name: str) -> Any:
    """Build a kubernetes model from camelCase JSON using the model's own type map."""
    if data is None:
        return None
    if type_name.startswith("list["):
        return [_to_model(item, type_name[5:-1]) for item in data]
    model = getattr(client, type_name, None) if type_name[:1].isupper() else None
    if model is None:
        return data
    attributes = {json_key: attr for attr, json_key in model.attribute_map.items()}
    kwargs = {
        attributes[key]: _to_model(value, model.openapi_types[attributes[key]])
        for key, value in data.items()
        if key in attributes
    }
    return model(**kwargs)


def _pod_spec(spec: dict[str, Any] | None) -> client.V1PodSpec:
    """Turn a manifest spec into the typed model the real client returns."""
    data = spec if spec is not None else {"containers": [{"name": "sandbox", "image": "img"}]}
    return _to_model(copy.deepcopy(data), "V1PodSpec")


def pod_status(state: str, image: str = "img") -> client.V1PodStatus:
    """Build a pod status for one of: ready, pending, image_pull_backoff, err_image_pull, failed."""
    if state == "ready":
        return client.V1PodStatus(
            phase="Running",
            container_statuses=[
                client.V1ContainerStatus(
                    name=_defaults.CONTAINER_NAME,
                    image=image,
                    image_id="",
                    ready=True,
                    restart_count=0,
                    state=client.V1ContainerState(
                        running=client.V1ContainerStateRunning(started_at=datetime.now(UTC))
                    ),
                )
            ],
        )
    if state in ("image_pull_backoff", "err_image_pull"):
        reason = "ImagePullBackOff" if state == "image_pull_backoff" else "ErrImagePull"
        return client.V1PodStatus(
            phase="Pending",
            container_statuses=[
                client.V1ContainerStatus(
                    name=_defaults.CONTAINER_NAME,
                    image=image,
                    image_id="",
                    ready=False,
                    restart_count=0,
                    state=client.V1ContainerState(
                        waiting=client.V1ContainerStateWaiting(
                            reason=reason, message=f'Back-off pulling image "{image}"'
                        )
                    ),
                )
            ],
        )
    if state == "failed":
        return client.V1PodStatus(phase="Failed", reason="Error")
    return client.V1PodStatus(phase="Pending")


class FakeCoreV1Api:
    """In-memory CoreV1Api covering namespaces, pods and RBAC-adjacent objects.

    ``startup_state`` controls the status given to newly created pods.
    """

    def __init__(self, namespaces: tuple[str, ...] = ()) -> None:
        self._lock = threading.Lock()
        self.namespaces: set[str] = set(namespaces)
        self.pods: dict[tuple[str, str], client.V1Pod] = {}
        self.startup_state = "ready"
        self.calls: list[str] = []
        self.deleted: list[tuple[str, int | None]] = []
        self.service_accounts: dict[tuple[str, str], dict[str, Any]] = {}
        self.limit_ranges: dict[tuple[str, str], dict[str, Any]] = {}
        self.delete_error: ApiException | None = None
        self.create_pod_error: ApiException | None = None
        self.list_error: Exception | None = None
        self.unreachable = False
        self.read_delay = 0.0
        self.request_timeouts: list[float | None] = []

    def _record(self, name: str) -> None:
        if self.unreachable:
            raise urllib3.exceptions.MaxRetryError(None, "/", "connection refused")
        self.calls.append(name)

    def call_count(self, name: str) -> int:
        return self.calls.count(name)

    # namespaces

    def read_namespace(self, name: str) -> client.V1Namespace:
        self._record("read_namespace")
        if name not in self.namespaces:
            raise api_error(404, "Not Found")
        return client.V1Namespace(metadata=client.V1ObjectMeta(name=name))

    def create_namespace(self, body: dict[str, Any]) -> dict[str, Any]:
        self._record("create_namespace")
        name = body["metadata"]["name"]
        with self._lock:
            if name in self.namespaces:
                raise api_error(409, "AlreadyExists")
            self.namespaces.add(name)
        return body

    def list_namespace(self, limit: int | None = None) -> client.V1NamespaceList:
        self._record("list_namespace")
        items = [client.V1Namespace(metadata=client.V1ObjectMeta(name=n)) for n in self.namespaces]
        return client.V1NamespaceList(items=items[:limit] if limit else items)

    # pods

    def add_pod(
        self,
        namespace: str,
        name: str,
        *,
        labels: dict[str, str] | None = None,
        state: str = "ready",
        spec: dict[str, Any] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> client.V1Pod:
        pod = client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=dict(labels or {}),
                annotations=dict(annotations or {}),
                creation_timestamp=datetime.now(UTC),
            ),
            spec=_pod_spec(spec),
            status=pod_status(state),
        )
        with self._lock:
            self.pods[(namespace, name)] = pod
        return pod

    def set_pod_state(self, namespace: str, name: str, state: str) -> None:
        self.pods[(namespace, name)].status = pod_status(state)

    def pods_in(self, namespace: str, selector: str | None = None) -> list[client.V1Pod]:
        return [
            pod
            for (ns, _), pod in sorted(self.pods.items())
            if ns == namespace and _matches_selector(pod.metadata.labels or {}, selector)
        ]

    def create_namespaced_pod(self, namespace: str, body: dict[str, Any]) -> client.V1Pod:
        self._record("create_namespaced_pod")
        if self.create_pod_error is not None:
            raise self.create_pod_error
        name = body["metadata"]["name"]
        with self._lock:
            if (namespace, name) in self.pods:
                raise api_error(409, "AlreadyExists")
        return self.add_pod(
            namespace,
            name,
            labels=body["metadata"].get("labels"),
            annotations=body["metadata"].get("annotations"),
            state=self.startup_state,
            spec=body["spec"],
        )

    def read_namespaced_pod(
        self, name: str, namespace: str, _request_timeout: float | None = None
    ) -> client.V1Pod:
        self._record("read_namespaced_pod")
        self.request_timeouts.append(_request_timeout)
        if self.read_delay:
            # A stalled apiserver: the socket timeout fires before the response
            if _request_timeout is not None and _request_timeout < self.read_delay:
                time.sleep(_request_timeout)
                raise urllib3.exceptions.ReadTimeoutError(None, "/", "Read timed out.")
            time.sleep(self.read_delay)
        pod = self.pods.get((namespace, name))
        if pod is None:
            raise api_error(404, "Not Found")
        return pod

    def list_namespaced_pod(
        self, namespace: str, label_selector: str | None = None
    ) -> client.V1PodList:
        self._record("list_namespaced_pod")
        if self.list_error is not None:
            raise self.list_error
        return client.V1PodList(items=self.pods_in(namespace, label_selector))

    def delete_namespaced_pod(
        self, name: str, namespace: str, grace_period_seconds: int | None = None
    ) -> None:
        self._record("delete_namespaced_pod")
        if self.delete_error is not None:
            raise self.delete_error
        with self._lock:
            if self.pods.pop((namespace, name), None) is None:
                raise api_error(404, "Not Found")
        self.deleted.append((name, grace_period_seconds))

    def patch_namespaced_pod(self, name: str, namespace: str, body: dict[str, Any]) -> client.V1Pod:
        self._record("patch_namespaced_pod")
        pod = self.pods.get((namespace, name))
        if pod is None:
            raise api_error(404, "Not Found")
        labels = dict(pod.metadata.labels or {})
        labels.update(body.get("metadata", {}).get("labels", {}))
        pod.metadata.labels = labels
        return pod

    def connect_get_namespaced_pod_exec(self, *args: Any, **kwargs: Any) -> None:
        # Only ever passed to kubernetes.stream.stream, which tests patch out
        raise NotImplementedError("exec is served by a patched stream")

    # namespaced RBAC-adjacent objects

    def create_namespaced_service_account(self, namespace: str, body: dict[str, Any]) -> None:
        self._record("create_namespaced_service_account")
        key = (namespace, body["metadata"]["name"])
        if key in self.service_accounts:
            raise api_error(409, "AlreadyExists")
        self.service_accounts[key] = body

    def create_namespaced_limit_range(self, namespace: str, body: dict[str, Any]) -> None:
        self._record("create_namespaced_limit_range")
        key = (namespace, body["metadata"]["name"])
        if key in self.limit_ranges:
            raise api_error(409, "AlreadyExists")
        self.limit_ranges[key] = body

    def replace_namespaced_limit_range(
        self, name: str, namespace: str, body: dict[str, Any]
    ) -> None:
        self._record("replace_namespaced_limit_range")
        self.limit_ranges[(namespace, name)] = body


class FakeNetworkingV1Api:
    """In-memory NetworkingV1Api for NetworkPolicy objects."""

    def __init__(self) -> None:
        self.policies: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[str] = []

    def call_count(self, name: str) -> int:
        return self.calls.count(name)

    def read_namespaced_network_policy(self, name: str, namespace: str) -> SimpleNamespace:
        self.calls.append("read")
        body = self.policies.get((namespace, name))
        if body is None:
            raise api_error(404, "Not Found")
        return SimpleNamespace(metadata=body["metadata"], spec=copy.deepcopy(body["spec"]))

    def create_namespaced_network_policy(self, namespace: str, body: dict[str, Any]) -> None:
        self.calls.append("create")
        key = (namespace, body["metadata"]["name"])
        if key in self.policies:
            raise api_error(409, "AlreadyExists")
        self.policies[key] = copy.deepcopy(body)

    def replace_namespaced_network_policy(
        self, name: str, namespace: str, body: dict[str, Any]
    ) -> None:
        self.calls.append("replace")
        self.policies[(namespace, name)] = copy.deepcopy(body)

    def delete_namespaced_network_policy(self, name: str, namespace: str) -> None:
        self.calls.append("delete")
        if self.policies.pop((namespace, name), None) is None:
            raise api_error(404, "Not Found")


class FakeRbacAuthorizationV1Api:
    """In-memory RbacAuthorizationV1Api for Roles and RoleBindings."""

    def __init__(self) -> None:
        self.roles: dict[tuple[str, str], dict[str, Any]] = {}
        self.role_bindings: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[str] = []
        self.role_error: ApiException | None = None

    def create_namespaced_role(self, namespace: str, body: dict[str, Any]) -> None:
        self.calls.append("create_role")
        if self.role_error is not None:
            raise self.role_error
        key = (namespace, body["metadata"]["name"])
        if key in self.roles:
            raise api_error(409, "AlreadyExists")
        self.roles[key] = body

    def replace_namespaced_role(self, name: str, namespace: str, body: dict[str, Any]) -> None:
        self.calls.append("replace_role")
        self.roles[(namespace, name)] = body

    def create_namespaced_role_binding(self, namespace: str, body: dict[str, Any]) -> None:
        self.calls.append("create_role_binding")
        key = (namespace, body["metadata"]["name"])
        if key in self.role_bindings:
            raise api_error(409, "AlreadyExists")
        self.role_bindings[key] = body

    def replace_namespaced_role_binding(
        self, name: str, namespace: str, body: dict[str, Any]
    ) -> None:
        self.calls.append("replace_role_binding")
        self.role_bindings[(namespace, name)] = body


class FakeVersionApi:
    def get_code(self) -> SimpleNamespace:
        return SimpleNamespace(git_version="v1.30.2")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

NAMESPACE = _defaults.DEFAULT_NAMESPACE


@pytest.fixture
def fake_core() -> FakeCoreV1Api:
    return FakeCoreV1Api(namespaces=(NAMESPACE,))


@pytest.fixture
def fake_networking() -> FakeNetworkingV1Api:
    return FakeNetworkingV1Api()


@pytest.fixture
def fake_rbac() -> FakeRbacAuthorizationV1Api:
    return FakeRbacAuthorizationV1Api()


@pytest.fixture
def fake_apis(
    fake_core: FakeCoreV1Api,
    fake_networking: FakeNetworkingV1Api,
    fake_rbac: FakeRbacAuthorizationV1Api,
) -> ClusterApis:
    return ClusterApis(
        core=fake_core, networking=fake_networking, rbac=fake_rbac, version=FakeVersionApi()
    )


@pytest.fixture
def audit() -> AuditLogger:
    """Audit logger that records in memory only."""
    return AuditLogger(sink=lambda event: None)


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        pod_startup_timeout_seconds=2.0,
        poll_interval_seconds=0.01,
        exec_timeout_seconds=2.0,
    )


@pytest.fixture
def make_provider(
    fake_apis: ClusterApis, provider_config: ProviderConfig, audit: AuditLogger
) -> Callable[..., Any]:
    """Build a SandboxProvider over the fake cluster, with optional config overrides."""
    from kubesandbox._provider import SandboxProvider

    def _make(**overrides: Any) -> SandboxProvider:
        config = provider_config.with_overrides(**overrides) if overrides else provider_config
        return SandboxProvider(config, apis=fake_apis, audit=audit)

    return _make
