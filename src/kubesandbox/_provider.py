# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""SandboxProvider: the lifecycle orchestrator for project sandboxes."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from kubernetes.client.rest import ApiException

from kubesandbox._audit import AuditEventType, AuditLogger, AuditSeverity
from kubesandbox._cluster import (
    ClusterApis,
    _translate_api_error,
    api_reason,
    call_api,
    is_conflict,
    is_not_found,
)
from kubesandbox._defaults import (
    ANNOTATION_CREATED_AT,
    ANNOTATION_PROJECT_ID,
    CONTAINER_NAME,
    LABEL_MANAGED,
    LABEL_PROJECT_ID,
    LABEL_SANDBOX,
    LABEL_SANDBOX_ID,
    LABEL_WARM_POOL_STATE,
    ProviderConfig,
    SandboxConfig,
)
from kubesandbox._kubeconfig import ClusterConfigResolver
from kubesandbox._network_policy import NetworkPolicyManager
from kubesandbox._pods import (
    build_pod_manifest,
    classify_pod,
    label_value,
    make_pod_name,
    wait_for_pod_running,
)
from kubesandbox._rbac import RbacManager
from kubesandbox._sandbox import Sandbox
from kubesandbox._security import PodSecurityValidator
from kubesandbox._types import (
    HealthCheckResult,
    SandboxEvent,
    SandboxEventType,
    SandboxPodInfo,
    SandboxStatus,
)
from kubesandbox._warm_pool import WarmPoolController, WarmPoolMetrics
from kubesandbox.exceptions import (
    ClusterConnectionError,
    ErrorKind,
    KubeSandboxError,
    NamespaceError,
    NamespaceNotFoundError,
    PodAlreadyExistsError,
    PodDeletionError,
    PodError,
    PodNotFoundError,
    ResourceError,
)

logger = logging.getLogger(__name__)

SandboxListener = Callable[[SandboxEvent], None]

_QUOTA_MARKERS = ("exceeded quota", "exceeds", "maximum", "insufficient")


class SandboxProvider:
    """Creates, tracks and tears down one sandbox pod per project.

    The provider owns its registry: sandboxes are keyed by id and by project,
    and a project can hold at most one non-terminal sandbox. Stopped
    sandboxes stay visible through ``get``/``list`` until ``cleanup`` removes
    them.

    Args:
        config: Provider configuration (defaults apply when omitted)
        apis: Pre-built cluster API bundle; when omitted, credentials are
            resolved lazily on first use
        resolver: Credential resolver (built from ``config`` when omitted)
        audit: Audit logger (built from ``config.audit_logging_enabled`` when omitted)

    Example:
        ```python
        async with SandboxProvider(ProviderConfig(namespace="agents")) as provider:
            unsubscribe = provider.subscribe(lambda event: print(event.type))
            sandbox = await provider.create(SandboxConfig(project_id="p1"))
            result = await sandbox.exec(["python", "--version"])
            await sandbox.stop()
            unsubscribe()
        ```
    """

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        apis: ClusterApis | None = None,
        resolver: ClusterConfigResolver | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.config = config or ProviderConfig()
        self._apis = apis
        self._api_client: Any = None
        self._resolver = resolver or ClusterConfigResolver(
            self.config.kubeconfig_path, self.config.context
        )
        self.audit = audit or AuditLogger(enabled=self.config.audit_logging_enabled)
        self._validator = PodSecurityValidator(self.audit)

        self._by_id: dict[str, Sandbox] = {}
        self._by_project: dict[str, Sandbox] = {}
        self._listeners: list[SandboxListener] = []
        self._prepared_namespaces: set[str] = set()
        self._prepare_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._warm_pool: WarmPoolController | None = None
        self._closed = False

        self.audit.log(
            AuditEventType.CONFIG_LOADED,
            namespace=self.config.namespace,
            component="provider",
            detail={
                "create_namespace": self.config.create_namespace,
                "network_policy_enabled": self.config.network_policy_enabled,
                "rbac_enabled": self.config.rbac_enabled,
                "warm_pool_enabled": self.config.warm_pool_enabled,
            },
        )

    def __repr__(self) -> str:
        status = "closed" if self._closed else "open"
        return (
            f"<SandboxProvider namespace={self.config.namespace} "
            f"sandboxes={len(self._by_id)} status={status}>"
        )

    async def __aenter__(self) -> SandboxProvider:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Cluster access
    # ------------------------------------------------------------------

    async def _get_apis(self) -> ClusterApis:
        if self._apis is not None:
            return self._apis
        async with self._connect_lock:
            if self._apis is None:
                # Reads kubeconfig files, so kept off the event loop
                api_client = await asyncio.to_thread(self._resolver.load_api_client)
                self._api_client = api_client
                self._apis = ClusterApis.from_api_client(api_client)
                logger.info(
                    "Connected to cluster using %s credentials", self._resolver.resolve().source
                )
        return self._apis

    async def _prepare_namespace(self, apis: ClusterApis) -> None:
        """Ensure the namespace, RBAC and network policies once per provider."""
        namespace = self.config.namespace
        if namespace in self._prepared_namespaces:
            return
        async with self._prepare_lock:
            if namespace in self._prepared_namespaces:
                return
            await self._ensure_namespace(apis, namespace)
            if self.config.rbac_enabled:
                await RbacManager(apis, audit=self.audit).ensure(namespace)
            if self.config.network_policy_enabled:
                await NetworkPolicyManager(
                    apis.networking, self.config.network_policy, audit=self.audit
                ).apply(namespace)
            self._prepared_namespaces.add(namespace)

    async def _ensure_namespace(self, apis: ClusterApis, namespace: str) -> None:
        try:
            await call_api(apis.core.read_namespace, name=namespace)
            return
        except ApiException as e:
            if not is_not_found(e):
                raise _translate_api_error(
                    e,
                    error_cls=NamespaceError,
                    kind=ErrorKind.API_ERROR,
                    operation=f"Read namespace {namespace}",
                    namespace=namespace,
                ) from e

        if not self.config.create_namespace:
            raise NamespaceNotFoundError(
                f"Namespace {namespace} does not exist and create_namespace is disabled",
                context={"namespace": namespace},
            )

        body = {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": namespace, "labels": {LABEL_MANAGED: "true"}},
        }
        try:
            await call_api(apis.core.create_namespace, body=body)
        except ApiException as e:
            if is_conflict(e):
                return
            raise _translate_api_error(
                e,
                error_cls=NamespaceError,
                kind=ErrorKind.NAMESPACE_CREATION_FAILED,
                operation=f"Create namespace {namespace}",
                namespace=namespace,
            ) from e
        logger.info("Created namespace %s", namespace)
        self.audit.log(AuditEventType.NAMESPACE_CREATED, namespace=namespace)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: SandboxListener) -> Callable[[], None]:
        """Register a lifecycle listener.

        Returns:
            A callable that unsubscribes the listener
        """
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: SandboxListener) -> bool:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    def _emit(self, event_type: SandboxEventType, sandbox: Sandbox, data: dict[str, Any]) -> None:
        event = SandboxEvent(
            type=event_type,
            sandbox_id=sandbox.id,
            project_id=sandbox.project_id,
            data=dict(data),
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("Sandbox listener failed on %s", event_type.value, exc_info=True)

        if event_type is SandboxEventType.STOPPED and sandbox.from_warm_pool:
            if self._warm_pool is not None and sandbox.pod_name is not None:
                self._warm_pool.forget(sandbox.pod_name)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get(self, project_id: str) -> Sandbox | None:
        return self._by_project.get(project_id)

    def get_by_id(self, sandbox_id: str) -> Sandbox | None:
        return self._by_id.get(sandbox_id)

    def list(self) -> list[Sandbox]:
        return list(self._by_id.values())

    def _forget(self, sandbox: Sandbox) -> None:
        self._by_id.pop(sandbox.id, None)
        if self._by_project.get(sandbox.project_id) is sandbox:
            del self._by_project[sandbox.project_id]

    def idle_sandboxes(self) -> list[Sandbox]:
        """Running sandboxes past their idle timeout. Emits ``sandbox:idle`` once per period."""
        return [s for s in self.list() if s.check_idle()]

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, config: SandboxConfig) -> Sandbox:
        """Create and start a sandbox for ``config.project_id``.

        Raises:
            PodAlreadyExistsError: If the project already has a non-terminal sandbox
            NamespaceNotFoundError: If the namespace is absent and may not be created
            ImagePullError: As soon as the image cannot be pulled
            PodStartupTimeoutError: If the pod is not ready in time
            PodSecurityViolationError: If the pod spec fails the restricted profile
        """
        apis = await self._get_apis()
        if self._closed:
            raise KubeSandboxError("Provider has been closed")

        project_id = config.project_id
        previous = self._by_project.get(project_id)
        if previous is not None and not previous.is_terminal:
            raise PodAlreadyExistsError(
                f"Project {project_id} already has an active sandbox ({previous.id})",
                context={
                    "project_id": project_id,
                    "sandbox_id": previous.id,
                    "status": previous.status.value,
                },
            )

        sandbox = Sandbox(
            sandbox_id=str(uuid.uuid4()),
            config=config,
            namespace=self.config.namespace,
            core=apis.core,
            exec_timeout_seconds=self.config.exec_timeout_seconds,
            stop_grace_period_seconds=self.config.stop_grace_period_seconds,
            audit=self.audit,
            on_event=self._emit,
        )
        # Reserved with no await since the duplicate check so a concurrent
        # create for the same project sees it
        self._by_project[project_id] = sandbox
        self._by_id[sandbox.id] = sandbox
        self._emit(SandboxEventType.CREATING, sandbox, {"image": config.image})

        try:
            await self._provision(apis, sandbox)
        except asyncio.CancelledError:
            self._abandon(sandbox, previous)
            raise
        except Exception as e:
            sandbox._set_status(SandboxStatus.ERROR, error=str(e))
            await self._discard_pod(sandbox)
            self._abandon(sandbox, previous)
            raise

        logger.info(
            "Sandbox %s running for project %s (pod %s, warm=%s)",
            sandbox.id,
            project_id,
            sandbox.pod_name,
            sandbox.from_warm_pool,
        )
        return sandbox

    def _abandon(self, sandbox: Sandbox, previous: Sandbox | None) -> None:
        self._forget(sandbox)
        if previous is not None:
            self._by_project[sandbox.project_id] = previous

    async def _provision(self, apis: ClusterApis, sandbox: Sandbox) -> None:
        await self._prepare_namespace(apis)

        if self._warm_pool is not None and self._warm_pool.running:
            info = await self._warm_pool.claim(
                sandbox.config, project_id=sandbox.project_id, sandbox_id=sandbox.id
            )
            if info is not None:
                sandbox._bind_pod(info.pod_name, from_warm_pool=True)
                sandbox._emit(SandboxEventType.CREATED, pod_name=info.pod_name, warm=True)
                sandbox.touch()
                sandbox._set_status(SandboxStatus.RUNNING)
                return

        await self._create_cold(apis, sandbox)

    def _build_manifest(self, sandbox: Sandbox, pod_name: str) -> dict[str, Any]:
        config = sandbox.config
        labels = {
            LABEL_SANDBOX: "true",
            LABEL_SANDBOX_ID: sandbox.id,
            LABEL_PROJECT_ID: label_value(config.project_id),
            LABEL_MANAGED: "true",
        }
        return build_pod_manifest(
            name=pod_name,
            image=config.image,
            memory_mb=config.memory_mb,
            cpu_cores=config.cpu_cores,
            labels=labels,
            env=config.env,
            volume_mounts=config.volume_mounts,
            annotations={
                ANNOTATION_PROJECT_ID: config.project_id,
                ANNOTATION_CREATED_AT: sandbox.created_at.isoformat(),
            },
        )

    async def _create_cold(self, apis: ClusterApis, sandbox: Sandbox) -> None:
        namespace = self.config.namespace
        pod_name = make_pod_name(sandbox.project_id, sandbox.id)
        manifest = self._build_manifest(sandbox, pod_name)
        self._validator.validate_or_raise(manifest, pod_name=pod_name, namespace=namespace)

        try:
            await call_api(apis.core.create_namespaced_pod, namespace=namespace, body=manifest)
        except ApiException as e:
            self.audit.log(
                AuditEventType.POD_CREATION_FAILED,
                AuditSeverity.ERROR,
                pod_name=pod_name,
                namespace=namespace,
                sandbox_id=sandbox.id,
                project_id=sandbox.project_id,
                error=str(e),
            )
            raise self._pod_creation_error(e, sandbox, pod_name) from e

        sandbox._bind_pod(pod_name)
        self.audit.log(
            AuditEventType.POD_CREATED,
            pod_name=pod_name,
            namespace=namespace,
            sandbox_id=sandbox.id,
            project_id=sandbox.project_id,
        )
        sandbox._emit(SandboxEventType.CREATED, pod_name=pod_name, warm=False)
        sandbox._emit(SandboxEventType.STARTING, pod_name=pod_name)

        started = asyncio.get_running_loop().time()
        await wait_for_pod_running(
            apis.core,
            pod_name,
            namespace,
            timeout_seconds=self.config.pod_startup_timeout_seconds,
            poll_interval_seconds=self.config.poll_interval_seconds,
        )
        sandbox.touch()
        sandbox._set_status(
            SandboxStatus.RUNNING,
            startup_ms=(asyncio.get_running_loop().time() - started) * 1000,
        )

    def _pod_creation_error(
        self, e: ApiException, sandbox: Sandbox, pod_name: str
    ) -> KubeSandboxError:
        context = {
            "pod_name": pod_name,
            "namespace": self.config.namespace,
            "project_id": sandbox.project_id,
        }
        if is_conflict(e):
            return PodAlreadyExistsError(f"Pod {pod_name} already exists", context=context)

        text = f"{api_reason(e)} {getattr(e, 'body', '') or ''}".lower()
        if e.status == 403 and any(marker in text for marker in _QUOTA_MARKERS):
            return ResourceError(
                f"Insufficient resources to create pod {pod_name}: {api_reason(e)}",
                kind=ErrorKind.INSUFFICIENT_RESOURCES,
                context={
                    **context,
                    "memory_mb": sandbox.config.memory_mb,
                    "cpu_cores": sandbox.config.cpu_cores,
                },
            )
        return _translate_api_error(
            e,
            error_cls=PodError,
            kind=ErrorKind.POD_CREATION_FAILED,
            operation=f"Create pod {pod_name}",
            **context,
        )

    async def _discard_pod(self, sandbox: Sandbox) -> None:
        """Best-effort removal of a pod left behind by a failed create."""
        pod_name = sandbox.pod_name
        if pod_name is None:
            return
        if sandbox.from_warm_pool and self._warm_pool is not None:
            self._warm_pool.forget(pod_name)
        try:
            await call_api(
                sandbox._core.delete_namespaced_pod,
                name=pod_name,
                namespace=self.config.namespace,
                grace_period_seconds=0,
            )
        except ApiException as e:
            if not is_not_found(e):
                logger.warning("Failed to delete pod %s after failed create: %s", pod_name, e)
        except ClusterConnectionError as e:
            logger.warning("Failed to delete pod %s after failed create: %s", pod_name, e)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def cleanup(
        self,
        older_than: datetime | None = None,
        *,
        statuses: Iterable[SandboxStatus] = (SandboxStatus.STOPPED,),
    ) -> int:
        """Remove sandboxes whose last activity is before ``older_than``.

        With no cutoff every sandbox in ``statuses`` is removed. Sandboxes
        that are not yet stopped are stopped first; one that fails to stop is
        left in the registry in ``error``.

        Returns:
            Number of sandboxes removed
        """
        wanted = frozenset(statuses)
        removed = 0
        for sandbox in self.list():
            if sandbox.status not in wanted:
                continue
            if older_than is not None and not sandbox.get_last_activity() < older_than:
                continue
            if sandbox.status is not SandboxStatus.STOPPED:
                try:
                    await sandbox.stop()
                except PodDeletionError as e:
                    logger.warning("Cleanup could not stop sandbox %s: %s", sandbox.id, e)
                    continue
            self._forget(sandbox)
            removed += 1

        if removed:
            logger.info("Cleaned up %d sandbox(es)", removed)
        return removed

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> HealthCheckResult:
        """Report cluster reachability and namespace state. Never raises."""
        try:
            return await self._health_check()
        except Exception as e:
            logger.exception("Health check failed unexpectedly")
            return HealthCheckResult(
                healthy=False,
                message=f"Health check failed: {e}",
                details={"namespace": self.config.namespace},
            )

    async def _health_check(self) -> HealthCheckResult:
        namespace = self.config.namespace
        details: dict[str, Any] = {"namespace": namespace}
        try:
            apis = await self._get_apis()
        except KubeSandboxError as e:
            details["error"] = e.to_dict()
            return HealthCheckResult(healthy=False, message=str(e), details=details)

        if self._api_client is not None:
            details["cluster"] = self._resolver.cluster_info(self._api_client)

        try:
            await call_api(apis.core.list_namespace, limit=1)
        except (ApiException, ClusterConnectionError) as e:
            details["error"] = str(e)
            return HealthCheckResult(
                healthy=False, message=f"Cluster unreachable: {e}", details=details
            )

        try:
            version = await call_api(apis.version.get_code)
            details["server_version"] = getattr(version, "git_version", None)
        except (ApiException, ClusterConnectionError) as e:
            logger.debug("Could not read server version: %s", e)
            details["server_version"] = None

        try:
            await call_api(apis.core.read_namespace, name=namespace)
            details["namespace_exists"] = True
        except ApiException as e:
            if not is_not_found(e):
                details["error"] = str(e)
                return HealthCheckResult(
                    healthy=False,
                    message=f"Cannot read namespace {namespace}: {api_reason(e)}",
                    details=details,
                )
            details["namespace_exists"] = False

        if details["namespace_exists"]:
            pods = await call_api(
                apis.core.list_namespaced_pod,
                namespace=namespace,
                label_selector=f"{LABEL_SANDBOX}=true",
            )
            items = list(getattr(pods, "items", None) or [])
            details["pods"] = {
                "total": len(items),
                "running": sum(1 for p in items if getattr(p.status, "phase", None) == "Running"),
            }
            return HealthCheckResult(healthy=True, message="Cluster reachable", details=details)

        if self.config.create_namespace:
            return HealthCheckResult(
                healthy=True,
                message=f"Cluster reachable; namespace {namespace} will be created on first use",
                details=details,
            )
        return HealthCheckResult(
            healthy=False,
            message=f"Namespace {namespace} does not exist",
            details=details,
        )

    # ------------------------------------------------------------------
    # Cluster view
    # ------------------------------------------------------------------

    async def list_cluster_sandboxes(self) -> list[SandboxPodInfo]:
        """Every sandbox pod in the namespace, including other processes' and warm pods."""
        apis = await self._get_apis()
        namespace = self.config.namespace
        try:
            pods = await call_api(
                apis.core.list_namespaced_pod,
                namespace=namespace,
                label_selector=f"{LABEL_SANDBOX}=true",
            )
        except ApiException as e:
            raise _translate_api_error(
                e,
                error_cls=PodError,
                kind=ErrorKind.API_ERROR,
                operation="List sandbox pods",
                namespace=namespace,
            ) from e

        infos = []
        for pod in getattr(pods, "items", None) or []:
            metadata = pod.metadata
            labels = metadata.labels or {}
            annotations = metadata.annotations or {}
            infos.append(
                SandboxPodInfo(
                    pod_name=metadata.name,
                    phase=getattr(pod.status, "phase", None),
                    sandbox_id=labels.get(LABEL_SANDBOX_ID),
                    project_id=annotations.get(ANNOTATION_PROJECT_ID)
                    or labels.get(LABEL_PROJECT_ID),
                    warm_pool_state=labels.get(LABEL_WARM_POOL_STATE),
                    created_at=metadata.creation_timestamp,
                )
            )
        return sorted(infos, key=lambda i: i.pod_name)

    async def attach(self, pod_name: str) -> Sandbox:
        """Wrap an existing sandbox pod in a handle.

        The handle is not added to the registry, so ``close`` and ``cleanup``
        never stop it.

        Raises:
            PodNotFoundError: If the pod does not exist or is not a sandbox pod
        """
        apis = await self._get_apis()
        namespace = self.config.namespace
        try:
            pod = await call_api(apis.core.read_namespaced_pod, name=pod_name, namespace=namespace)
        except ApiException as e:
            if is_not_found(e):
                raise PodNotFoundError(
                    f"Pod {pod_name} not found in {namespace}",
                    context={"pod_name": pod_name, "namespace": namespace},
                ) from e
            raise _translate_api_error(
                e,
                error_cls=PodError,
                kind=ErrorKind.API_ERROR,
                operation=f"Read pod {pod_name}",
                pod_name=pod_name,
                namespace=namespace,
            ) from e

        labels = pod.metadata.labels or {}
        if labels.get(LABEL_SANDBOX) != "true":
            raise PodNotFoundError(
                f"Pod {pod_name} is not a sandbox pod",
                context={"pod_name": pod_name, "namespace": namespace},
            )

        annotations = pod.metadata.annotations or {}
        image = next(
            (c.image for c in pod.spec.containers or [] if c.name == CONTAINER_NAME), None
        )
        config = SandboxConfig(
            project_id=annotations.get(ANNOTATION_PROJECT_ID)
            or labels.get(LABEL_PROJECT_ID)
            or pod_name,
            **({"image": image} if image else {}),
        )
        sandbox = Sandbox(
            sandbox_id=labels.get(LABEL_SANDBOX_ID) or pod_name,
            config=config,
            namespace=namespace,
            core=apis.core,
            pod_name=pod_name,
            exec_timeout_seconds=self.config.exec_timeout_seconds,
            stop_grace_period_seconds=self.config.stop_grace_period_seconds,
            audit=self.audit,
            on_event=self._emit,
        )
        readiness = classify_pod(pod)
        if readiness.state == "ready":
            sandbox._status = SandboxStatus.RUNNING
        elif readiness.state != "pending":
            sandbox._status = SandboxStatus.ERROR
        return sandbox

    # ------------------------------------------------------------------
    # Warm pool and shutdown
    # ------------------------------------------------------------------

    @property
    def warm_pool(self) -> WarmPoolController | None:
        return self._warm_pool

    def warm_pool_metrics(self) -> WarmPoolMetrics | None:
        return self._warm_pool.metrics() if self._warm_pool is not None else None

    async def start(self) -> None:
        """Start the warm pool if it is enabled. Safe to call more than once."""
        if not self.config.warm_pool_enabled or self._warm_pool is not None:
            return
        apis = await self._get_apis()
        await self._prepare_namespace(apis)
        pool = WarmPoolController(
            apis.core,
            self.config.namespace,
            self.config.warm_pool,
            audit=self.audit,
            validator=self._validator,
            startup_timeout_seconds=self.config.pod_startup_timeout_seconds,
        )
        await pool.start()
        self._warm_pool = pool

    async def close(self) -> None:
        """Stop the warm pool and every non-terminal sandbox concurrently.

        Raises:
            KubeSandboxError: If one or more sandboxes failed to stop
        """
        if self._closed:
            return
        self._closed = True

        if self._warm_pool is not None:
            await self._warm_pool.stop()

        sandboxes = [s for s in self._by_id.values() if not s.is_terminal]
        results = await asyncio.gather(
            *[sandbox.stop() for sandbox in sandboxes],
            return_exceptions=True,
        )

        errors: list[Exception] = []
        for sandbox, result in zip(sandboxes, results, strict=True):
            if isinstance(result, Exception):
                logger.warning("Failed to stop sandbox %s: %s", sandbox.id, result, exc_info=result)
                errors.append(result)

        if self._api_client is not None:
            self._api_client.close()

        if errors:
            raise KubeSandboxError(
                f"Failed to stop {len(errors)} sandbox(es). Some pods may still be running.",
                kind=ErrorKind.POD_DELETION_FAILED,
                context={"failed": len(errors)},
            ) from ExceptionGroup("Sandbox stop failures", errors)
