# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Deny-by-default NetworkPolicies with an egress allow-list."""

from __future__ import annotations

import ipaddress
import logging
from typing import TYPE_CHECKING, Any, Literal

from kubernetes.client.rest import ApiException

from kubesandbox._audit import AuditEventType, AuditSeverity
from kubesandbox._cluster import _translate_api_error, call_api, is_conflict, is_not_found, to_plain
from kubesandbox._defaults import (
    LABEL_MANAGED,
    LABEL_SANDBOX,
    LABEL_SANDBOX_ID,
    NetworkPolicyConfig,
)
from kubesandbox.exceptions import ErrorKind, NetworkPolicyError

if TYPE_CHECKING:
    from kubesandbox._audit import AuditLogger

logger = logging.getLogger(__name__)

DEFAULT_DENY_POLICY_NAME = "sandbox-default-deny"
EGRESS_ALLOW_POLICY_NAME = "sandbox-egress-allow"

PRIVATE_CIDRS: tuple[str, ...] = (
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "169.254.0.0/16",
    "127.0.0.0/8",
)

ApplyAction = Literal["created", "updated", "unchanged"]


def parse_egress_hosts(hosts: tuple[str, ...] | list[str]) -> list[str]:
    """Normalize allowed hosts to CIDR strings.

    Bare IPv4 addresses become ``/32`` blocks. Hostnames cannot be expressed
    in a NetworkPolicy and are skipped with a warning.
    """
    cidrs: list[str] = []
    for host in hosts:
        try:
            network = ipaddress.ip_network(host.strip(), strict=False)
        except ValueError:
            logger.warning("Skipping egress host %r: only IPs and CIDRs are supported", host)
            continue
        if network.version != 4:
            logger.warning("Skipping egress host %r: only IPv4 is supported", host)
            continue
        cidrs.append(str(network))
    return sorted(set(cidrs))


def _ports(protocols: tuple[str, ...], port: int) -> list[dict[str, Any]]:
    return [{"protocol": proto, "port": port} for proto in protocols]


def _public_internet() -> dict[str, Any]:
    return {"ipBlock": {"cidr": "0.0.0.0/0", "except": list(PRIVATE_CIDRS)}}


def build_egress_rules(config: NetworkPolicyConfig) -> list[dict[str, Any]]:
    """Egress rules for the allow-list policy, in a stable order."""
    rules: list[dict[str, Any]] = []
    if config.allow_dns:
        rules.append(
            {
                "to": [
                    {
                        "namespaceSelector": {
                            "matchLabels": {"kubernetes.io/metadata.name": "kube-system"}
                        },
                        "podSelector": {"matchLabels": {"k8s-app": "kube-dns"}},
                    }
                ],
                "ports": _ports(("UDP", "TCP"), 53),
            }
        )
    if config.allow_https:
        rules.append({"to": [_public_internet()], "ports": _ports(("TCP",), 443)})
    if config.allow_http:
        rules.append({"to": [_public_internet()], "ports": _ports(("TCP",), 80)})
    if config.allow_ssh:
        rules.append({"to": [_public_internet()], "ports": _ports(("TCP",), 22)})

    cidrs = parse_egress_hosts(config.allowed_egress_hosts)
    if cidrs:
        rules.append(
            {
                "to": [{"ipBlock": {"cidr": cidr}} for cidr in cidrs],
                "ports": _ports(("TCP",), 443) + _ports(("TCP",), 80),
            }
        )
    return rules


def _policy(
    name: str, spec: dict[str, Any], labels: dict[str, str] | None = None
) -> dict[str, Any]:
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {"name": name, "labels": {LABEL_MANAGED: "true", **(labels or {})}},
        "spec": spec,
    }


def build_namespace_policies(config: NetworkPolicyConfig) -> list[dict[str, Any]]:
    """The two per-namespace policies: deny-all, then the egress allow-list."""
    selector = {"matchLabels": {LABEL_SANDBOX: "true"}}
    deny_all = _policy(
        DEFAULT_DENY_POLICY_NAME,
        {"podSelector": selector, "policyTypes": ["Ingress", "Egress"]},
    )
    allow = _policy(
        EGRESS_ALLOW_POLICY_NAME,
        {"podSelector": selector, "policyTypes": ["Egress"], "egress": build_egress_rules(config)},
    )
    return [deny_all, allow]


def _normalize(value: Any) -> Any:
    """Drop None and empty containers so server-side defaults compare equal."""
    if isinstance(value, dict):
        cleaned = {k: _normalize(v) for k, v in value.items()}
        return {k: v for k, v in cleaned.items() if v not in (None, [], {})}
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    return value


class NetworkPolicyManager:
    """Idempotently applies sandbox NetworkPolicies to a namespace.

    Example:
        ```python
        manager = NetworkPolicyManager(apis.networking, NetworkPolicyConfig(
            allowed_egress_hosts=("203.0.113.10",),
        ))
        actions = await manager.apply("agentpane-sandboxes")
        ```
    """

    def __init__(
        self,
        api: Any,
        config: NetworkPolicyConfig | None = None,
        *,
        audit: AuditLogger | None = None,
    ) -> None:
        self._api = api
        self.config = config or NetworkPolicyConfig()
        self._audit = audit

    async def apply(self, namespace: str) -> dict[str, ApplyAction]:
        """Ensure both namespace policies exist and match the config.

        Existing policies are compared by name and replaced on drift.

        Returns:
            Policy name to the action taken

        Raises:
            NetworkPolicyError: With the failing policy name in context
        """
        actions: dict[str, ApplyAction] = {}
        for policy in build_namespace_policies(self.config):
            actions[policy["metadata"]["name"]] = await self._apply_one(namespace, policy)
        return actions

    async def _apply_one(self, namespace: str, policy: dict[str, Any]) -> ApplyAction:
        name = policy["metadata"]["name"]
        try:
            existing = await call_api(
                self._api.read_namespaced_network_policy, name=name, namespace=namespace
            )
        except ApiException as e:
            if not is_not_found(e):
                raise self._error(e, ErrorKind.NETWORK_POLICY_UPDATE_FAILED, name, namespace) from e
            existing = None

        if existing is None:
            try:
                await call_api(
                    self._api.create_namespaced_network_policy, namespace=namespace, body=policy
                )
            except ApiException as e:
                if not is_conflict(e):
                    raise self._error(
                        e, ErrorKind.NETWORK_POLICY_CREATION_FAILED, name, namespace
                    ) from e
                # Created concurrently; converge with a replace
                await self._replace(namespace, policy)
                return "updated"
            logger.info("Created network policy %s in %s", name, namespace)
            self._log(AuditEventType.NETWORK_POLICY_CREATED, name, namespace)
            return "created"

        if _normalize(to_plain(existing.spec)) == _normalize(policy["spec"]):
            logger.debug("Network policy %s in %s is up to date", name, namespace)
            return "unchanged"

        logger.warning("Network policy %s in %s drifted; replacing", name, namespace)
        await self._replace(namespace, policy)
        return "updated"

    async def _replace(self, namespace: str, policy: dict[str, Any]) -> None:
        name = policy["metadata"]["name"]
        try:
            await call_api(
                self._api.replace_namespaced_network_policy,
                name=name,
                namespace=namespace,
                body=policy,
            )
        except ApiException as e:
            raise self._error(e, ErrorKind.NETWORK_POLICY_UPDATE_FAILED, name, namespace) from e
        self._log(AuditEventType.NETWORK_POLICY_UPDATED, name, namespace)

    async def delete(self, namespace: str, name: str) -> bool:
        """Delete a policy. A missing policy is not an error.

        Returns:
            True if a policy was deleted
        """
        try:
            await call_api(
                self._api.delete_namespaced_network_policy, name=name, namespace=namespace
            )
        except ApiException as e:
            if is_not_found(e):
                return False
            raise self._error(e, ErrorKind.NETWORK_POLICY_DELETION_FAILED, name, namespace) from e
        self._log(AuditEventType.NETWORK_POLICY_DELETED, name, namespace)
        return True

    async def remove(self, namespace: str) -> None:
        """Delete both namespace policies."""
        for name in (EGRESS_ALLOW_POLICY_NAME, DEFAULT_DENY_POLICY_NAME):
            await self.delete(namespace, name)

    async def create_sandbox_policy(self, namespace: str, sandbox_id: str) -> str:
        """Apply an egress allow-list scoped to a single sandbox's pod.

        Returns:
            The policy name (``sandbox-{id}-policy``)
        """
        name = f"sandbox-{sandbox_id}-policy"
        policy = _policy(
            name,
            {
                "podSelector": {"matchLabels": {LABEL_SANDBOX_ID: sandbox_id}},
                "policyTypes": ["Ingress", "Egress"],
                "egress": build_egress_rules(self.config),
            },
            labels={LABEL_SANDBOX_ID: sandbox_id},
        )
        await self._apply_one(namespace, policy)
        return name

    async def delete_sandbox_policy(self, namespace: str, sandbox_id: str) -> bool:
        return await self.delete(namespace, f"sandbox-{sandbox_id}-policy")

    def _error(
        self, e: ApiException, kind: ErrorKind, name: str, namespace: str
    ) -> NetworkPolicyError:
        self._log(
            AuditEventType.NETWORK_POLICY_FAILED,
            name,
            namespace,
            severity=AuditSeverity.ERROR,
            error=str(e),
        )
        err = _translate_api_error(
            e,
            error_cls=NetworkPolicyError,
            kind=kind,
            operation=f"Network policy {name}",
            policy_name=name,
        )
        err.context["namespace"] = namespace
        return err  # type: ignore[return-value]

    def _log(
        self,
        event_type: AuditEventType,
        name: str,
        namespace: str,
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
                detail={"policy_name": name},
            )
