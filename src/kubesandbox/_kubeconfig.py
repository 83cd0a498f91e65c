# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Cluster credential resolution.

Kubeconfig discovery is tiered; the first tier that yields a file wins:
1. Explicit path passed to the resolver
2. K8S_KUBECONFIG env var
3. KUBECONFIG env var (colon-separated, first existing entry)
4. ~/.kube/config
5. In-cluster service account (KUBERNETES_SERVICE_HOST + mounted token)

An explicit path or K8S_KUBECONFIG that points at a missing file is an
error rather than a fall-through.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml
from kubernetes import client, config

from kubesandbox.exceptions import ClusterConnectionError, ErrorKind

logger = logging.getLogger(__name__)

IN_CLUSTER_TOKEN_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")

ConfigSource = Literal["explicit", "k8s_kubeconfig", "kubeconfig", "default", "in_cluster"]


@dataclass(frozen=True)
class ResolvedClusterConfig:
    """Where credentials came from and which context they select."""

    source: ConfigSource
    kubeconfig_path: str | None = None
    context: str | None = None
    cluster_name: str | None = None

    @property
    def in_cluster(self) -> bool:
        return self.source == "in_cluster"


class _KubeconfigTier:
    """A discovery tier: returns a kubeconfig path, or None to fall through."""

    def __init__(
        self,
        source: ConfigSource,
        find: Callable[[ClusterConfigResolver], str | None],
    ) -> None:
        self.source = source
        self.find = find


def _not_found(path: str | None = None) -> ClusterConnectionError:
    message = f"Kubeconfig not found at {path}" if path else "No kubeconfig found"
    return ClusterConnectionError(
        message,
        kind=ErrorKind.KUBECONFIG_NOT_FOUND,
        context={"path": path} if path else {},
    )


def _invalid(reason: str, path: str | None = None) -> ClusterConnectionError:
    return ClusterConnectionError(
        f"Invalid kubeconfig: {reason}",
        kind=ErrorKind.KUBECONFIG_INVALID,
        context={"path": path, "reason": reason},
    )


def _find_explicit(resolver: ClusterConfigResolver) -> str | None:
    path = resolver.kubeconfig_path
    if not path:
        return None
    if not Path(path).expanduser().exists():
        raise _not_found(path)
    return str(Path(path).expanduser())


def _find_k8s_kubeconfig(resolver: ClusterConfigResolver) -> str | None:
    path = resolver.environ.get("K8S_KUBECONFIG")
    if not path:
        return None
    if not Path(path).expanduser().exists():
        raise _not_found(path)
    return str(Path(path).expanduser())


def _find_kubeconfig_env(resolver: ClusterConfigResolver) -> str | None:
    raw = resolver.environ.get("KUBECONFIG")
    if not raw:
        return None
    for entry in raw.split(os.pathsep):
        if entry and Path(entry).expanduser().exists():
            return str(Path(entry).expanduser())
    logger.debug("No existing file among KUBECONFIG entries: %s", raw)
    return None


def _find_default(resolver: ClusterConfigResolver) -> str | None:
    path = resolver.home / ".kube" / "config"
    return str(path) if path.exists() else None


_KUBECONFIG_TIERS = [
    _KubeconfigTier("explicit", _find_explicit),
    _KubeconfigTier("k8s_kubeconfig", _find_k8s_kubeconfig),
    _KubeconfigTier("kubeconfig", _find_kubeconfig_env),
    _KubeconfigTier("default", _find_default),
]


class ClusterConfigResolver:
    """Resolves cluster credentials and the active context.

    Resolution is deterministic for a given environment and filesystem.

    Example:
        ```python
        resolver = ClusterConfigResolver(context="staging")
        resolved = resolver.resolve()
        api_client = resolver.load_api_client()
        ```
    """

    def __init__(
        self,
        kubeconfig_path: str | None = None,
        context: str | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        home: Path | None = None,
    ) -> None:
        self.kubeconfig_path = kubeconfig_path
        self.context = context
        self.environ: Mapping[str, str] = os.environ if environ is None else environ
        self.home = home or Path.home()
        self._resolved: ResolvedClusterConfig | None = None

    def __repr__(self) -> str:
        return f"<ClusterConfigResolver path={self.kubeconfig_path!r} context={self.context!r}>"

    def _in_cluster_available(self) -> bool:
        return bool(self.environ.get("KUBERNETES_SERVICE_HOST")) and IN_CLUSTER_TOKEN_PATH.exists()

    def discover(self) -> tuple[ConfigSource, str | None]:
        """Return the winning tier and its kubeconfig path (None for in-cluster).

        Raises:
            ClusterConnectionError: KUBECONFIG_NOT_FOUND when no tier applies
        """
        for tier in _KUBECONFIG_TIERS:
            path = tier.find(self)
            if path is not None:
                logger.debug("Using kubeconfig from %s tier: %s", tier.source, path)
                return tier.source, path

        if self._in_cluster_available():
            logger.debug("Using in-cluster service account credentials")
            return "in_cluster", None

        raise _not_found()

    def resolve(self) -> ResolvedClusterConfig:
        """Discover credentials and resolve the context to use.

        Raises:
            ClusterConnectionError: KUBECONFIG_NOT_FOUND, KUBECONFIG_INVALID or
                CONTEXT_NOT_FOUND
        """
        if self._resolved is not None:
            return self._resolved

        source, path = self.discover()
        if path is None:
            resolved = ResolvedClusterConfig(source=source, cluster_name="in-cluster")
        else:
            context_name, cluster_name = self._resolve_context(path)
            resolved = ResolvedClusterConfig(
                source=source,
                kubeconfig_path=path,
                context=context_name,
                cluster_name=cluster_name,
            )
        self._resolved = resolved
        return resolved

    def _resolve_context(self, path: str) -> tuple[str, str | None]:
        try:
            contexts, active = config.list_kube_config_contexts(config_file=path)
        except (config.ConfigException, yaml.YAMLError) as e:
            raise _invalid(str(e), path) from e

        by_name: dict[str, dict[str, Any]] = {c["name"]: c for c in contexts or []}

        if self.context:
            selected = by_name.get(self.context)
            if selected is None:
                raise ClusterConnectionError(
                    f"Context '{self.context}' not found in kubeconfig",
                    kind=ErrorKind.CONTEXT_NOT_FOUND,
                    context={"context": self.context, "available": sorted(by_name)},
                )
        else:
            if not active:
                raise _invalid("No current context set in kubeconfig", path)
            selected = active

        cluster_name = (selected.get("context") or {}).get("cluster")
        return selected["name"], cluster_name

    def load_api_client(self) -> client.ApiClient:
        """Build a kubernetes ApiClient for the resolved credentials."""
        resolved = self.resolve()
        if resolved.in_cluster:
            configuration = client.Configuration()
            try:
                config.load_incluster_config(client_configuration=configuration)
            except config.ConfigException as e:
                raise ClusterConnectionError(
                    f"Failed to load in-cluster config: {e}",
                    kind=ErrorKind.KUBECONFIG_INVALID,
                ) from e
            return client.ApiClient(configuration)

        try:
            return config.new_client_from_config(
                config_file=resolved.kubeconfig_path, context=resolved.context
            )
        except config.ConfigException as e:
            raise _invalid(str(e), resolved.kubeconfig_path) from e

    def cluster_info(self, api_client: client.ApiClient | None = None) -> dict[str, Any]:
        """Cluster name, server and context for diagnostics."""
        resolved = self.resolve()
        server = api_client.configuration.host if api_client is not None else None
        return {
            "name": resolved.cluster_name,
            "server": server,
            "context": resolved.context,
            "source": resolved.source,
        }
