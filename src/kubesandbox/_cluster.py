# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Thin async layer over the synchronous kubernetes client."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from kubesandbox.exceptions import (
    ClusterConnectionError,
    ErrorKind,
    KubeSandboxError,
    NamespaceError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ClusterApis:
    """The kubernetes API groups used by the orchestrator.

    Any object exposing the same methods can stand in for a real API class.
    """

    core: Any
    networking: Any
    rbac: Any
    version: Any

    @classmethod
    def from_api_client(cls, api_client: client.ApiClient) -> ClusterApis:
        return cls(
            core=client.CoreV1Api(api_client),
            networking=client.NetworkingV1Api(api_client),
            rbac=client.RbacAuthorizationV1Api(api_client),
            version=client.VersionApi(api_client),
        )


async def call_api(fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    """Run a blocking kubernetes client call in a worker thread.

    Transport failures become CLUSTER_UNREACHABLE. ApiException propagates
    for the caller to translate with resource context.
    """
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except urllib3.exceptions.HTTPError as e:
        raise ClusterConnectionError(
            f"Cluster unreachable: {e}",
            kind=ErrorKind.CLUSTER_UNREACHABLE,
        ) from e


def api_reason(e: ApiException) -> str:
    """Best-effort machine reason (e.g. ``AlreadyExists``) from an ApiException."""
    body = getattr(e, "body", None)
    if body:
        try:
            parsed = json.loads(body)
        except (TypeError, ValueError):
            parsed = None
        if isinstance(parsed, dict) and parsed.get("reason"):
            return str(parsed["reason"])
    return str(getattr(e, "reason", "") or "")


def is_not_found(e: ApiException) -> bool:
    return getattr(e, "status", None) == 404


def is_conflict(e: ApiException) -> bool:
    return getattr(e, "status", None) == 409 or api_reason(e) == "AlreadyExists"


def _translate_api_error(
    e: ApiException,
    *,
    error_cls: type[KubeSandboxError],
    kind: ErrorKind,
    operation: str,
    **context: Any,
) -> KubeSandboxError:
    """Translate an ApiException to a kubesandbox exception.

    Args:
        e: The ApiException to translate
        error_cls: Exception class for the failing operation
        kind: Error kind for the failing operation
        operation: Description of the operation that failed
        context: Resource names and limits attached to the error

    Returns:
        An appropriate kubesandbox exception
    """
    status = getattr(e, "status", None)
    reason = api_reason(e) or str(e)
    context = {**context, "status": status, "reason": reason}

    if status in (401, 403) and "namespace" in context:
        return NamespaceError(
            f"{operation} denied in namespace {context['namespace']}: {reason}",
            kind=ErrorKind.NAMESPACE_ACCESS_DENIED,
            context=context,
        )
    return error_cls(f"{operation} failed: {reason}", kind=kind, context=context)


_serializer: client.ApiClient | None = None


def to_plain(obj: Any) -> Any:
    """Convert kubernetes model objects to camelCase JSON-shaped dicts."""
    global _serializer
    if _serializer is None:
        _serializer = client.ApiClient()
    return _serializer.sanitize_for_serialization(obj)
