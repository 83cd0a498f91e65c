# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from kubesandbox._defaults import ProviderConfig
from kubesandbox._provider import SandboxProvider

T = TypeVar("T")


def build_provider_config(
    *,
    namespace: str | None = None,
    kubeconfig: str | None = None,
    context: str | None = None,
) -> ProviderConfig:
    """Environment-derived config with command-line flags taking precedence."""
    config = ProviderConfig.from_env()
    overrides: dict[str, Any] = {}
    if namespace:
        overrides["namespace"] = namespace
    if kubeconfig:
        overrides["kubeconfig_path"] = kubeconfig
    if context:
        overrides["context"] = context
    # The CLI only inspects; it never provisions a warm pool of its own
    overrides["warm_pool_enabled"] = False
    return config.with_overrides(**overrides)


def run_with_provider(
    config: ProviderConfig, operation: Callable[[SandboxProvider], Awaitable[T]]
) -> T:
    """Run ``operation`` against a short-lived provider and close it afterwards."""

    async def _main() -> T:
        provider = SandboxProvider(config)
        try:
            return await operation(provider)
        finally:
            await provider.close()

    return asyncio.run(_main())
