# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Environment variable utilities."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from kubesandbox._defaults import NetworkPolicyConfig, ProviderConfig, WarmPoolConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "KUBESANDBOX_"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def load_dotenv(filepath: str = ".env") -> dict[str, str]:
    """Load environment variables from a .env file.

    Args:
        filepath: Path to .env file (default: ".env")

    Returns:
        Dictionary of environment variables from the file. Keys without a
        value are dropped.

    Example:
        # Sandbox env from a file
        config = SandboxConfig(project_id="p1", env=load_dotenv(".env.sandbox"))

        # Provider settings from a file
        config = provider_config_from_env(load_dotenv(".env"))
    """
    from dotenv import dotenv_values

    return {k: v for k, v in dotenv_values(filepath).items() if v is not None}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got {raw!r}")


def _parse_hosts(raw: str) -> tuple[str, ...]:
    return tuple(h.strip() for h in raw.split(",") if h.strip())


# env suffix -> (ProviderConfig field, parser)
_PROVIDER_FIELDS: dict[str, tuple[str, Any]] = {
    "NAMESPACE": ("namespace", str),
    "CREATE_NAMESPACE": ("create_namespace", _parse_bool),
    "KUBECONFIG": ("kubeconfig_path", str),
    "CONTEXT": ("context", str),
    "POD_STARTUP_TIMEOUT_SECONDS": ("pod_startup_timeout_seconds", float),
    "EXEC_TIMEOUT_SECONDS": ("exec_timeout_seconds", float),
    "NETWORK_POLICY_ENABLED": ("network_policy_enabled", _parse_bool),
    "RBAC_ENABLED": ("rbac_enabled", _parse_bool),
    "AUDIT_LOGGING_ENABLED": ("audit_logging_enabled", _parse_bool),
    "WARM_POOL_ENABLED": ("warm_pool_enabled", _parse_bool),
}

_WARM_POOL_FIELDS: dict[str, tuple[str, Any]] = {
    "WARM_POOL_MIN_SIZE": ("min_size", int),
    "WARM_POOL_MAX_SIZE": ("max_size", int),
    "WARM_POOL_AUTO_SCALING": ("auto_scaling", _parse_bool),
}


def _collect(
    environ: Mapping[str, str], fields: dict[str, tuple[str, Any]]
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for suffix, (attr, parser) in fields.items():
        name = ENV_PREFIX + suffix
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        if parser is _parse_bool:
            overrides[attr] = _parse_bool(name, raw)
        else:
            try:
                overrides[attr] = parser(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {name}: {raw!r}") from e
    return overrides


def provider_config_from_env(
    environ: Mapping[str, str] | None = None,
    base: ProviderConfig | None = None,
) -> ProviderConfig:
    """Build a ProviderConfig from ``KUBESANDBOX_*`` environment variables.

    Unset variables keep the value from ``base`` (or the defaults).
    ``KUBESANDBOX_ALLOWED_EGRESS_HOSTS`` is a comma-separated list.

    Raises:
        ValueError: If a variable cannot be parsed
    """
    env = os.environ if environ is None else environ
    config = base or ProviderConfig()

    overrides = _collect(env, _PROVIDER_FIELDS)

    hosts = env.get(ENV_PREFIX + "ALLOWED_EGRESS_HOSTS")
    if hosts:
        network_policy: NetworkPolicyConfig = config.network_policy.with_overrides(
            allowed_egress_hosts=_parse_hosts(hosts)
        )
        overrides["network_policy"] = network_policy

    pool_overrides = _collect(env, _WARM_POOL_FIELDS)
    if pool_overrides:
        warm_pool: WarmPoolConfig = config.warm_pool.with_overrides(**pool_overrides)
        overrides["warm_pool"] = warm_pool

    if overrides:
        logger.debug("Provider config overrides from environment: %s", sorted(overrides))
    return config.with_overrides(**overrides)
