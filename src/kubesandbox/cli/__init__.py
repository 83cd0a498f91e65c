# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""kubesandbox CLI: inspect and operate sandbox pods from a terminal.

The functions in this package are intended to be called via the CLI,
not from Python code. No backwards compatibility guarantees are made
for Python calling patterns.
"""

from __future__ import annotations

import logging
from typing import Any

try:
    import click
except ModuleNotFoundError as e:
    if getattr(e, "name", None) == "click":
        raise ImportError(
            "kubesandbox CLI requires the 'cli' extra. "
            "Install it with: pip install kubesandbox[cli]",
            name="click",
        ) from e
    raise

from kubesandbox.cli._context import build_provider_config
from kubesandbox.cli.exec import exec_command
from kubesandbox.cli.health import health
from kubesandbox.cli.list import list_sandboxes
from kubesandbox.cli.pool import pool
from kubesandbox.cli.validate import validate
from kubesandbox.exceptions import KubeSandboxError


class _KubeSandboxCLI(click.Group):
    """Click group with top-level KubeSandboxError handling.

    Library errors (missing kubeconfig, pod not found, etc.) are printed as
    clean "Error: <message>" output instead of raw tracebacks.
    """

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except KubeSandboxError as exc:
            raise click.ClickException(f"[{exc.kind.value}] {exc.message}") from None


@click.group(cls=_KubeSandboxCLI)
@click.version_option(package_name="kubesandbox")
@click.option("--namespace", "-n", default=None, help="Sandbox namespace.")
@click.option("--kubeconfig", default=None, help="Path to a kubeconfig file.")
@click.option("--context", "kube_context", default=None, help="Kubeconfig context to use.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(
    ctx: click.Context,
    namespace: str | None,
    kubeconfig: str | None,
    kube_context: str | None,
    verbose: bool,
) -> None:
    """kubesandbox CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    ctx.obj = build_provider_config(
        namespace=namespace, kubeconfig=kubeconfig, context=kube_context
    )


cli.add_command(health, "health")
cli.add_command(list_sandboxes, "ls")
cli.add_command(exec_command, "exec")
cli.add_command(validate, "validate")
cli.add_command(pool, "pool")
