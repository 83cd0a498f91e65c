# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""kubesandbox health: check cluster reachability and namespace state."""

from __future__ import annotations

import json
import sys

import click

from kubesandbox._defaults import ProviderConfig
from kubesandbox.cli._context import run_with_provider


@click.command("health")
@click.option(
    "--output",
    "-o",
    "output_format",
    default="text",
    type=click.Choice(["text", "json"], case_sensitive=False),
    help="Output format.",
)
@click.pass_obj
def health(config: ProviderConfig, output_format: str) -> None:
    """Check cluster health.

    Exits non-zero when the cluster is unreachable or the namespace is unusable.
    """
    result = run_with_provider(config, lambda provider: provider.health_check())

    if output_format == "json":
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        click.echo(f"{'healthy' if result.healthy else 'UNHEALTHY'}: {result.message}")
        details = result.details
        cluster = details.get("cluster") or {}
        if cluster:
            name = cluster.get("name") or "-"
            click.echo(f"  cluster:   {name} ({cluster.get('server') or '-'})")
            click.echo(f"  context:   {cluster.get('context') or '-'}")
        click.echo(f"  namespace: {details.get('namespace')}", nl=False)
        if "namespace_exists" in details:
            click.echo("" if details["namespace_exists"] else " (missing)")
        else:
            click.echo()
        if details.get("server_version"):
            click.echo(f"  version:   {details['server_version']}")
        pods = details.get("pods")
        if pods:
            click.echo(f"  pods:      {pods['running']} running / {pods['total']} total")

    if not result.healthy:
        sys.exit(1)
