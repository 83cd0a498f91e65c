# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""kubesandbox pool: warm pool snapshot."""

from __future__ import annotations

import json
from collections import Counter

import click

from kubesandbox._defaults import ProviderConfig
from kubesandbox.cli._context import run_with_provider


@click.command("pool")
@click.option(
    "--output",
    "-o",
    "output_format",
    default="text",
    type=click.Choice(["text", "json"], case_sensitive=False),
    help="Output format.",
)
@click.pass_obj
def pool(config: ProviderConfig, output_format: str) -> None:
    """Show warm pool pods by state, read from pod labels in the cluster."""
    pods = run_with_provider(config, lambda provider: provider.list_cluster_sandboxes())
    states = Counter(p.warm_pool_state for p in pods if p.warm_pool_state is not None)
    phases = Counter(p.phase or "Unknown" for p in pods if p.warm_pool_state == "warm")

    snapshot = {
        "namespace": config.namespace,
        "pool_id": config.warm_pool.pool_id,
        "min_size": config.warm_pool.min_size,
        "max_size": config.warm_pool.max_size,
        "states": dict(sorted(states.items())),
        "warm_phases": dict(sorted(phases.items())),
    }

    if output_format == "json":
        click.echo(json.dumps(snapshot, indent=2))
        return

    click.echo(
        f"Warm pool '{snapshot['pool_id']}' in {snapshot['namespace']} "
        f"(min {snapshot['min_size']}, max {snapshot['max_size']})"
    )
    if not states:
        click.echo("  no warm pool pods")
        return
    for state, count in snapshot["states"].items():
        click.echo(f"  {state:<10} {count}")
    for phase, count in snapshot["warm_phases"].items():
        click.echo(f"    warm/{phase:<8} {count}")
