# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""kubesandbox ls: list sandbox pods."""

from __future__ import annotations

import json

import click

from kubesandbox._defaults import ProviderConfig
from kubesandbox.cli._context import run_with_provider


@click.command("ls")
@click.option("--project", "-p", "project_id", default=None, help="Filter by project ID.")
@click.option("--warm/--no-warm", default=True, help="Include unclaimed warm pool pods.")
@click.option(
    "--output",
    "-o",
    "output_format",
    default="table",
    type=click.Choice(["table", "json"], case_sensitive=False),
    help="Output format.",
)
@click.pass_obj
def list_sandboxes(
    config: ProviderConfig,
    project_id: str | None,
    warm: bool,
    output_format: str,
) -> None:
    """List sandbox pods in the namespace.

    Displays pod name, phase, project, sandbox ID and warm pool state.
    """
    pods = run_with_provider(config, lambda provider: provider.list_cluster_sandboxes())
    if project_id is not None:
        pods = [p for p in pods if p.project_id == project_id]
    if not warm:
        pods = [p for p in pods if p.sandbox_id is not None]

    if output_format == "json":
        click.echo(json.dumps([p.to_dict() for p in pods], indent=2))
        return

    if not pods:
        click.echo("No sandboxes found.")
        return

    click.echo(f"{'POD':<44} {'PHASE':<10} {'PROJECT':<22} {'SANDBOX ID':<38} {'POOL'}")
    click.echo(f"{'-' * 44} {'-' * 10} {'-' * 22} {'-' * 38} {'-' * 8}")

    for p in pods:
        phase = p.phase or "-"
        project = p.project_id or "-"
        sid = p.sandbox_id or "-"
        state = p.warm_pool_state or "-"
        click.echo(f"{p.pod_name:<44} {phase:<10} {project:<22} {sid:<38} {state}")
