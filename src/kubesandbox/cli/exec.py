# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""kubesandbox exec: run a command in a sandbox pod."""

from __future__ import annotations

import sys

import click

from kubesandbox._defaults import ProviderConfig
from kubesandbox._provider import SandboxProvider
from kubesandbox._types import ExecResult
from kubesandbox.cli._context import run_with_provider


@click.command(context_settings={"ignore_unknown_options": True})
@click.argument("pod_name")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option(
    "--timeout",
    "-t",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Timeout in seconds.",
)
@click.pass_obj
def exec_command(
    config: ProviderConfig,
    pod_name: str,
    command: tuple[str, ...],
    timeout_seconds: float | None,
) -> None:
    """Execute a command in a sandbox pod.

    POD_NAME is the sandbox pod to run the command in. The command runs as
    the unprivileged sandbox user.

    Examples:

        kubesandbox exec agentpane-proj-1-3f2a9c1d git status

        kubesandbox exec agentpane-proj-1-3f2a9c1d -t 30 python -c "print('hello')"
    """

    async def _exec(provider: SandboxProvider) -> ExecResult:
        sandbox = await provider.attach(pod_name)
        return await sandbox.exec(list(command), timeout_seconds=timeout_seconds)

    result = run_with_provider(config, _exec)
    if result.stdout:
        click.echo(result.stdout)
    if result.stderr:
        click.echo(result.stderr, err=True)
    sys.exit(result.returncode)
