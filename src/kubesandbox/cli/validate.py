# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""kubesandbox validate: check a pod spec against a Pod Security Standards profile."""

from __future__ import annotations

import sys
from typing import Any

import click
import yaml

from kubesandbox._security import ensure_restricted_pod_security, validate_pod_security
from kubesandbox._types import PssProfile


def _load_manifest(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise click.ClickException(f"{path} is not valid YAML or JSON: {e}") from None
    if not isinstance(document, dict):
        raise click.ClickException(f"{path} does not contain a pod manifest")
    return document


@click.command("validate")
@click.argument("manifest_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--profile",
    "-p",
    default=PssProfile.RESTRICTED.value,
    type=click.Choice([p.value for p in PssProfile], case_sensitive=False),
    help="Profile to validate against.",
)
@click.option(
    "--fix",
    is_flag=True,
    help="Print the manifest hardened for the restricted profile instead of validating.",
)
def validate(manifest_path: str, profile: str, fix: bool) -> None:
    """Validate a pod manifest (YAML or JSON) against a security profile.

    Exits 1 when the manifest has violations.
    """
    manifest = _load_manifest(manifest_path)

    if fix:
        click.echo(yaml.safe_dump(ensure_restricted_pod_security(manifest), sort_keys=False))
        return

    result = validate_pod_security(manifest, profile)
    for warning in result.warnings:
        click.echo(f"warning: {warning}", err=True)

    if result.valid:
        click.echo(f"{manifest_path}: passes the {result.profile} profile")
        return

    click.echo(
        f"{manifest_path}: {len(result.violations)} violation(s) of the {result.profile} profile"
    )
    for violation in result.violations:
        click.echo(f"  - {violation}")
    sys.exit(1)
