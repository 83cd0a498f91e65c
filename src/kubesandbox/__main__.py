# SPDX-FileCopyrightText: 2025 CoreWeave, Inc.
# SPDX-License-Identifier: Apache-2.0
# SPDX-PackageName: kubesandbox

"""Entry point for `python -m kubesandbox` and `kubesandbox` console script."""

from __future__ import annotations

import sys


def main() -> None:
    """Run the kubesandbox CLI."""
    try:
        from kubesandbox.cli import cli
    except ImportError as e:
        if getattr(e, "name", None) in ("kubesandbox.cli", "click"):
            print(
                "kubesandbox CLI requires the 'cli' extra.\n"
                "Install it with: pip install kubesandbox[cli]",
                file=sys.stderr,
            )
            sys.exit(1)
        raise
    cli()


if __name__ == "__main__":
    main()
