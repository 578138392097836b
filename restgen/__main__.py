# File: restgen/__main__.py
"""
NexaFlow RestGen - Module entry point.

Allows running the CLI directly via::

    python -m restgen routes --models app.models:Base

This module simply delegates to the CLI entry point defined in ``restgen.cli``.
"""

from __future__ import annotations


def main() -> None:
    """Delegate to the CLI main function."""
    from restgen.cli import cli_main
    cli_main()


if __name__ == "__main__":
    main()
