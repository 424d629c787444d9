#!/usr/bin/env python3
"""
Main execution module for the conversation migration tool.

Importing the command modules registers their subcommands on the shared
click group.
"""

from dialog_migrator.cli import init_cmd, list_cmd, migrate_cmd, progress_cmds  # noqa: F401
from dialog_migrator.cli.common import cli, handle_exception  # noqa: F401


def main() -> None:
    """Main entry point for the conversation migration tool."""
    cli()


if __name__ == "__main__":
    main()
