"""CLI command that writes a starter configuration file."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from dialog_migrator.cli.common import cli
from dialog_migrator.core.config import create_default_config
from dialog_migrator.utils.logging import setup_logger


@cli.command()
@click.option(
    "--config",
    default="config.yaml",
    show_default=True,
    help="Where to write the config YAML",
)
def init(config: str) -> None:
    """Create a default configuration file (never overwrites an existing one)."""
    setup_logger()
    if not create_default_config(Path(config)):
        sys.exit(1)
    click.echo(f"Edit {config} to set client_factory and target_recipient, then run migrate.")
