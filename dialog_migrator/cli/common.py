"""Pieces every subcommand shares: the command group, common options, config
loading and the top-level error reporting."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, ClassVar, Optional

import click

import dialog_migrator
from dialog_migrator.core.config import MigrationConfig, load_client_factory, load_config
from dialog_migrator.exceptions import MigratorError, RateExceededError
from dialog_migrator.utils.logging import log_with_context, setup_logger

# ---------------------------------------------------------------------------
# Custom click.Group that defaults to ``migrate``. When there are no
# arguments, or the first token is a flag rather than a subcommand, the group
# prepends ``migrate`` so ``dialog-migrator --dry-run`` just works.
# ---------------------------------------------------------------------------


class DefaultGroup(click.Group):
    """Group whose implicit subcommand is ``migrate``."""

    # Handled by the group itself, never forwarded to migrate
    _GROUP_FLAGS: ClassVar[set[str]] = {"--help", "--version", "-h"}

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        """Route bare invocations and leading options to ``migrate``."""
        if not args or (args[0].startswith("-") and args[0] not in self._GROUP_FLAGS):
            args = ["migrate", *args]
        return super().parse_args(ctx, args)


# ---------------------------------------------------------------------------
# Shared option decorator
# ---------------------------------------------------------------------------


def common_options(f: Callable[..., None]) -> Callable[..., None]:
    """Attach ``--config``, ``--progress``, ``--verbose`` and ``--quiet``."""
    f = click.option(
        "--config",
        default="config.yaml",
        show_default=True,
        help="Path to config YAML",
    )(f)
    f = click.option(
        "--progress",
        "progress_path",
        default=None,
        help="Path to the progress file (overrides progress_path from the config)",
    )(f)
    f = click.option(
        "--verbose",
        "-v",
        is_flag=True,
        default=False,
        help="Enable verbose console logging (shows DEBUG level messages)",
    )(f)
    f = click.option(
        "--quiet",
        "-q",
        is_flag=True,
        default=False,
        help="Only show warnings and errors on the console",
    )(f)
    return f


def prepare(
    config: str, progress_path: Optional[str], verbose: bool, quiet: bool
) -> tuple[MigrationConfig, Path]:
    """Set up logging and load the configuration for a subcommand.

    Returns:
        The validated configuration and the progress file to use.

    Raises:
        ConfigError: If the config file is invalid.
    """
    setup_logger(verbose, quiet)
    cfg = load_config(Path(config))
    if cfg.log_file or cfg.log_format == "json":
        setup_logger(verbose, quiet, cfg.log_file, json_format=cfg.log_format == "json")
    return cfg, Path(progress_path or cfg.progress_path)


def build_client(cfg: MigrationConfig) -> Any:
    """Build the remote client through the configured ``client_factory``.

    The factory is called with the loaded configuration; its
    ``client_options`` mapping is the place for client specific settings.

    Raises:
        ConfigError: If no usable factory is configured.
    """
    factory = load_client_factory(cfg.client_factory)
    return factory(cfg)


def parse_date(
    ctx: click.Context, param: click.Parameter, value: Optional[str]
) -> Optional[datetime]:
    """Click callback turning ``YYYY-MM-DD`` into a UTC datetime."""
    if value is None:
        return None
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise click.BadParameter(f"'{value}' is not a date in YYYY-MM-DD format")
    return parsed.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group(
    cls=DefaultGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=dialog_migrator.__version__, prog_name="dialog-migrator")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Copy message history into new conversations, one conversation at a time."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


def handle_exception(e: BaseException) -> None:
    """Log a command failure in terms the user can act on."""
    if isinstance(e, RateExceededError):
        log_with_context(logging.ERROR, f"Rate limit exceeded: {e}")
        log_with_context(
            logging.INFO,
            "The platform asked us to slow down. Progress has been saved; "
            "run the migration again later to resume.",
        )
    elif isinstance(e, MigratorError):
        log_with_context(logging.ERROR, str(e))
    elif isinstance(e, FileNotFoundError):
        log_with_context(logging.ERROR, f"File not found: {e}")
        log_with_context(
            logging.INFO,
            "Check the --config and --progress paths.",
        )
    elif isinstance(e, KeyboardInterrupt):
        log_with_context(logging.WARNING, "Interrupted.")
        log_with_context(
            logging.INFO, "Progress has been saved. Run the migration again to resume."
        )
    else:
        log_with_context(logging.ERROR, f"Migration failed: {e}", exc_info=True)
