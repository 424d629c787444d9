"""CLI commands that inspect and manage the progress file."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import NoReturn, Optional

import click

from dialog_migrator.cli.common import cli, common_options, handle_exception, prepare
from dialog_migrator.core.progress import (
    clear_progress,
    create_empty_progress,
    export_progress_to_file,
    import_progress_from_file,
    load_progress,
    merge_progress,
    save_progress,
)
from dialog_migrator.core.report import format_progress_summary
from dialog_migrator.core.state import MigrationProgress
from dialog_migrator.result import Failure, ProgressError
from dialog_migrator.types import MergeStrategy
from dialog_migrator.utils.logging import log_with_context


def _fail(error: ProgressError) -> NoReturn:
    log_with_context(logging.ERROR, str(error))
    sys.exit(1)


def _load_or_exit(path: Path) -> MigrationProgress:
    result = load_progress(path)
    if isinstance(result, Failure):
        _fail(result.error)
    return result.value


def _settings(
    config: str, progress_path: Optional[str], verbose: bool, quiet: bool
) -> Path:
    try:
        _, path = prepare(config, progress_path, verbose, quiet)
    except Exception as e:
        handle_exception(e)
        sys.exit(1)
    return path


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command()
@common_options
def status(config: str, progress_path: Optional[str], verbose: bool, quiet: bool) -> None:
    """Show the state of the current migration."""
    path = _settings(config, progress_path, verbose, quiet)
    if not path.exists():
        click.echo(f"No migration progress found at {path}")
        return
    click.echo(format_progress_summary(_load_or_exit(path)))


# ---------------------------------------------------------------------------
# export / import
# ---------------------------------------------------------------------------


@cli.command("export")
@common_options
@click.argument("output_file", type=click.Path(dir_okay=False))
def export_cmd(
    config: str,
    progress_path: Optional[str],
    verbose: bool,
    quiet: bool,
    output_file: str,
) -> None:
    """Write the migration progress to OUTPUT_FILE as a portable export."""
    path = _settings(config, progress_path, verbose, quiet)
    if not path.exists():
        log_with_context(logging.ERROR, f"No migration progress found at {path}")
        sys.exit(1)

    result = export_progress_to_file(_load_or_exit(path), Path(output_file))
    if isinstance(result, Failure):
        _fail(result.error)
    click.echo(f"Progress exported to {output_file}")


@cli.command("import")
@common_options
@click.argument("input_file", type=click.Path(dir_okay=False))
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in MergeStrategy]),
    default=MergeStrategy.OVERWRITE_ALL.value,
    show_default=True,
    help="How imported dialogs are combined with the existing progress",
)
def import_cmd(
    config: str,
    progress_path: Optional[str],
    verbose: bool,
    quiet: bool,
    input_file: str,
    strategy: str,
) -> None:
    """Merge an exported progress file from INPUT_FILE into the progress file."""
    path = _settings(config, progress_path, verbose, quiet)

    imported = import_progress_from_file(Path(input_file))
    if isinstance(imported, Failure):
        _fail(imported.error)

    existing = _load_or_exit(path)
    merged = merge_progress(existing, imported.value, MergeStrategy(strategy))
    saved = save_progress(path, merged)
    if isinstance(saved, Failure):
        _fail(saved.error)
    click.echo(
        f"Imported {len(imported.value.dialogs)} dialogs into {path} (strategy: {strategy})"
    )


# ---------------------------------------------------------------------------
# clean / reset
# ---------------------------------------------------------------------------


@cli.command()
@common_options
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
def clean(
    config: str, progress_path: Optional[str], verbose: bool, quiet: bool, force: bool
) -> None:
    """Delete the progress file."""
    path = _settings(config, progress_path, verbose, quiet)
    if not path.exists():
        click.echo(f"No migration progress found at {path}")
        return

    if not force:
        if not click.confirm(f"This will delete {path}. Continue?"):
            click.echo("Clean cancelled.")
            sys.exit(0)

    result = clear_progress(path)
    if isinstance(result, Failure):
        _fail(result.error)
    click.echo(f"Removed {path}")


@cli.command()
@common_options
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
def reset(
    config: str, progress_path: Optional[str], verbose: bool, quiet: bool, force: bool
) -> None:
    """Start over with empty progress, keeping the recorded accounts."""
    path = _settings(config, progress_path, verbose, quiet)

    if not force:
        if not click.confirm(
            "This will forget every migrated dialog; a new run forwards everything again. Continue?"
        ):
            click.echo("Reset cancelled.")
            sys.exit(0)

    loaded = load_progress(path)
    if isinstance(loaded, Failure):
        log_with_context(
            logging.WARNING, f"Existing progress unreadable, accounts not kept: {loaded.error}"
        )
        existing = create_empty_progress()
    else:
        existing = loaded.value
    fresh = create_empty_progress(existing.source_account, existing.target_account)
    result = save_progress(path, fresh)
    if isinstance(result, Failure):
        _fail(result.error)
    click.echo(f"Progress reset in {path}")
