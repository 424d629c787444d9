"""CLI command handler for the migrate workflow."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import click

from dialog_migrator.cli.common import (
    build_client,
    cli,
    common_options,
    handle_exception,
    parse_date,
    prepare,
)
from dialog_migrator.cli.display import ProgressDisplay
from dialog_migrator.core.config import MigrationConfig
from dialog_migrator.core.orchestrator import (
    MigrationOptions,
    MigrationOrchestrator,
    MigrationOutcome,
)
from dialog_migrator.core.report import format_report_as_text, save_report
from dialog_migrator.core.shutdown import FORCED_EXIT_CODE, ShutdownCoordinator
from dialog_migrator.exceptions import MigrationAbortedError
from dialog_migrator.result import Failure
from dialog_migrator.services.client import maybe_connect, maybe_disconnect
from dialog_migrator.types import DateRange
from dialog_migrator.utils.formatting import format_count
from dialog_migrator.utils.logging import log_with_context

# ---------------------------------------------------------------------------
# migrate subcommand
# ---------------------------------------------------------------------------


@cli.command()
@common_options
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Enumerate and report the migration scope without creating or forwarding anything",
)
@click.option(
    "--conversation",
    "conversation_id",
    default=None,
    help="Only migrate the conversation with this id",
)
@click.option(
    "--from",
    "date_from",
    default=None,
    callback=parse_date,
    help="Only forward messages sent on or after this date (YYYY-MM-DD)",
)
@click.option(
    "--to",
    "date_to",
    default=None,
    callback=parse_date,
    help=(
        "Only forward messages sent on or before this date (YYYY-MM-DD). "
        "History is paged newest first and a full page made only of newer "
        "messages ends paging, so older messages in the window can be missed "
        "when many messages follow the date"
    ),
)
@click.option(
    "--report",
    "report_path",
    default=None,
    help="Also write the final report to this YAML file",
)
def migrate(
    config: str,
    progress_path: Optional[str],
    verbose: bool,
    quiet: bool,
    dry_run: bool,
    conversation_id: Optional[str],
    date_from: Optional[datetime],
    date_to: Optional[datetime],
    report_path: Optional[str],
) -> None:
    """Migrate every selected conversation to its own destination.

    Args:
        config: Path to config YAML.
        progress_path: Progress file override.
        verbose: Enable verbose console logging.
        quiet: Only show warnings and errors.
        dry_run: Report the scope without changing anything.
        conversation_id: Restrict the run to one conversation.
        date_from: Lower bound of the date window.
        date_to: Upper bound (inclusive, whole day) of the date window.
        report_path: Optional YAML report destination.
    """
    if date_from and date_to and date_from > date_to:
        raise click.BadParameter("--from must not be after --to", param_hint="--from")

    try:
        cfg, progress_file = prepare(config, progress_path, verbose, quiet)
        options = MigrationOptions(
            dry_run=dry_run,
            conversation_id=conversation_id,
            date_range=build_date_range(date_from, date_to),
        )
        log_startup_info(cfg, progress_file, options)
        client = build_client(cfg)
        display = ProgressDisplay(enabled=not quiet)
        outcome = asyncio.run(run_migration(client, cfg, progress_file, options, display))
    except KeyboardInterrupt as e:
        handle_exception(e)
        sys.exit(FORCED_EXIT_CODE)
    except Exception as e:
        handle_exception(e)
        sys.exit(1)

    if outcome.dry_run:
        print_dry_run_summary(outcome)
        return

    if outcome.report is not None:
        click.echo(format_report_as_text(outcome.report))
        if report_path:
            saved = save_report(outcome.report, Path(report_path))
            if isinstance(saved, Failure):
                log_with_context(logging.WARNING, f"Report not saved: {saved.error}")

    if outcome.interrupted:
        click.echo("Migration interrupted. Run the same command again to resume.")
        sys.exit(FORCED_EXIT_CODE)


def build_date_range(
    date_from: Optional[datetime], date_to: Optional[datetime]
) -> Optional[DateRange]:
    if date_from is None and date_to is None:
        return None
    end = date_to + timedelta(days=1) - timedelta(microseconds=1) if date_to else None
    return DateRange(start=date_from, end=end)


async def run_migration(
    client: Any,
    cfg: MigrationConfig,
    progress_file: Path,
    options: MigrationOptions,
    display: ProgressDisplay,
) -> MigrationOutcome:
    """Run the orchestrator with signal handling and client lifecycle.

    Raises:
        MigrationAbortedError: If the run could not start or enumerate
    """
    shutdown = ShutdownCoordinator(cfg.shutdown_grace_period)
    shutdown.register_signals()
    orchestrator = MigrationOrchestrator(
        client, cfg, progress_file, shutdown=shutdown, on_event=display
    )

    await maybe_connect(client)
    try:
        result = await orchestrator.run_migration(options)
    finally:
        display.close()
        if shutdown.is_shutting_down:
            await shutdown.run_save_callbacks()
        shutdown.disarm()
        shutdown.unregister_signals()
        await maybe_disconnect(client)

    if isinstance(result, Failure):
        raise MigrationAbortedError(f"Migration aborted: {result.error}")
    return result.value


def log_startup_info(
    cfg: MigrationConfig, progress_file: Path, options: MigrationOptions
) -> None:
    """Log startup information."""
    log_with_context(logging.INFO, "Starting migration with the following parameters:")
    log_with_context(logging.INFO, f"- Source account: {cfg.source_account or '(client default)'}")
    log_with_context(logging.INFO, f"- Target recipient: {cfg.target_recipient or '(none)'}")
    log_with_context(logging.INFO, f"- Progress file: {progress_file}")
    log_with_context(logging.INFO, f"- Batch size: {cfg.batch_size}")
    log_with_context(logging.INFO, f"- Batch delay: {cfg.rate_limit.batch_delay}s")
    log_with_context(logging.INFO, f"- Dry run: {options.dry_run}")
    if options.conversation_id:
        log_with_context(logging.INFO, f"- Conversation: {options.conversation_id}")
    if options.date_range:
        log_with_context(
            logging.INFO,
            f"- Date window: {options.date_range.start or '-'} .. {options.date_range.end or '-'}",
        )


def print_dry_run_summary(outcome: MigrationOutcome) -> None:
    """Print a summary of the dry run to the console."""
    click.echo("\n" + "=" * 80)
    click.echo("DRY RUN SUMMARY")
    click.echo("=" * 80)
    click.echo(f"Conversations that would be migrated: {len(outcome.planned)}")
    click.echo(f"Already completed (skipped): {outcome.skipped_count}")
    click.echo(f"Estimated messages: {format_count(outcome.estimated_messages)}")
    for conversation in outcome.planned:
        click.echo(
            f"  - {conversation.name} ({conversation.id}, {conversation.type.value}): "
            f"{format_count(conversation.message_count)} messages"
        )
    click.echo("=" * 80)
    click.echo("\nTo perform the actual migration, run again without --dry-run")
    click.echo("=" * 80)
