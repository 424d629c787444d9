"""
Report generation for a migration run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from dialog_migrator.core.state import MigrationProgress, MigrationStats
from dialog_migrator.result import (
    Failure,
    ProgressError,
    ProgressErrorKind,
    Result,
    Success,
)
from dialog_migrator.services.rate_limiter import RateLimitStats
from dialog_migrator.types import DialogStatus
from dialog_migrator.utils.formatting import (
    format_count,
    format_duration,
    format_percentage,
    now_iso,
    parse_iso,
    truncate,
)
from dialog_migrator.utils.logging import log_with_context


@dataclass(frozen=True)
class RateExceededSummary:
    event_count: int = 0
    total_seconds: float = 0.0
    longest_wait: float = 0.0


@dataclass(frozen=True)
class DialogIssue:
    """A conversation that did not finish, with its most recent error."""

    dialog_id: str
    dialog_name: str
    status: DialogStatus
    migrated_count: int
    total_count: int
    error: Optional[str] = None


@dataclass(frozen=True)
class MigrationReport:
    generated_at: str
    source_account: str
    target_account: str
    phase: str
    stats: MigrationStats
    by_status: dict[str, int]
    duration_seconds: float
    rate_exceeded: RateExceededSummary
    failed_dialogs: list[DialogIssue] = field(default_factory=list)
    partial_dialogs: list[DialogIssue] = field(default_factory=list)
    limiter_stats: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        def issue(entry: DialogIssue) -> dict[str, Any]:
            return {
                "dialog_id": entry.dialog_id,
                "dialog_name": entry.dialog_name,
                "status": entry.status.value,
                "migrated": entry.migrated_count,
                "total": entry.total_count,
                "error": entry.error,
            }

        data: dict[str, Any] = {
            "migration_summary": {
                "generated_at": self.generated_at,
                "source_account": self.source_account,
                "target_account": self.target_account,
                "phase": self.phase,
                "duration_seconds": self.duration_seconds,
                "total_dialogs": self.stats.total_dialogs,
                "completed_dialogs": self.stats.completed_dialogs,
                "failed_dialogs": self.stats.failed_dialogs,
                "skipped_dialogs": self.stats.skipped_dialogs,
                "total_messages": self.stats.total_messages,
                "migrated_messages": self.stats.migrated_messages,
                "failed_messages": self.stats.failed_messages,
            },
            "by_status": dict(self.by_status),
            "rate_exceeded": {
                "events": self.rate_exceeded.event_count,
                "total_seconds": self.rate_exceeded.total_seconds,
                "longest_wait": self.rate_exceeded.longest_wait,
            },
            "failed_dialogs": [issue(entry) for entry in self.failed_dialogs],
            "partially_migrated_dialogs": [issue(entry) for entry in self.partial_dialogs],
        }
        if self.limiter_stats is not None:
            data["rate_limiter"] = dict(self.limiter_stats)
        return data


def _issue(dialog) -> DialogIssue:
    latest = dialog.latest_error
    return DialogIssue(
        dialog_id=dialog.dialog_id,
        dialog_name=dialog.dialog_name,
        status=dialog.status,
        migrated_count=dialog.migrated_count,
        total_count=dialog.total_count,
        error=latest.error_message if latest else None,
    )


def generate_report(
    progress: MigrationProgress, limiter_stats: Optional[RateLimitStats] = None
) -> MigrationReport:
    """Summarize a progress snapshot."""
    by_status = {status.value: 0 for status in DialogStatus}
    failed: list[DialogIssue] = []
    partial: list[DialogIssue] = []

    for dialog in progress.dialogs.values():
        by_status[dialog.status.value] += 1
        if dialog.status == DialogStatus.FAILED:
            failed.append(_issue(dialog))
        elif dialog.status == DialogStatus.PARTIALLY_MIGRATED:
            partial.append(_issue(dialog))

    started = parse_iso(progress.started_at)
    updated = parse_iso(progress.updated_at)
    duration = (updated - started).total_seconds() if started and updated else 0.0

    waits = [event.seconds for event in progress.rate_exceeded_events]
    rate_summary = RateExceededSummary(
        event_count=len(waits),
        total_seconds=float(sum(waits)),
        longest_wait=float(max(waits, default=0)),
    )

    return MigrationReport(
        generated_at=now_iso(),
        source_account=progress.source_account,
        target_account=progress.target_account,
        phase=progress.current_phase.value,
        stats=progress.stats,
        by_status=by_status,
        duration_seconds=max(duration, 0.0),
        rate_exceeded=rate_summary,
        failed_dialogs=failed,
        partial_dialogs=partial,
        limiter_stats=limiter_stats.to_dict() if limiter_stats else None,
    )


def format_report_as_text(report: MigrationReport) -> str:
    stats = report.stats
    lines = [
        "=" * 80,
        "MIGRATION REPORT",
        "=" * 80,
        f"Phase: {report.phase}",
        f"Duration: {format_duration(report.duration_seconds)}",
        f"Dialogs: {stats.completed_dialogs}/{stats.total_dialogs} completed, "
        f"{stats.failed_dialogs} failed, {stats.skipped_dialogs} skipped",
        f"Messages: {format_count(stats.migrated_messages)}/{format_count(stats.total_messages)} "
        f"migrated ({format_percentage(stats.migrated_messages, stats.total_messages)}), "
        f"{format_count(stats.failed_messages)} failed",
    ]

    if report.rate_exceeded.event_count:
        lines.append(
            f"Rate limits: {report.rate_exceeded.event_count} events, "
            f"{format_duration(report.rate_exceeded.total_seconds)} waited "
            f"(longest {format_duration(report.rate_exceeded.longest_wait)})"
        )

    if report.failed_dialogs:
        lines.append("")
        lines.append("Failed dialogs:")
        for entry in report.failed_dialogs:
            lines.append(
                f"  - {entry.dialog_name} ({entry.dialog_id}): "
                f"{truncate(entry.error or 'unknown error', 60)}"
            )

    if report.partial_dialogs:
        lines.append("")
        lines.append("Partially migrated (resume with another run):")
        for entry in report.partial_dialogs:
            lines.append(
                f"  - {entry.dialog_name} ({entry.dialog_id}): "
                f"{entry.migrated_count}/{entry.total_count} messages"
            )

    lines.append("=" * 80)
    return "\n".join(lines)


def save_report(report: MigrationReport, path: Path) -> Result[Path, ProgressError]:
    """Write the report as YAML."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(report.to_dict(), f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        log_with_context(logging.ERROR, f"Failed to write report to {path}: {e}")
        return Failure(
            ProgressError(ProgressErrorKind.WRITE_FAILED, f"Failed to write report: {e}", str(path))
        )

    log_with_context(logging.INFO, f"Migration report saved to {path}")
    return Success(path)


def format_progress_summary(progress: MigrationProgress) -> str:
    """Multi-line status overview of a progress snapshot, one row per dialog."""
    stats = progress.stats
    lines = [
        f"Progress file version {progress.version}, phase: {progress.current_phase.value}",
        f"Started: {progress.started_at}",
        f"Updated: {progress.updated_at}",
    ]
    if progress.source_account or progress.target_account:
        lines.append(
            f"Accounts: {progress.source_account or '?'} -> {progress.target_account or '?'}"
        )
    lines.append(
        f"Dialogs: {stats.completed_dialogs}/{stats.total_dialogs} completed, "
        f"{stats.failed_dialogs} failed, {stats.skipped_dialogs} skipped"
    )
    lines.append(
        f"Messages: {format_count(stats.migrated_messages)}/{format_count(stats.total_messages)} "
        f"({format_percentage(stats.migrated_messages, stats.total_messages)})"
    )
    if stats.rate_exceeded_count:
        lines.append(
            f"Rate limits hit: {stats.rate_exceeded_count} "
            f"({format_duration(stats.total_rate_exceeded_seconds)} total wait)"
        )

    if progress.dialogs:
        lines.append("")
        for dialog in progress.dialogs.values():
            lines.append(
                f"  [{dialog.status.value:<18}] {truncate(dialog.dialog_name, 40):<40} "
                f"{dialog.migrated_count}/{dialog.total_count}"
            )
    return "\n".join(lines)
