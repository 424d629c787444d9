"""
Progress model for a migration run.

Immutable snapshots describing where the migration stands: one
``MigrationProgress`` per run holding a ``DialogProgress`` per conversation.
Snapshots are never mutated; :mod:`dialog_migrator.core.progress` derives new
ones with ``dataclasses.replace``.

This module also converts snapshots to and from the camelCase dictionaries
stored in the progress file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from dialog_migrator.constants import PROGRESS_VERSION
from dialog_migrator.types import (
    DialogErrorDict,
    DialogProgressDict,
    DialogStatus,
    DialogType,
    MigrationPhase,
    MigrationProgressDict,
    MigrationStatsDict,
    RateExceededEvent,
    RateExceededEventDict,
)
from dialog_migrator.utils.formatting import now_iso

# ---------------------------------------------------------------------------
# Snapshot dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DialogError:
    """An error recorded against one conversation."""

    timestamp: str
    error_type: str
    error_message: str
    message_id: Optional[int] = None


@dataclass(frozen=True)
class DialogProgress:
    """Migration position of one conversation."""

    dialog_id: str
    dialog_name: str
    dialog_type: DialogType
    status: DialogStatus = DialogStatus.PENDING
    destination_id: Optional[str] = None
    last_message_id: Optional[int] = None
    migrated_count: int = 0
    total_count: int = 0
    errors: tuple[DialogError, ...] = ()
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == DialogStatus.COMPLETED

    @property
    def latest_error(self) -> Optional[DialogError]:
        return self.errors[-1] if self.errors else None


@dataclass(frozen=True)
class MigrationStats:
    """Aggregate counters; kept consistent with the dialog records."""

    total_dialogs: int = 0
    completed_dialogs: int = 0
    failed_dialogs: int = 0
    skipped_dialogs: int = 0
    total_messages: int = 0
    migrated_messages: int = 0
    failed_messages: int = 0
    rate_exceeded_count: int = 0
    total_rate_exceeded_seconds: float = 0


@dataclass(frozen=True)
class MigrationProgress:
    """Root snapshot of a migration run.

    ``dialogs`` must be treated as read-only; update functions build a new
    dict for every change.
    """

    version: str
    started_at: str
    updated_at: str
    source_account: str = ""
    target_account: str = ""
    current_phase: MigrationPhase = MigrationPhase.IDLE
    dialogs: dict[str, DialogProgress] = field(default_factory=dict)
    rate_exceeded_events: tuple[RateExceededEvent, ...] = ()
    stats: MigrationStats = field(default_factory=MigrationStats)

    def get_dialog(self, dialog_id: str) -> Optional[DialogProgress]:
        return self.dialogs.get(dialog_id)


def create_empty_progress(
    source_account: str = "", target_account: str = ""
) -> MigrationProgress:
    """Return a fresh progress snapshot: idle, no dialogs, zeroed stats."""
    now = now_iso()
    return MigrationProgress(
        version=PROGRESS_VERSION,
        started_at=now,
        updated_at=now,
        source_account=source_account,
        target_account=target_account,
    )


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def progress_to_dict(progress: MigrationProgress) -> MigrationProgressDict:
    """Convert a snapshot to the on-disk dictionary."""
    return MigrationProgressDict(
        version=progress.version,
        startedAt=progress.started_at,
        updatedAt=progress.updated_at,
        sourceAccount=progress.source_account,
        targetAccount=progress.target_account,
        currentPhase=progress.current_phase.value,
        dialogs={
            dialog_id: _dialog_to_dict(dialog)
            for dialog_id, dialog in progress.dialogs.items()
        },
        floodWaitEvents=[
            RateExceededEventDict(
                timestamp=e.timestamp, seconds=e.seconds, operation=e.operation
            )
            for e in progress.rate_exceeded_events
        ],
        stats=_stats_to_dict(progress.stats),
    )


def _dialog_to_dict(dialog: DialogProgress) -> DialogProgressDict:
    return DialogProgressDict(
        dialogId=dialog.dialog_id,
        dialogName=dialog.dialog_name,
        dialogType=dialog.dialog_type.value,
        status=dialog.status.value,
        destinationId=dialog.destination_id,
        lastMessageId=dialog.last_message_id,
        migratedCount=dialog.migrated_count,
        totalCount=dialog.total_count,
        errors=[
            DialogErrorDict(
                timestamp=e.timestamp,
                messageId=e.message_id,
                errorType=e.error_type,
                errorMessage=e.error_message,
            )
            for e in dialog.errors
        ],
        startedAt=dialog.started_at,
        completedAt=dialog.completed_at,
    )


def _stats_to_dict(stats: MigrationStats) -> MigrationStatsDict:
    return MigrationStatsDict(
        totalDialogs=stats.total_dialogs,
        completedDialogs=stats.completed_dialogs,
        failedDialogs=stats.failed_dialogs,
        skippedDialogs=stats.skipped_dialogs,
        totalMessages=stats.total_messages,
        migratedMessages=stats.migrated_messages,
        failedMessages=stats.failed_messages,
        floodWaitCount=stats.rate_exceeded_count,
        totalFloodWaitSeconds=stats.total_rate_exceeded_seconds,
    )


def progress_from_dict(data: dict[str, Any]) -> MigrationProgress:
    """Build a snapshot from an already validated on-disk dictionary.

    Raises:
        ValueError: If an enum value or nested record is malformed
    """
    dialogs = {
        str(dialog_id): _dialog_from_dict(str(dialog_id), raw)
        for dialog_id, raw in data["dialogs"].items()
    }
    events = tuple(
        RateExceededEvent(
            timestamp=str(raw.get("timestamp", "")),
            seconds=raw.get("seconds", 0),
            operation=str(raw.get("operation", "unknown")),
        )
        for raw in data.get("floodWaitEvents") or []
    )
    return MigrationProgress(
        version=data["version"],
        started_at=data["startedAt"],
        updated_at=data.get("updatedAt") or data["startedAt"],
        source_account=data.get("sourceAccount") or "",
        target_account=data.get("targetAccount") or "",
        current_phase=MigrationPhase(data.get("currentPhase") or "idle"),
        dialogs=dialogs,
        rate_exceeded_events=events,
        stats=_stats_from_dict(data.get("stats") or {}),
    )


def _dialog_from_dict(dialog_id: str, raw: dict[str, Any]) -> DialogProgress:
    if not isinstance(raw, dict):
        raise ValueError(f"dialog {dialog_id} must be an object")
    return DialogProgress(
        dialog_id=str(raw.get("dialogId", dialog_id)),
        dialog_name=raw.get("dialogName", ""),
        dialog_type=DialogType(raw.get("dialogType", DialogType.PRIVATE.value)),
        status=DialogStatus(raw.get("status", DialogStatus.PENDING.value)),
        destination_id=raw.get("destinationId"),
        last_message_id=raw.get("lastMessageId"),
        migrated_count=raw.get("migratedCount", 0),
        total_count=raw.get("totalCount", 0),
        errors=tuple(
            DialogError(
                timestamp=e.get("timestamp", ""),
                error_type=e.get("errorType", "unknown"),
                error_message=e.get("errorMessage", ""),
                message_id=e.get("messageId"),
            )
            for e in raw.get("errors") or []
        ),
        started_at=raw.get("startedAt"),
        completed_at=raw.get("completedAt"),
    )


def _stats_from_dict(raw: dict[str, Any]) -> MigrationStats:
    return MigrationStats(
        total_dialogs=raw.get("totalDialogs", 0),
        completed_dialogs=raw.get("completedDialogs", 0),
        failed_dialogs=raw.get("failedDialogs", 0),
        skipped_dialogs=raw.get("skippedDialogs", 0),
        total_messages=raw.get("totalMessages", 0),
        migrated_messages=raw.get("migratedMessages", 0),
        failed_messages=raw.get("failedMessages", 0),
        rate_exceeded_count=raw.get("floodWaitCount", 0),
        total_rate_exceeded_seconds=raw.get("totalFloodWaitSeconds", 0),
    )
