"""Progress persistence and pure updates for resumable migrations.

The store loads and atomically saves :class:`MigrationProgress` snapshots, and
provides the pure functions the orchestrator uses to derive new snapshots as
the run advances. Nothing here mutates a snapshot or raises across the module
boundary: I/O outcomes come back as :class:`Success` / :class:`Failure`.
"""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

from dialog_migrator.constants import EXPORT_VERSION, PROGRESS_VERSION
from dialog_migrator.core.state import (
    DialogError,
    DialogProgress,
    MigrationProgress,
    create_empty_progress,
    progress_from_dict,
    progress_to_dict,
)
from dialog_migrator.result import (
    Failure,
    ProgressError,
    ProgressErrorKind,
    Result,
    Success,
)
from dialog_migrator.types import (
    ConversationInfo,
    DialogStatus,
    MergeStrategy,
    MigrationPhase,
    RateExceededEvent,
)
from dialog_migrator.utils.formatting import now_iso, parse_iso
from dialog_migrator.utils.logging import log_with_context

# Statuses from which forwarding may pick up where it stopped
_RESUMABLE_STATUSES = frozenset(
    (DialogStatus.IN_PROGRESS, DialogStatus.PARTIALLY_MIGRATED, DialogStatus.FAILED)
)

# ---------------------------------------------------------------------------
# Loading and validation
# ---------------------------------------------------------------------------


def _validate_document(data: Any) -> Optional[str]:
    """Return a description of the first problem with ``data``, or None."""
    if not isinstance(data, dict):
        return "Progress document must be a JSON object"

    version = data.get("version")
    if not isinstance(version, str):
        return "Missing or invalid required field: version"
    if version != PROGRESS_VERSION:
        return f"Unsupported version: {version}. Expected: {PROGRESS_VERSION}"

    if not isinstance(data.get("startedAt"), str):
        return "Missing or invalid required field: startedAt"
    if not isinstance(data.get("dialogs"), dict):
        return "Missing or invalid required field: dialogs"
    return None


def _parse_document(
    text: str, path: Optional[str] = None, unwrap_export: bool = False
) -> Result[MigrationProgress, ProgressError]:
    if not text.strip():
        return Failure(
            ProgressError(ProgressErrorKind.FILE_CORRUPTED, "Progress file is empty", path)
        )

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return Failure(
            ProgressError(
                ProgressErrorKind.FILE_CORRUPTED, f"Invalid JSON in progress file: {e}", path
            )
        )

    if unwrap_export and isinstance(data, dict) and isinstance(data.get("progress"), dict):
        data = data["progress"]

    problem = _validate_document(data)
    if problem is not None:
        return Failure(ProgressError(ProgressErrorKind.INVALID_FORMAT, problem, path))

    try:
        return Success(progress_from_dict(data))
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        return Failure(
            ProgressError(
                ProgressErrorKind.INVALID_FORMAT, f"Malformed progress record: {e}", path
            )
        )


def load_progress(path: Path) -> Result[MigrationProgress, ProgressError]:
    """
    Load migration progress from disk.

    A missing file is not an error: a fresh, empty snapshot is returned so a
    first run starts cleanly.

    Args:
        path: Location of the progress file

    Returns:
        Success with the snapshot, or Failure describing why the file was rejected
    """
    if not path.exists():
        log_with_context(
            logging.INFO, f"No progress file at {path}, starting fresh"
        )
        return Success(create_empty_progress())

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        log_with_context(logging.WARNING, f"Failed to read progress file {path}: {e}")
        return Failure(
            ProgressError(
                ProgressErrorKind.FILE_CORRUPTED, f"Cannot read progress file: {e}", str(path)
            )
        )

    result = _parse_document(text, str(path))
    if isinstance(result, Failure):
        log_with_context(
            logging.WARNING, f"Rejected progress file {path}: {result.error.message}"
        )
    else:
        log_with_context(
            logging.DEBUG,
            f"Loaded progress for {len(result.value.dialogs)} dialogs from {path}",
        )
    return result


def _next_timestamp(previous: str) -> str:
    now = now_iso()
    prev_dt = parse_iso(previous)
    now_dt = parse_iso(now)
    if prev_dt is not None and now_dt is not None and now_dt < prev_dt:
        return previous
    return now


def save_progress(
    path: Path, progress: MigrationProgress
) -> Result[MigrationProgress, ProgressError]:
    """
    Atomically save progress to disk (write ``<path>.tmp`` + rename).

    The target file always holds either the previous complete state or the new
    one. On failure the temporary file is removed when possible.

    Args:
        path: Location of the progress file
        progress: Snapshot to persist

    Returns:
        Success with the saved snapshot (with its refreshed ``updated_at``),
        or Failure of kind WRITE_FAILED
    """
    snapshot = replace(progress, updated_at=_next_timestamp(progress.updated_at))
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(progress_to_dict(snapshot), indent=2, ensure_ascii=False)
        tmp.write_text(payload + "\n", encoding="utf-8")
        tmp.replace(path)
    except (OSError, TypeError, ValueError) as e:
        log_with_context(logging.ERROR, f"Failed to write progress file {path}: {e}")
        with contextlib.suppress(OSError):
            tmp.unlink(missing_ok=True)
        return Failure(
            ProgressError(
                ProgressErrorKind.WRITE_FAILED, f"Failed to save progress: {e}", str(path)
            )
        )
    return Success(snapshot)


def clear_progress(path: Path) -> Result[bool, ProgressError]:
    """Delete the progress file. Success(False) when there was nothing to delete."""
    if not path.exists():
        return Success(False)
    try:
        path.unlink()
    except OSError as e:
        log_with_context(logging.WARNING, f"Failed to remove progress file {path}: {e}")
        return Failure(
            ProgressError(
                ProgressErrorKind.WRITE_FAILED, f"Failed to remove progress file: {e}", str(path)
            )
        )
    return Success(True)


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------


def export_progress(progress: MigrationProgress) -> str:
    """Serialize progress into a portable export envelope."""
    envelope = {
        "exportVersion": EXPORT_VERSION,
        "exportedAt": now_iso(),
        "progress": progress_to_dict(progress),
    }
    return json.dumps(envelope, indent=2, ensure_ascii=False)


def import_progress(text: str) -> Result[MigrationProgress, ProgressError]:
    """
    Parse exported progress.

    Accepts the export envelope, a ``{"progress": ...}`` wrapper, or a bare
    progress document, and validates it exactly like :func:`load_progress`.
    """
    return _parse_document(text, unwrap_export=True)


def export_progress_to_file(
    progress: MigrationProgress, path: Path
) -> Result[Path, ProgressError]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(export_progress(progress) + "\n", encoding="utf-8")
    except OSError as e:
        return Failure(
            ProgressError(
                ProgressErrorKind.WRITE_FAILED, f"Failed to export progress: {e}", str(path)
            )
        )
    return Success(path)


def import_progress_from_file(path: Path) -> Result[MigrationProgress, ProgressError]:
    if not path.exists():
        return Failure(
            ProgressError(ProgressErrorKind.FILE_NOT_FOUND, "Import file not found", str(path))
        )
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        return Failure(
            ProgressError(
                ProgressErrorKind.FILE_CORRUPTED, f"Cannot read import file: {e}", str(path)
            )
        )
    result = import_progress(text)
    if isinstance(result, Failure):
        return Failure(replace(result.error, path=str(path)))
    return result


# ---------------------------------------------------------------------------
# Pure updates
# ---------------------------------------------------------------------------


def recalculate_stats(progress: MigrationProgress) -> MigrationProgress:
    """Re-derive the aggregate counters from the dialog records and events."""
    dialogs = progress.dialogs.values()
    stats = replace(
        progress.stats,
        total_dialogs=len(progress.dialogs),
        completed_dialogs=sum(1 for d in dialogs if d.status == DialogStatus.COMPLETED),
        failed_dialogs=sum(1 for d in dialogs if d.status == DialogStatus.FAILED),
        skipped_dialogs=sum(1 for d in dialogs if d.status == DialogStatus.SKIPPED),
        total_messages=sum(d.total_count for d in dialogs),
        migrated_messages=sum(d.migrated_count for d in dialogs),
        rate_exceeded_count=len(progress.rate_exceeded_events),
        total_rate_exceeded_seconds=sum(e.seconds for e in progress.rate_exceeded_events),
    )
    return replace(progress, stats=stats)


def _with_dialog(progress: MigrationProgress, dialog: DialogProgress) -> MigrationProgress:
    dialogs = {**progress.dialogs, dialog.dialog_id: dialog}
    return recalculate_stats(replace(progress, dialogs=dialogs))


def _editable(progress: MigrationProgress, dialog_id: str) -> Optional[DialogProgress]:
    """The dialog record if it exists and may still change."""
    dialog = progress.dialogs.get(dialog_id)
    if dialog is None or dialog.is_completed:
        return None
    return dialog


def _max_id(current: Optional[int], new: Optional[int]) -> Optional[int]:
    if new is None:
        return current
    if current is None:
        return new
    return max(current, new)


def initialize_dialog(
    progress: MigrationProgress, conversation: ConversationInfo
) -> MigrationProgress:
    """Add a Pending record for a newly enumerated conversation."""
    if conversation.id in progress.dialogs:
        return progress
    dialog = DialogProgress(
        dialog_id=conversation.id,
        dialog_name=conversation.name,
        dialog_type=conversation.type,
        total_count=conversation.message_count,
    )
    return _with_dialog(progress, dialog)


def set_dialog_total(
    progress: MigrationProgress, dialog_id: str, total_count: int
) -> MigrationProgress:
    """Replace the expected message count once the history has been walked."""
    dialog = _editable(progress, dialog_id)
    if dialog is None or dialog.total_count == total_count:
        return progress
    return _with_dialog(progress, replace(dialog, total_count=max(total_count, 0)))


def mark_dialog_started(
    progress: MigrationProgress, dialog_id: str, destination_id: str
) -> MigrationProgress:
    dialog = _editable(progress, dialog_id)
    if dialog is None:
        return progress
    return _with_dialog(
        progress,
        replace(
            dialog,
            status=DialogStatus.IN_PROGRESS,
            destination_id=destination_id,
            started_at=dialog.started_at or now_iso(),
        ),
    )


def update_dialog_progress(
    progress: MigrationProgress,
    dialog_id: str,
    last_message_id: int,
    message_count: int,
) -> MigrationProgress:
    """
    Record a forwarded batch.

    Moves the dialog's last message id forward (never backward), adds
    ``message_count`` to its migrated count and marks it InProgress.
    Unknown or completed dialogs are returned unchanged.
    """
    dialog = _editable(progress, dialog_id)
    if dialog is None:
        return progress
    return _with_dialog(
        progress,
        replace(
            dialog,
            status=DialogStatus.IN_PROGRESS,
            last_message_id=_max_id(dialog.last_message_id, last_message_id),
            migrated_count=dialog.migrated_count + max(message_count, 0),
            started_at=dialog.started_at or now_iso(),
        ),
    )


def mark_dialog_complete(progress: MigrationProgress, dialog_id: str) -> MigrationProgress:
    dialog = _editable(progress, dialog_id)
    if dialog is None:
        return progress
    return _with_dialog(
        progress,
        replace(dialog, status=DialogStatus.COMPLETED, completed_at=now_iso()),
    )


def add_dialog_error(
    progress: MigrationProgress,
    dialog_id: str,
    error_type: str,
    error_message: str,
    message_id: Optional[int] = None,
) -> MigrationProgress:
    dialog = _editable(progress, dialog_id)
    if dialog is None:
        return progress
    error = DialogError(
        timestamp=now_iso(),
        error_type=error_type,
        error_message=error_message,
        message_id=message_id,
    )
    return _with_dialog(progress, replace(dialog, errors=dialog.errors + (error,)))


def mark_dialog_failed(
    progress: MigrationProgress,
    dialog_id: str,
    error_message: str,
    message_id: Optional[int] = None,
    error_type: str = "migration_failed",
) -> MigrationProgress:
    progress = add_dialog_error(progress, dialog_id, error_type, error_message, message_id)
    dialog = _editable(progress, dialog_id)
    if dialog is None:
        return progress
    return _with_dialog(progress, replace(dialog, status=DialogStatus.FAILED))


def mark_dialog_partially_migrated(
    progress: MigrationProgress,
    dialog_id: str,
    last_message_id: Optional[int] = None,
    reason: str = "",
) -> MigrationProgress:
    """Mark a dialog whose forwarding was halted but can be resumed later."""
    if reason:
        progress = add_dialog_error(
            progress, dialog_id, "rate_exceeded", reason, last_message_id
        )
    dialog = _editable(progress, dialog_id)
    if dialog is None:
        return progress
    return _with_dialog(
        progress,
        replace(
            dialog,
            status=DialogStatus.PARTIALLY_MIGRATED,
            last_message_id=_max_id(dialog.last_message_id, last_message_id),
        ),
    )


def mark_dialog_skipped(
    progress: MigrationProgress, dialog_id: str, reason: str = ""
) -> MigrationProgress:
    if reason:
        progress = add_dialog_error(progress, dialog_id, "skipped", reason)
    dialog = _editable(progress, dialog_id)
    if dialog is None:
        return progress
    return _with_dialog(progress, replace(dialog, status=DialogStatus.SKIPPED))


def add_failed_messages(
    progress: MigrationProgress, dialog_id: str, count: int
) -> MigrationProgress:
    """Count items that could not be forwarded."""
    if count <= 0 or dialog_id not in progress.dialogs:
        return progress
    stats = replace(
        progress.stats, failed_messages=progress.stats.failed_messages + count
    )
    return replace(progress, stats=stats)


def record_rate_exceeded_event(
    progress: MigrationProgress,
    seconds: float,
    operation: str,
    timestamp: Optional[str] = None,
) -> MigrationProgress:
    event = RateExceededEvent(
        timestamp=timestamp or now_iso(), seconds=seconds, operation=operation
    )
    return recalculate_stats(
        replace(progress, rate_exceeded_events=progress.rate_exceeded_events + (event,))
    )


def set_phase(progress: MigrationProgress, phase: MigrationPhase) -> MigrationProgress:
    if progress.current_phase == phase:
        return progress
    return replace(progress, current_phase=phase)


def set_accounts(
    progress: MigrationProgress, source_account: str, target_account: str
) -> MigrationProgress:
    return replace(
        progress, source_account=source_account, target_account=target_account
    )


def get_resume_point(progress: MigrationProgress, dialog_id: str) -> Optional[int]:
    """Last forwarded message id of an interrupted dialog, or None to start over."""
    dialog = progress.dialogs.get(dialog_id)
    if dialog is None or dialog.status not in _RESUMABLE_STATUSES:
        return None
    return dialog.last_message_id


def get_dialog_status(
    progress: MigrationProgress, dialog_id: str
) -> Optional[DialogStatus]:
    dialog = progress.dialogs.get(dialog_id)
    return dialog.status if dialog is not None else None


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def _further_along(current: DialogProgress, candidate: DialogProgress) -> DialogProgress:
    if current.is_completed:
        return current
    if candidate.is_completed:
        return candidate
    current_id = current.last_message_id if current.last_message_id is not None else -1
    candidate_id = (
        candidate.last_message_id if candidate.last_message_id is not None else -1
    )
    return candidate if candidate_id > current_id else current


def merge_progress(
    existing: MigrationProgress,
    imported: MigrationProgress,
    strategy: MergeStrategy = MergeStrategy.OVERWRITE_ALL,
) -> MigrationProgress:
    """
    Combine an imported snapshot with the existing one.

    - ``overwrite_all``: the imported snapshot replaces everything
    - ``skip_completed``: imported dialogs win unless the existing one is completed
    - ``merge_progress``: per dialog, the record that got further wins

    Args:
        existing: Snapshot currently on disk
        imported: Snapshot read from an export
        strategy: How conflicts are resolved

    Returns:
        The merged snapshot with recalculated stats
    """
    if strategy == MergeStrategy.OVERWRITE_ALL:
        return recalculate_stats(imported)

    dialogs = dict(existing.dialogs)
    for dialog_id, candidate in imported.dialogs.items():
        current = dialogs.get(dialog_id)
        if current is None:
            dialogs[dialog_id] = candidate
        elif strategy == MergeStrategy.SKIP_COMPLETED:
            if not current.is_completed:
                dialogs[dialog_id] = candidate
        else:
            dialogs[dialog_id] = _further_along(current, candidate)

    known_events = set(existing.rate_exceeded_events)
    events = existing.rate_exceeded_events + tuple(
        e for e in imported.rate_exceeded_events if e not in known_events
    )

    merged = replace(existing, dialogs=dialogs, rate_exceeded_events=events)
    return recalculate_stats(merged)
