"""Shared type definitions for the conversation migration tool.

Provides the enums used by progress tracking, the value objects exchanged
with the remote client, and TypedDicts describing the on-disk progress file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, TypedDict

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DialogType(str, Enum):
    """Kind of source conversation."""

    PRIVATE = "private"
    GROUP = "group"
    SUPERGROUP = "supergroup"
    CHANNEL = "channel"
    BOT = "bot"


class DialogStatus(str, Enum):
    """Migration status of a single conversation."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PARTIALLY_MIGRATED = "partially_migrated"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class MigrationPhase(str, Enum):
    """Top-level phase of a migration run."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    ENUMERATING_CONVERSATIONS = "enumerating_conversations"
    CREATING_DESTINATIONS = "creating_destinations"
    FORWARDING_CONTENT = "forwarding_content"
    COMPLETED = "completed"


class MergeStrategy(str, Enum):
    """How an imported progress document is combined with the existing one."""

    OVERWRITE_ALL = "overwrite_all"
    SKIP_COMPLETED = "skip_completed"
    MERGE_PROGRESS = "merge_progress"


# ---------------------------------------------------------------------------
# Remote client value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversationInfo:
    """A conversation owned by the source account."""

    id: str
    name: str
    type: DialogType
    message_count: int = 0
    unread_count: int = 0
    last_message_date: Optional[datetime] = None
    is_archived: bool = False
    entity: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class MessageInfo:
    """A single history item, as annotated by the forwarder."""

    message_id: int
    date: datetime
    has_media: bool = False
    payload: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class DateRange:
    """Inclusive date window; either end may be open."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, moment: datetime) -> bool:
        moment = _as_utc(moment)
        if self.start is not None and moment < _as_utc(self.start):
            return False
        if self.end is not None and moment > _as_utc(self.end):
            return False
        return True


def _as_utc(moment: datetime) -> datetime:
    # Naive datetimes are taken to be UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass(frozen=True)
class MessagePage:
    """One filtered page of conversation history."""

    items: tuple[MessageInfo, ...]
    has_more: bool
    next_cursor: Optional[int]


@dataclass(frozen=True)
class ForwardResult:
    """Outcome of a single forward call."""

    success_count: int
    failed_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class RateExceededEvent:
    """A pause request received from the platform."""

    timestamp: str
    seconds: float
    operation: str


@dataclass(frozen=True)
class DestinationInfo:
    """A destination conversation created on the target side."""

    id: str
    title: str
    entity: Any = field(default=None, compare=False, repr=False)


# ---------------------------------------------------------------------------
# On-disk progress file shapes (camelCase keys)
# ---------------------------------------------------------------------------


class DialogErrorDict(TypedDict, total=False):
    """An error entry inside a dialog record."""

    timestamp: str
    messageId: Optional[int]
    errorType: str
    errorMessage: str


class DialogProgressDict(TypedDict, total=False):
    """A dialog record from the ``dialogs`` map of the progress file."""

    dialogId: str
    dialogName: str
    dialogType: str
    status: str
    destinationId: Optional[str]
    lastMessageId: Optional[int]
    migratedCount: int
    totalCount: int
    errors: list[DialogErrorDict]
    startedAt: Optional[str]
    completedAt: Optional[str]


class RateExceededEventDict(TypedDict):
    """An entry of the ``floodWaitEvents`` list."""

    timestamp: str
    seconds: float
    operation: str


class MigrationStatsDict(TypedDict, total=False):
    """The ``stats`` block of the progress file."""

    totalDialogs: int
    completedDialogs: int
    failedDialogs: int
    skippedDialogs: int
    totalMessages: int
    migratedMessages: int
    failedMessages: int
    floodWaitCount: int
    totalFloodWaitSeconds: float


class MigrationProgressDict(TypedDict, total=False):
    """Root document of the progress file."""

    version: str
    startedAt: str
    updatedAt: str
    sourceAccount: str
    targetAccount: str
    currentPhase: str
    dialogs: dict[str, DialogProgressDict]
    floodWaitEvents: list[RateExceededEventDict]
    stats: MigrationStatsDict
