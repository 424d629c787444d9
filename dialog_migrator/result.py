"""Tagged success/failure results passed between components.

Components never raise across their boundaries. They return either
``Success(value)`` or ``Failure(error)`` where ``error`` is one of the error
records below: a ``kind`` plus whatever context the caller needs to render a
message or make a decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Success(Generic[T]):
    """A successful outcome carrying a value."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure(Generic[E]):
    """A failed outcome carrying an error record."""

    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Success[T], Failure[E]]


# ---------------------------------------------------------------------------
# Error records
# ---------------------------------------------------------------------------


class ProgressErrorKind(str, Enum):
    FILE_NOT_FOUND = "file_not_found"
    FILE_CORRUPTED = "file_corrupted"
    WRITE_FAILED = "write_failed"
    INVALID_FORMAT = "invalid_format"


@dataclass(frozen=True)
class ProgressError:
    """Failure reading, writing, or validating a progress document."""

    kind: ProgressErrorKind
    message: str
    path: Optional[str] = None

    def __str__(self) -> str:
        where = f" ({self.path})" if self.path else ""
        return f"{self.message}{where}"


class MigrationErrorKind(str, Enum):
    PROGRESS_LOAD_FAILED = "progress_load_failed"
    DIALOG_FETCH_FAILED = "dialog_fetch_failed"
    GROUP_CREATE_FAILED = "group_create_failed"
    INVITE_FAILED = "invite_failed"
    FORWARD_FAILED = "forward_failed"
    RATE_EXCEEDED = "rate_exceeded"
    ABORTED = "aborted"


@dataclass(frozen=True)
class MigrationError:
    """Failure of the run as a whole or of a single conversation."""

    kind: MigrationErrorKind
    message: str
    dialog_id: Optional[str] = None

    def __str__(self) -> str:
        return self.message


class SyncErrorKind(str, Enum):
    LISTENER_INIT_FAILED = "listener_init_failed"
    FORWARD_FAILED = "forward_failed"
    NOT_LISTENING = "not_listening"


@dataclass(frozen=True)
class SyncError:
    """Failure inside the realtime sync queue."""

    kind: SyncErrorKind
    message: str
    dialog_id: Optional[str] = None

    def __str__(self) -> str:
        return self.message
