"""Per-conversation history forwarding.

Walks a conversation's history newest to oldest in pages, then forwards it
oldest first in bounded batches. Partial batch failures are recorded and the
next batch is still attempted; a rate-exceeded signal halts the conversation
so the orchestrator can decide when to resume. The outcome is always returned
as a :class:`DialogMigrationResult`, never raised.
"""

from __future__ import annotations

import itertools
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from dialog_migrator.constants import DEFAULT_BATCH_SIZE
from dialog_migrator.exceptions import RateExceededError
from dialog_migrator.services.client import RemoteClient
from dialog_migrator.services.rate_limiter import RateLimiter
from dialog_migrator.types import ConversationInfo, DateRange, MessagePage
from dialog_migrator.utils.logging import log_with_context


class ForwarderState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    FORWARDING = "forwarding"
    RATE_EXCEEDED = "rate_exceeded"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"


class ProgressEventKind(str, Enum):
    DIALOG_STARTED = "dialog_started"
    BATCH_COMPLETED = "batch_completed"
    DIALOG_COMPLETED = "dialog_completed"
    RATE_EXCEEDED = "rate_exceeded"


@dataclass(frozen=True)
class ProgressEvent:
    """Progress notification emitted while a conversation is forwarded."""

    kind: ProgressEventKind
    dialog_id: str
    dialog_name: str = ""
    total: int = 0
    migrated: int = 0
    batch_count: int = 0
    last_message_id: Optional[int] = None
    rate_exceeded_seconds: Optional[float] = None
    operation: Optional[str] = None


ProgressCallback = Callable[[ProgressEvent], Awaitable[Any]]


@dataclass(frozen=True)
class DialogMigrationResult:
    """Outcome of forwarding one conversation."""

    dialog_id: str
    migrated_count: int
    failed_count: int
    success: bool
    errors: tuple[str, ...]
    final_state: ForwarderState
    total_messages: int = 0
    last_message_id: Optional[int] = None
    rate_exceeded_seconds: Optional[float] = None

    @property
    def rate_exceeded(self) -> bool:
        return self.final_state == ForwarderState.RATE_EXCEEDED

    @property
    def interrupted(self) -> bool:
        return self.final_state == ForwarderState.INTERRUPTED


class ForwardIdSource:
    """Unique per-item identifiers for forward requests.

    A monotonic counter seeded from a 62-bit random value: ids never repeat
    within a run and are unpredictable across runs.
    """

    def __init__(self, seed: Optional[int] = None) -> None:
        start = seed if seed is not None else secrets.randbits(62)
        self._counter = itertools.count(start)

    def next_ids(self, count: int) -> list[int]:
        return [next(self._counter) for _ in range(count)]


def rate_exceeded_message(seconds: float, operation: str) -> str:
    return f"Rate exceeded during {operation}: platform requested a {seconds}s wait"


class ConversationForwarder:
    """Fetches and forwards the history of one conversation at a time."""

    def __init__(
        self,
        client: RemoteClient,
        limiter: RateLimiter,
        batch_size: int = DEFAULT_BATCH_SIZE,
        id_source: Optional[ForwardIdSource] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.client = client
        self.limiter = limiter
        self.batch_size = batch_size
        self.id_source = id_source or ForwardIdSource()
        self.state = ForwarderState.IDLE

    # ------------------------------------------------------------------
    # Paging
    # ------------------------------------------------------------------

    async def fetch_page(
        self,
        conversation: ConversationInfo,
        cursor: Optional[int] = None,
        limit: Optional[int] = None,
        date_range: Optional[DateRange] = None,
    ) -> MessagePage:
        """
        Fetch one page of history older than ``cursor``.

        Items outside ``date_range`` are dropped here. The page reports more
        history only when the platform returned a full page and something
        survived the date filter.
        """
        limit = limit or self.batch_size
        await self.limiter.acquire()
        raw = await self.client.fetch_message_page(conversation, cursor, limit, date_range)

        items = tuple(
            m for m in raw if date_range is None or date_range.contains(m.date)
        )
        has_more = len(raw) >= limit and bool(items)
        next_cursor = items[-1].message_id if has_more else None
        return MessagePage(items=items, has_more=has_more, next_cursor=next_cursor)

    async def collect_message_ids(
        self,
        conversation: ConversationInfo,
        date_range: Optional[DateRange] = None,
        resume_from: Optional[int] = None,
    ) -> list[int]:
        """
        Collect the ids still to forward, oldest first.

        When ``resume_from`` is given, ids at or below it were already
        forwarded; paging stops as soon as it reaches them.
        """
        ids: list[int] = []
        cursor: Optional[int] = None

        while True:
            page = await self.fetch_page(conversation, cursor, self.batch_size, date_range)

            reached_resume_point = False
            for item in page.items:
                if resume_from is not None and item.message_id <= resume_from:
                    reached_resume_point = True
                    break
                ids.append(item.message_id)

            if reached_resume_point or not page.has_more:
                break
            cursor = page.next_cursor

        ids.reverse()
        return ids

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    async def migrate_dialog(
        self,
        conversation: ConversationInfo,
        destination_id: str,
        on_progress: Optional[ProgressCallback] = None,
        resume_from: Optional[int] = None,
        date_range: Optional[DateRange] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> DialogMigrationResult:
        """
        Forward the history of ``conversation`` to ``destination_id``.

        Args:
            conversation: Source conversation
            destination_id: Where items are forwarded to
            on_progress: Async callback receiving progress events
            resume_from: Last id already forwarded in an earlier attempt
            date_range: Only forward items inside this inclusive window
            should_stop: Polled before every batch; True halts the loop

        Returns:
            The per-conversation result (never raises for remote failures)
        """
        dialog_id = conversation.id
        migrated = 0
        failed = 0
        errors: list[str] = []
        last_id = resume_from

        def finish(
            state: ForwarderState, total: int = 0, rate_seconds: Optional[float] = None
        ) -> DialogMigrationResult:
            self.state = state
            return DialogMigrationResult(
                dialog_id=dialog_id,
                migrated_count=migrated,
                failed_count=failed,
                success=state == ForwarderState.COMPLETED,
                errors=tuple(errors),
                final_state=state,
                total_messages=total,
                last_message_id=last_id,
                rate_exceeded_seconds=rate_seconds,
            )

        self.state = ForwarderState.FETCHING
        log_with_context(
            logging.INFO,
            f"Collecting messages for '{conversation.name}'"
            + (f" (resuming after {resume_from})" if resume_from is not None else ""),
            dialog=dialog_id,
        )

        try:
            ids = await self.collect_message_ids(conversation, date_range, resume_from)
        except RateExceededError as e:
            errors.append(rate_exceeded_message(e.seconds, "fetch_message_page"))
            await self._emit(
                on_progress,
                ProgressEvent(
                    kind=ProgressEventKind.RATE_EXCEEDED,
                    dialog_id=dialog_id,
                    dialog_name=conversation.name,
                    rate_exceeded_seconds=e.seconds,
                    operation="fetch_message_page",
                ),
            )
            return finish(ForwarderState.RATE_EXCEEDED, rate_seconds=e.seconds)
        except Exception as e:  # Any client failure ends this conversation only
            errors.append(f"Failed to fetch messages: {e}")
            log_with_context(
                logging.ERROR,
                f"Failed to fetch messages for '{conversation.name}': {e}",
                dialog=dialog_id,
            )
            return finish(ForwarderState.FAILED)

        total = len(ids)
        log_with_context(
            logging.INFO,
            f"Forwarding {total} messages from '{conversation.name}' in batches of {self.batch_size}",
            dialog=dialog_id,
        )
        await self._emit(
            on_progress,
            ProgressEvent(
                kind=ProgressEventKind.DIALOG_STARTED,
                dialog_id=dialog_id,
                dialog_name=conversation.name,
                total=total,
            ),
        )

        self.state = ForwarderState.FORWARDING
        batches = [ids[i : i + self.batch_size] for i in range(0, total, self.batch_size)]

        for number, batch in enumerate(batches, start=1):
            if should_stop is not None and should_stop():
                log_with_context(
                    logging.WARNING,
                    f"Stopping '{conversation.name}' before batch {number}/{len(batches)}",
                    dialog=dialog_id,
                )
                return finish(ForwarderState.INTERRUPTED, total)

            await self.limiter.acquire()
            try:
                outcome = await self.client.forward_batch(
                    dialog_id, destination_id, batch, self.id_source.next_ids(len(batch))
                )
            except RateExceededError as e:
                # Halt; the orchestrator owns the retry policy
                errors.append(rate_exceeded_message(e.seconds, "forward_batch"))
                log_with_context(
                    logging.WARNING,
                    f"Rate exceeded on batch {number}/{len(batches)} of '{conversation.name}', "
                    f"halting ({e.seconds}s requested)",
                    dialog=dialog_id,
                )
                await self._emit(
                    on_progress,
                    ProgressEvent(
                        kind=ProgressEventKind.RATE_EXCEEDED,
                        dialog_id=dialog_id,
                        dialog_name=conversation.name,
                        total=total,
                        migrated=migrated,
                        last_message_id=last_id,
                        rate_exceeded_seconds=e.seconds,
                        operation="forward_batch",
                    ),
                )
                return finish(ForwarderState.RATE_EXCEEDED, total, e.seconds)
            except Exception as e:  # A failed batch is recorded; later batches still run
                failed += len(batch)
                errors.append(f"Batch {number} ({batch[0]}-{batch[-1]}) failed: {e}")
                log_with_context(
                    logging.ERROR,
                    f"Batch {number}/{len(batches)} of '{conversation.name}' failed: {e}",
                    dialog=dialog_id,
                )
                continue

            migrated += outcome.success_count
            failed += len(outcome.failed_ids)
            if outcome.failed_ids:
                log_with_context(
                    logging.WARNING,
                    f"{len(outcome.failed_ids)} messages of batch {number} were rejected",
                    dialog=dialog_id,
                )
            last_id = batch[-1] if last_id is None else max(last_id, batch[-1])

            await self._emit(
                on_progress,
                ProgressEvent(
                    kind=ProgressEventKind.BATCH_COMPLETED,
                    dialog_id=dialog_id,
                    dialog_name=conversation.name,
                    total=total,
                    migrated=migrated,
                    batch_count=outcome.success_count,
                    last_message_id=batch[-1],
                ),
            )

        if errors or failed:
            return finish(ForwarderState.FAILED, total)

        await self._emit(
            on_progress,
            ProgressEvent(
                kind=ProgressEventKind.DIALOG_COMPLETED,
                dialog_id=dialog_id,
                dialog_name=conversation.name,
                total=total,
                migrated=migrated,
                last_message_id=last_id,
            ),
        )
        log_with_context(
            logging.INFO,
            f"Forwarded {migrated}/{total} messages from '{conversation.name}'",
            dialog=dialog_id,
        )
        return finish(ForwarderState.COMPLETED, total)

    @staticmethod
    async def _emit(callback: Optional[ProgressCallback], event: ProgressEvent) -> None:
        if callback is not None:
            await callback(event)
