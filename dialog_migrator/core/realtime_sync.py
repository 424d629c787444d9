"""Capture of messages that arrive while a conversation is being migrated.

While the forwarder walks a conversation's history, new messages keep
arriving. :class:`RealtimeSyncQueue` listens for them, buffers them per
conversation and, once history forwarding is done, replays only those newer
than the last forwarded id so nothing is delivered twice.

All queues, mappings and listener handles belong to one queue instance; the
orchestrator owns that instance for the duration of a run.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from dialog_migrator.constants import DEFAULT_MAX_QUEUE_SIZE, DEFAULT_QUEUE_MAX_RETRIES
from dialog_migrator.core.forwarder import ForwardIdSource
from dialog_migrator.exceptions import RateExceededError
from dialog_migrator.result import Failure, Result, Success, SyncError, SyncErrorKind
from dialog_migrator.services.client import RemoteClient
from dialog_migrator.services.rate_limiter import RateLimiter
from dialog_migrator.types import MessageInfo
from dialog_migrator.utils.formatting import now_iso
from dialog_migrator.utils.logging import log_with_context


@dataclass
class QueuedMessage:
    """A live message waiting to be forwarded."""

    message_id: int
    received_at: str
    payload: Any = None
    retry_count: int = 0


@dataclass
class _ListenerState:
    client: RemoteClient
    handle: Any
    queue: deque[QueuedMessage] = field(default_factory=deque)
    processed: int = 0
    failed: int = 0
    dropped: int = 0


@dataclass(frozen=True)
class QueueStatus:
    dialog_id: str
    pending: int
    processed: int
    failed: int
    dropped: int
    is_listening: bool


@dataclass(frozen=True)
class QueueProcessResult:
    success_count: int
    failed_count: int
    skipped_count: int
    failed_message_ids: tuple[int, ...] = ()
    last_synced_id: Optional[int] = None
    rate_exceeded_seconds: Optional[float] = None


@dataclass
class SyncStats:
    active_listeners: int = 0
    total_received: int = 0
    total_synced: int = 0
    total_failed: int = 0
    total_skipped: int = 0
    total_dropped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "active_listeners": self.active_listeners,
            "total_received": self.total_received,
            "total_synced": self.total_synced,
            "total_failed": self.total_failed,
            "total_skipped": self.total_skipped,
            "total_dropped": self.total_dropped,
        }


class RealtimeSyncQueue:
    """Per-conversation buffers of live messages, replayed after forwarding."""

    def __init__(
        self,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        max_retries: int = DEFAULT_QUEUE_MAX_RETRIES,
        limiter: Optional[RateLimiter] = None,
        id_source: Optional[ForwardIdSource] = None,
    ) -> None:
        if max_queue_size < 1:
            raise ValueError(f"max_queue_size must be >= 1, got {max_queue_size}")
        self.max_queue_size = max_queue_size
        self.max_retries = max_retries
        self._limiter = limiter
        self._id_source = id_source or ForwardIdSource()

        self._listeners: dict[str, _ListenerState] = {}
        self._mappings: dict[str, str] = {}
        self._stats = SyncStats()

    # ------------------------------------------------------------------
    # Listener lifecycle
    # ------------------------------------------------------------------

    def start_listening(
        self, client: RemoteClient, conversation_id: str
    ) -> Result[None, SyncError]:
        """Register a listener for new messages; restarts an existing one."""
        if conversation_id in self._listeners:
            self.stop_listening(conversation_id)

        def handler(message: MessageInfo) -> None:
            self.enqueue(conversation_id, message)

        try:
            handle = client.add_new_message_handler(conversation_id, handler)
        except Exception as e:  # Listener setup is the client's business; report, don't raise
            log_with_context(
                logging.WARNING,
                f"Could not start realtime listener: {e}",
                dialog=conversation_id,
            )
            return Failure(
                SyncError(
                    SyncErrorKind.LISTENER_INIT_FAILED,
                    f"Failed to start listener: {e}",
                    conversation_id,
                )
            )

        self._listeners[conversation_id] = _ListenerState(client=client, handle=handle)
        log_with_context(
            logging.DEBUG, "Realtime listener started", dialog=conversation_id
        )
        return Success(None)

    def stop_listening(self, conversation_id: str) -> None:
        """Remove the listener and drop its queue, mapping and counters."""
        self._mappings.pop(conversation_id, None)
        state = self._listeners.pop(conversation_id, None)
        if state is None:
            return

        if state.queue:
            log_with_context(
                logging.WARNING,
                f"Discarding {len(state.queue)} unsynced live messages",
                dialog=conversation_id,
            )
        try:
            state.client.remove_new_message_handler(state.handle)
        except Exception as e:  # Teardown continues even if the client complains
            log_with_context(
                logging.WARNING,
                f"Failed to remove realtime listener: {e}",
                dialog=conversation_id,
            )
        log_with_context(
            logging.DEBUG, "Realtime listener stopped", dialog=conversation_id
        )

    def stop_all(self) -> None:
        for conversation_id in list(self._listeners):
            self.stop_listening(conversation_id)

    def register_mapping(self, source_id: str, destination_id: str) -> None:
        self._mappings[source_id] = destination_id

    def is_listening(self, conversation_id: str) -> bool:
        return conversation_id in self._listeners

    def get_active_listeners(self) -> list[str]:
        return list(self._listeners)

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def enqueue(self, conversation_id: str, message: MessageInfo) -> bool:
        """
        Buffer a live message. At capacity the oldest entry is dropped.

        Returns:
            False when the conversation has no active listener
        """
        state = self._listeners.get(conversation_id)
        if state is None:
            return False

        if len(state.queue) >= self.max_queue_size:
            self._drop_oldest(state, conversation_id)

        state.queue.append(
            QueuedMessage(
                message_id=message.message_id,
                received_at=now_iso(),
                payload=message.payload,
            )
        )
        self._stats.total_received += 1
        return True

    async def process_queue(
        self, conversation_id: str, last_batch_message_id: Optional[int]
    ) -> Result[QueueProcessResult, SyncError]:
        """
        Forward buffered messages newer than ``last_batch_message_id``.

        Messages at or below that id were already covered by history forwarding
        and are only counted as skipped. Failed deliveries are requeued until
        they reach ``max_retries``, then dropped and reported.

        A rate-exceeded signal ends the pass: the message being forwarded and
        everything after it go back to the queue with their retry counts
        untouched, and the requested wait is returned as
        ``rate_exceeded_seconds`` for the caller to sit through.
        """
        state = self._listeners.get(conversation_id)
        if state is None:
            return Failure(
                SyncError(
                    SyncErrorKind.NOT_LISTENING,
                    "No active listener for conversation",
                    conversation_id,
                )
            )

        pending = sorted(state.queue, key=lambda item: item.message_id)
        # Anything arriving while we forward lands in a fresh queue
        state.queue = deque()
        destination = self._mappings.get(conversation_id)

        success = 0
        skipped = 0
        failed_ids: list[int] = []
        requeue: list[QueuedMessage] = []
        seen: set[int] = set()
        last_synced: Optional[int] = None
        rate_exceeded_seconds: Optional[float] = None

        for index, item in enumerate(pending):
            already_covered = (
                last_batch_message_id is not None
                and item.message_id <= last_batch_message_id
            )
            if already_covered or item.message_id in seen:
                skipped += 1
                continue
            seen.add(item.message_id)

            try:
                forwarded = await self._forward(state, conversation_id, destination, item)
            except RateExceededError as e:
                rate_exceeded_seconds = e.seconds
                requeue.extend(pending[index:])
                break

            if forwarded:
                success += 1
                state.processed += 1
                last_synced = item.message_id
                continue

            item.retry_count += 1
            if item.retry_count >= self.max_retries:
                failed_ids.append(item.message_id)
                state.failed += 1
                log_with_context(
                    logging.ERROR,
                    f"Giving up on live message {item.message_id} after {item.retry_count} attempts",
                    dialog=conversation_id,
                )
            else:
                requeue.append(item)

        state.queue.extendleft(reversed(requeue))
        while len(state.queue) > self.max_queue_size:
            self._drop_oldest(state, conversation_id)

        self._stats.total_synced += success
        self._stats.total_failed += len(failed_ids)
        self._stats.total_skipped += skipped

        if success or failed_ids:
            log_with_context(
                logging.INFO,
                f"Realtime sync: {success} synced, {len(failed_ids)} failed, "
                f"{skipped} skipped, {len(requeue)} requeued",
                dialog=conversation_id,
            )

        return Success(
            QueueProcessResult(
                success_count=success,
                failed_count=len(failed_ids),
                skipped_count=skipped,
                failed_message_ids=tuple(failed_ids),
                last_synced_id=last_synced,
                rate_exceeded_seconds=rate_exceeded_seconds,
            )
        )

    def _drop_oldest(self, state: _ListenerState, conversation_id: str) -> None:
        dropped = state.queue.popleft()
        state.dropped += 1
        self._stats.total_dropped += 1
        log_with_context(
            logging.WARNING,
            f"Realtime queue full ({self.max_queue_size}), dropped message {dropped.message_id}",
            dialog=conversation_id,
        )

    async def _forward(
        self,
        state: _ListenerState,
        conversation_id: str,
        destination: Optional[str],
        item: QueuedMessage,
    ) -> bool:
        if destination is None:
            log_with_context(
                logging.WARNING,
                f"No destination registered, cannot sync message {item.message_id}",
                dialog=conversation_id,
            )
            return False

        if self._limiter is not None:
            await self._limiter.acquire()
        try:
            outcome = await state.client.forward_batch(
                conversation_id, destination, [item.message_id], self._id_source.next_ids(1)
            )
        except RateExceededError as e:
            if self._limiter is not None:
                self._limiter.record_rate_exceeded(e.seconds, "realtime_sync")
            log_with_context(
                logging.WARNING,
                f"Rate exceeded syncing message {item.message_id} ({e.seconds}s)",
                dialog=conversation_id,
            )
            raise
        except Exception as e:  # Counted against the message's retry budget
            log_with_context(
                logging.WARNING,
                f"Failed to sync message {item.message_id}: {e}",
                dialog=conversation_id,
            )
            return False
        return outcome.success_count > 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_queue_status(self, conversation_id: str) -> Optional[QueueStatus]:
        state = self._listeners.get(conversation_id)
        if state is None:
            return None
        return QueueStatus(
            dialog_id=conversation_id,
            pending=len(state.queue),
            processed=state.processed,
            failed=state.failed,
            dropped=state.dropped,
            is_listening=True,
        )

    def get_stats(self) -> SyncStats:
        return SyncStats(
            active_listeners=len(self._listeners),
            total_received=self._stats.total_received,
            total_synced=self._stats.total_synced,
            total_failed=self._stats.total_failed,
            total_skipped=self._stats.total_skipped,
            total_dropped=self._stats.total_dropped,
        )

    def get_pending_ids(self, conversation_id: str) -> list[int]:
        state = self._listeners.get(conversation_id)
        return [item.message_id for item in state.queue] if state else []
