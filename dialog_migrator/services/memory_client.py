"""In-memory remote client.

Implements the :class:`~dialog_migrator.services.client.RemoteClient`
protocol over plain dictionaries. Return values have the same shapes the
migration reads from a real client. Failures (including rate-exceeded
signals) can be scripted per operation, and live messages can be pushed to
registered handlers, which makes this the client the test suite drives the
migration with.
"""

from __future__ import annotations

import itertools
import logging
from collections import defaultdict, deque
from typing import Any, Iterable, Optional, Sequence

from dialog_migrator.services.client import NewMessageHandler
from dialog_migrator.types import (
    ConversationInfo,
    DateRange,
    DestinationInfo,
    ForwardResult,
    MessageInfo,
)
from dialog_migrator.utils.logging import log_with_context


class InMemoryClient:
    """Dictionary-backed stand-in for the remote platform."""

    def __init__(
        self,
        conversations: Iterable[ConversationInfo] = (),
        entities: Optional[dict[str, Any]] = None,
    ) -> None:
        self.conversations: list[ConversationInfo] = []
        self.messages: dict[str, list[MessageInfo]] = {}
        self.destinations: dict[str, DestinationInfo] = {}
        self.forwarded: dict[str, list[int]] = defaultdict(list)
        self.random_ids: list[int] = []
        self.invites: list[tuple[str, str]] = []
        self.entities: dict[str, Any] = dict(entities or {})
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.connected = False

        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)
        self._handlers: dict[int, tuple[str, NewMessageHandler]] = {}
        self._handle_ids = itertools.count(1)
        self._destination_ids = itertools.count(1)

        for conversation in conversations:
            self.add_conversation(conversation)

    # ------------------------------------------------------------------
    # Scripting helpers
    # ------------------------------------------------------------------

    def add_conversation(
        self,
        conversation: ConversationInfo,
        messages: Iterable[MessageInfo] = (),
    ) -> None:
        self.conversations.append(conversation)
        self.messages[conversation.id] = sorted(messages, key=lambda m: m.message_id)

    def fail_next(self, operation: str, error: BaseException, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        for _ in range(times):
            self._failures[operation].append(error)

    def emit_new_message(self, conversation_id: str, message: MessageInfo) -> None:
        """Simulate a message arriving in a source conversation."""
        self.messages.setdefault(conversation_id, []).append(message)
        for registered_id, handler in list(self._handlers.values()):
            if registered_id == conversation_id:
                handler(message)

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        failures = self._failures.get(operation)
        if failures:
            error = failures.popleft()
            log_with_context(
                logging.DEBUG,
                f"[IN MEMORY] Scripted failure for {operation}: {error}",
                component="memory_client",
            )
            raise error

    # ------------------------------------------------------------------
    # RemoteClient protocol
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def enumerate_conversations(self) -> list[ConversationInfo]:
        self._enter("enumerate_conversations")
        return list(self.conversations)

    async def fetch_message_page(
        self,
        conversation: ConversationInfo,
        cursor: Optional[int],
        limit: int,
        date_range: Optional[DateRange],
    ) -> Sequence[MessageInfo]:
        self._enter("fetch_message_page", conversation.id, cursor, limit)
        history = self.messages.get(conversation.id, [])
        older = [m for m in history if cursor is None or m.message_id < cursor]
        older.sort(key=lambda m: m.message_id, reverse=True)
        return older[:limit]

    async def forward_batch(
        self,
        from_peer: str,
        to_peer: str,
        message_ids: Sequence[int],
        random_ids: Sequence[int],
    ) -> ForwardResult:
        self._enter("forward_batch", from_peer, to_peer, tuple(message_ids))
        if len(message_ids) != len(random_ids):
            raise ValueError("message_ids and random_ids must have the same length")

        known = {m.message_id for m in self.messages.get(from_peer, [])}
        failed = tuple(i for i in message_ids if i not in known)
        delivered = [i for i in message_ids if i in known]

        self.forwarded[to_peer].extend(delivered)
        self.random_ids.extend(random_ids)
        log_with_context(
            logging.DEBUG,
            f"[IN MEMORY] Forwarded {len(delivered)} messages {from_peer} -> {to_peer}",
            component="memory_client",
        )
        return ForwardResult(success_count=len(delivered), failed_ids=failed)

    async def create_destination(self, title: str) -> DestinationInfo:
        self._enter("create_destination", title)
        destination = DestinationInfo(id=f"dest-{next(self._destination_ids)}", title=title)
        self.destinations[destination.id] = destination
        return destination

    async def invite_recipient(self, destination: DestinationInfo, identifier: str) -> None:
        self._enter("invite_recipient", destination.id, identifier)
        self.invites.append((destination.id, identifier))

    async def resolve_entity(self, identifier: str) -> Optional[Any]:
        self._enter("resolve_entity", identifier)
        return self.entities.get(identifier)

    def add_new_message_handler(
        self, conversation_id: str, handler: NewMessageHandler
    ) -> int:
        self._enter("add_new_message_handler", conversation_id)
        handle = next(self._handle_ids)
        self._handlers[handle] = (conversation_id, handler)
        return handle

    def remove_new_message_handler(self, handle: Any) -> None:
        self._enter("remove_new_message_handler", handle)
        self._handlers.pop(handle, None)

    @property
    def active_handlers(self) -> int:
        return len(self._handlers)
