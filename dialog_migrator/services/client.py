"""Remote client contract.

The migration core never talks to the platform directly. Everything goes
through an object implementing :class:`RemoteClient`; wire protocol,
authentication and entity resolution live behind it. Any method may raise
:class:`~dialog_migrator.exceptions.RateExceededError` to ask the caller to
pause for a number of seconds.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

from dialog_migrator.types import (
    ConversationInfo,
    DateRange,
    DestinationInfo,
    ForwardResult,
    MessageInfo,
)

NewMessageHandler = Callable[[MessageInfo], None]


@runtime_checkable
class RemoteClient(Protocol):
    """Operations the migration needs from the remote platform."""

    async def enumerate_conversations(self) -> list[ConversationInfo]:
        """List every conversation of the source account."""
        ...

    async def fetch_message_page(
        self,
        conversation: ConversationInfo,
        cursor: Optional[int],
        limit: int,
        date_range: Optional[DateRange],
    ) -> Sequence[MessageInfo]:
        """Return up to ``limit`` items older than ``cursor``, newest first.

        ``date_range`` is a hint; the forwarder filters the page itself.
        """
        ...

    async def forward_batch(
        self,
        from_peer: str,
        to_peer: str,
        message_ids: Sequence[int],
        random_ids: Sequence[int],
    ) -> ForwardResult:
        """Forward ``message_ids`` keeping the original sender attribution."""
        ...

    async def create_destination(self, title: str) -> DestinationInfo: ...

    async def invite_recipient(
        self, destination: DestinationInfo, identifier: str
    ) -> None: ...

    async def resolve_entity(self, identifier: str) -> Optional[Any]:
        """Return the platform entity for ``identifier`` or None."""
        ...

    def add_new_message_handler(
        self, conversation_id: str, handler: NewMessageHandler
    ) -> Any:
        """Subscribe to new items of one conversation; returns a handle."""
        ...

    def remove_new_message_handler(self, handle: Any) -> None: ...


async def maybe_connect(client: Any) -> None:
    """Call ``client.connect()`` when the client has one."""
    connect = getattr(client, "connect", None)
    if connect is not None:
        await connect()


async def maybe_disconnect(client: Any) -> None:
    """Call ``client.disconnect()`` when the client has one."""
    disconnect = getattr(client, "disconnect", None)
    if disconnect is not None:
        await disconnect()
