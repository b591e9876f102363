"""Abstract interface for chat platform event sources."""

from collections.abc import AsyncIterator
from typing import Protocol

from ..models.message import ChatEvent


class ChatEventSource(Protocol):
    """Inbound side of a chat platform.

    This protocol defines the contract that chat adapters must implement to
    feed messages and reactions into the router.
    """

    async def connect(self) -> None:
        """
        Establish connection to the chat platform.

        Raises:
            ConnectionError: If connection fails
        """
        ...

    async def disconnect(self) -> None:
        """Gracefully close the connection."""
        ...

    def listen(self) -> AsyncIterator[ChatEvent]:
        """
        Yield messages and reactions from monitored channels.

        Example:
            async for event in source.listen():
                await service.handle_event(event)
        """
        ...

    async def add_reaction(self, channel_id: str, message_id: str, reaction: str) -> None:
        """
        Add a reaction to a message.

        Used to acknowledge that a question is being tracked.
        """
        ...

    async def get_thread_id(self, channel_id: str, message_id: str) -> str | None:
        """Return the thread root of a message, or None if it is not in a thread."""
        ...
