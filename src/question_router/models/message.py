"""Data models for chat events."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class ChatMessage:
    """An incoming message from a chat platform."""

    workspace_id: str
    channel_id: str
    message_id: str
    thread_id: str | None  # None if not in a thread
    user_id: str
    text: str
    timestamp: datetime
    is_bot: bool = False
    bot_name: str | None = None

    # Platform-specific metadata
    raw_event: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_thread_reply(self) -> bool:
        return self.thread_id is not None and self.thread_id != self.message_id


@dataclass(frozen=True)
class ReactionEvent:
    """An emoji reaction added to a message."""

    workspace_id: str
    channel_id: str
    message_id: str
    user_id: str
    reaction: str
    timestamp: datetime
    item_user_id: str | None = None  # Author of the reacted-to message


ChatEvent = ChatMessage | ReactionEvent


class IntakeResult(Enum):
    """Outcome of handling a top-level message."""

    NOT_A_QUESTION = "not_a_question"
    TRACKED = "tracked"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
