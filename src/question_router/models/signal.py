"""Answer signals consumed by the reconciler."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

MAX_SNOOZE_MINUTES = 7 * 24 * 60


@dataclass(frozen=True)
class MarkerReaction:
    """Answered marker placed on the original question message."""

    workspace_id: str
    message_id: str
    user_id: str


@dataclass(frozen=True)
class ReplyConfirmation:
    """Answered marker placed on a reply inside the question's thread."""

    workspace_id: str
    thread_id: str
    reply_message_id: str
    reply_author_id: str
    confirmed_by: str


@dataclass(frozen=True)
class ThreadReply:
    """A reply posted in the question's thread."""

    workspace_id: str
    thread_id: str
    reply_message_id: str
    author_id: str
    is_bot: bool = False


@dataclass(frozen=True)
class Dismiss:
    workspace_id: str
    message_id: str
    user_id: str


@dataclass(frozen=True)
class Snooze:
    """Pause escalation for ``duration_minutes``."""

    workspace_id: str
    message_id: str
    duration_minutes: int
    user_id: str | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.duration_minutes <= MAX_SNOOZE_MINUTES:
            raise ValueError(
                f"Snooze duration must be between 1 and {MAX_SNOOZE_MINUTES} minutes"
            )


@dataclass(frozen=True)
class Acknowledge:
    """Someone is looking at the question; push the next escalation back."""

    workspace_id: str
    message_id: str
    user_id: str


AnswerSignal = (
    MarkerReaction | ReplyConfirmation | ThreadReply | Dismiss | Snooze | Acknowledge
)


class ReconcileOutcome(StrEnum):
    """What the reconciler did with a signal."""

    APPLIED = "applied"
    IGNORED = "ignored"
    NOT_TRACKED = "not_tracked"
