"""Data models for tracked questions and their lifecycle."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..utils.async_helpers import InvalidTransitionError

# Highest escalation tier; level 0 means "not escalated yet".
MAX_ESCALATION_LEVEL = 3

ANONYMIZED_TEXT = "[DELETED BY USER REQUEST]"


class QuestionStatus(StrEnum):
    """Lifecycle state of a tracked question."""

    UNANSWERED = "unanswered"
    ANSWERED = "answered"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"

    @property
    def is_terminal(self) -> bool:
        return self in (QuestionStatus.ANSWERED, QuestionStatus.DISMISSED)


ALLOWED_TRANSITIONS: dict[QuestionStatus, frozenset[QuestionStatus]] = {
    QuestionStatus.UNANSWERED: frozenset(
        {QuestionStatus.ANSWERED, QuestionStatus.DISMISSED, QuestionStatus.SNOOZED}
    ),
    QuestionStatus.SNOOZED: frozenset(
        {
            QuestionStatus.UNANSWERED,
            QuestionStatus.ANSWERED,
            QuestionStatus.DISMISSED,
            QuestionStatus.SNOOZED,
        }
    ),
    QuestionStatus.ANSWERED: frozenset(),
    QuestionStatus.DISMISSED: frozenset(),
}


def can_transition(current: QuestionStatus, target: QuestionStatus) -> bool:
    """Return True if ``current -> target`` is a legal status change."""
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(current: QuestionStatus, target: QuestionStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is legal."""
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move question from {current} to {target}")


@dataclass(frozen=True)
class Question:
    """A message identified as a question and tracked until resolved."""

    id: str
    workspace_id: str
    channel_id: str
    message_id: str
    asker_id: str
    text: str
    asked_at: datetime
    status: QuestionStatus = QuestionStatus.UNANSWERED
    escalation_level: int = 0
    thread_id: str | None = None
    last_escalated_at: datetime | None = None
    answered_at: datetime | None = None
    answered_by: str | None = None
    answering_message_id: str | None = None
    # First qualifying thread reply; suspends escalation in hybrid mode.
    replied_at: datetime | None = None
    snoozed_until: datetime | None = None
    external_ticket_id: str | None = None
    source_app: str = "slack"
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_escalatable(self) -> bool:
        """True while the question can still move to a higher tier."""
        return (
            self.status == QuestionStatus.UNANSWERED
            and self.escalation_level < MAX_ESCALATION_LEVEL
        )

    def age_minutes(self, now: datetime) -> int:
        return max(0, int((now - self.asked_at).total_seconds() // 60))


@dataclass(frozen=True)
class NewQuestion:
    """Input for creating a question."""

    workspace_id: str
    channel_id: str
    message_id: str
    asker_id: str
    text: str
    asked_at: datetime
    thread_id: str | None = None
    external_ticket_id: str | None = None
    source_app: str = "slack"


# Fields a store may change after creation; identity fields are immutable.
UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "escalation_level",
        "last_escalated_at",
        "answered_at",
        "answered_by",
        "answering_message_id",
        "replied_at",
        "snoozed_until",
        "text",
    }
)


def apply_changes(question: Question, changes: dict[str, Any]) -> Question:
    """Validate ``changes`` against lifecycle rules and return the new row.

    Stores call this for every conditional write, so the rules hold no matter
    which backend persists the question. The returned question carries the
    next version number.

    Raises:
        ValueError: If a field is not updatable.
        InvalidTransitionError: If the status change is illegal or the
            escalation level would decrease or exceed the maximum.
    """
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    values = dict(changes)
    if "status" in values:
        new_status = QuestionStatus(values["status"])
        if new_status != question.status or new_status == QuestionStatus.SNOOZED:
            validate_transition(question.status, new_status)
        values["status"] = new_status

    if "escalation_level" in values:
        level = int(values["escalation_level"])
        if level < question.escalation_level:
            raise InvalidTransitionError(
                f"Escalation level cannot decrease ({question.escalation_level} -> {level})"
            )
        if level > MAX_ESCALATION_LEVEL:
            raise InvalidTransitionError(f"Escalation level {level} exceeds maximum")

    return dataclasses.replace(question, **values, version=question.version + 1)
