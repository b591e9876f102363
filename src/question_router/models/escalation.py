"""Data models for escalation configuration, targets and audit events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import ClassVar


class AnswerMode(StrEnum):
    """How a question is recognised as answered."""

    EMOJI_ONLY = "emoji_only"
    THREAD_AUTO = "thread_auto"
    HYBRID = "hybrid"


class TargetType(StrEnum):
    """Stored discriminator for escalation targets."""

    USER = "user"
    USER_GROUP = "user_group"
    CHANNEL = "channel"


@dataclass(frozen=True)
class UserTarget:
    """An individual, notified by direct message."""

    target_type: ClassVar[TargetType] = TargetType.USER

    target_id: str
    display_name: str | None = None


@dataclass(frozen=True)
class UserGroupTarget:
    """A user group, mentioned in the question's thread."""

    target_type: ClassVar[TargetType] = TargetType.USER_GROUP

    target_id: str
    display_name: str | None = None


@dataclass(frozen=True)
class ChannelTarget:
    """A channel, sent an alert linking back to the question."""

    target_type: ClassVar[TargetType] = TargetType.CHANNEL

    target_id: str
    display_name: str | None = None


EscalationTarget = UserTarget | UserGroupTarget | ChannelTarget

_TARGET_CLASSES: dict[TargetType, type[UserTarget] | type[UserGroupTarget] | type[ChannelTarget]] = {
    TargetType.USER: UserTarget,
    TargetType.USER_GROUP: UserGroupTarget,
    TargetType.CHANNEL: ChannelTarget,
}


def target_from_type(
    target_type: TargetType | str,
    target_id: str,
    display_name: str | None = None,
) -> EscalationTarget:
    """Build the target variant for a stored (type, id) pair."""
    cls = _TARGET_CLASSES[TargetType(target_type)]
    return cls(target_id=target_id, display_name=display_name)


@dataclass(frozen=True)
class TargetEntry:
    """A target registered for one escalation level.

    ``channel_id`` set means the entry only applies to that channel.
    """

    workspace_id: str
    level: int
    target: EscalationTarget
    channel_id: str | None = None
    priority: int = 0
    id: int | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.level <= 3:
            raise ValueError(f"Escalation level must be between 1 and 3, got {self.level}")


@dataclass(frozen=True)
class EffectiveConfig:
    """Escalation settings after merging defaults, workspace and channel."""

    first_delay_minutes: int
    second_delay_minutes: int
    final_delay_minutes: int
    answer_mode: AnswerMode = AnswerMode.EMOJI_ONLY
    escalation_enabled: bool = True

    def delay_for(self, level: int) -> timedelta:
        """Cumulative offset from ``asked_at`` at which ``level`` is due."""
        if level <= 0:
            return timedelta(0)
        if level == 1:
            return timedelta(minutes=self.first_delay_minutes)
        if level == 2:
            return timedelta(minutes=self.second_delay_minutes)
        if level == 3:
            return timedelta(minutes=self.final_delay_minutes)
        raise ValueError(f"No delay defined for escalation level {level}")


class EventStatus(StrEnum):
    """Outcome of one escalation attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class EscalationEvent:
    """Audit record for one (question, target, level, attempt).

    Level-wide skips carry no target.
    """

    question_id: str
    level: int
    status: EventStatus
    occurred_at: datetime
    attempt: int = 1
    target_type: TargetType | None = None
    target_id: str | None = None
    detail: str | None = None
    id: int | None = None


class DispatchErrorKind(StrEnum):
    """Why a notification could not be delivered."""

    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (DispatchErrorKind.TRANSIENT, DispatchErrorKind.TIMEOUT)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a single dispatch call."""

    success: bool
    message_id: str | None = None
    error_kind: DispatchErrorKind | None = None
    error_detail: str | None = None

    @classmethod
    def delivered(cls, message_id: str | None) -> DispatchResult:
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, kind: DispatchErrorKind, detail: str) -> DispatchResult:
        return cls(success=False, error_kind=kind, error_detail=detail)

    @property
    def retryable(self) -> bool:
        return not self.success and self.error_kind is not None and self.error_kind.retryable


@dataclass(frozen=True)
class Notification:
    """A rendered outbound message."""

    channel_id: str
    text: str
    thread_id: str | None = None
    unfurl_links: bool = False


@dataclass(frozen=True)
class TargetValidation:
    """Whether a target exists and can receive notifications."""

    valid: bool
    reason: str | None = None
