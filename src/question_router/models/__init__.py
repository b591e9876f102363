"""Data models and transfer objects."""

from .escalation import (
    AnswerMode,
    ChannelTarget,
    DispatchErrorKind,
    DispatchResult,
    EffectiveConfig,
    EscalationEvent,
    EscalationTarget,
    EventStatus,
    Notification,
    TargetEntry,
    TargetType,
    TargetValidation,
    UserGroupTarget,
    UserTarget,
    target_from_type,
)
from .message import ChatEvent, ChatMessage, IntakeResult, ReactionEvent
from .question import (
    MAX_ESCALATION_LEVEL,
    NewQuestion,
    Question,
    QuestionStatus,
    apply_changes,
    can_transition,
    validate_transition,
)
from .signal import (
    Acknowledge,
    AnswerSignal,
    Dismiss,
    MarkerReaction,
    ReconcileOutcome,
    ReplyConfirmation,
    Snooze,
    ThreadReply,
)

__all__ = [
    # Question models
    "MAX_ESCALATION_LEVEL",
    "NewQuestion",
    "Question",
    "QuestionStatus",
    "apply_changes",
    "can_transition",
    "validate_transition",
    # Escalation models
    "AnswerMode",
    "ChannelTarget",
    "DispatchErrorKind",
    "DispatchResult",
    "EffectiveConfig",
    "EscalationEvent",
    "EscalationTarget",
    "EventStatus",
    "Notification",
    "TargetEntry",
    "TargetType",
    "TargetValidation",
    "UserGroupTarget",
    "UserTarget",
    "target_from_type",
    # Signals
    "Acknowledge",
    "AnswerSignal",
    "Dismiss",
    "MarkerReaction",
    "ReconcileOutcome",
    "ReplyConfirmation",
    "Snooze",
    "ThreadReply",
    # Chat events
    "ChatEvent",
    "ChatMessage",
    "IntakeResult",
    "ReactionEvent",
]
