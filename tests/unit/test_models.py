"""Tests for question, escalation and signal models."""

from datetime import timedelta

import pytest
from conftest import T0

from question_router.models.escalation import (
    ChannelTarget,
    DispatchErrorKind,
    DispatchResult,
    EffectiveConfig,
    TargetEntry,
    TargetType,
    UserGroupTarget,
    UserTarget,
    target_from_type,
)
from question_router.models.message import ChatMessage
from question_router.models.question import (
    MAX_ESCALATION_LEVEL,
    Question,
    QuestionStatus,
    apply_changes,
    can_transition,
)
from question_router.models.signal import MAX_SNOOZE_MINUTES, Snooze
from question_router.utils.async_helpers import InvalidTransitionError


def make_question(**overrides: object) -> Question:
    fields: dict[str, object] = {
        "id": "q-1",
        "workspace_id": "T1",
        "channel_id": "C1",
        "message_id": "100.1",
        "asker_id": "U1",
        "text": "How do I get access?",
        "asked_at": T0,
    }
    fields.update(overrides)
    return Question(**fields)  # type: ignore[arg-type]


class TestStatusTransitions:
    """Test the question lifecycle graph."""

    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (QuestionStatus.UNANSWERED, QuestionStatus.ANSWERED, True),
            (QuestionStatus.UNANSWERED, QuestionStatus.DISMISSED, True),
            (QuestionStatus.UNANSWERED, QuestionStatus.SNOOZED, True),
            (QuestionStatus.SNOOZED, QuestionStatus.UNANSWERED, True),
            (QuestionStatus.SNOOZED, QuestionStatus.SNOOZED, True),
            (QuestionStatus.SNOOZED, QuestionStatus.ANSWERED, True),
            (QuestionStatus.ANSWERED, QuestionStatus.UNANSWERED, False),
            (QuestionStatus.ANSWERED, QuestionStatus.DISMISSED, False),
            (QuestionStatus.DISMISSED, QuestionStatus.SNOOZED, False),
        ],
    )
    def test_can_transition(
        self, current: QuestionStatus, target: QuestionStatus, allowed: bool
    ) -> None:
        """Test each edge of the lifecycle."""
        assert can_transition(current, target) is allowed

    def test_terminal_states(self) -> None:
        """Test answered and dismissed are terminal."""
        assert QuestionStatus.ANSWERED.is_terminal
        assert QuestionStatus.DISMISSED.is_terminal
        assert not QuestionStatus.SNOOZED.is_terminal


class TestApplyChanges:
    """Test validated updates."""

    def test_bumps_version(self) -> None:
        """Test every change yields the next version."""
        updated = apply_changes(make_question(), {"escalation_level": 1})
        assert updated.version == 2
        assert updated.escalation_level == 1

    def test_status_coerced(self) -> None:
        """Test status strings become enum members."""
        updated = apply_changes(make_question(), {"status": "dismissed"})
        assert updated.status is QuestionStatus.DISMISSED

    def test_same_status_is_noop_check(self) -> None:
        """Test rewriting the current status does not count as a transition."""
        question = make_question(status=QuestionStatus.ANSWERED)
        updated = apply_changes(question, {"status": QuestionStatus.ANSWERED})
        assert updated.status == QuestionStatus.ANSWERED

    def test_resnooze_allowed(self) -> None:
        """Test a snoozed question may be snoozed again."""
        question = make_question(status=QuestionStatus.SNOOZED)
        updated = apply_changes(
            question,
            {"status": QuestionStatus.SNOOZED, "snoozed_until": T0 + timedelta(hours=2)},
        )
        assert updated.snoozed_until == T0 + timedelta(hours=2)

    def test_illegal_status(self) -> None:
        """Test terminal questions cannot be reopened."""
        with pytest.raises(InvalidTransitionError):
            apply_changes(
                make_question(status=QuestionStatus.DISMISSED),
                {"status": QuestionStatus.UNANSWERED},
            )

    def test_level_bounds(self) -> None:
        """Test the level never decreases or exceeds the maximum."""
        question = make_question(escalation_level=2)
        with pytest.raises(InvalidTransitionError, match="cannot decrease"):
            apply_changes(question, {"escalation_level": 1})
        with pytest.raises(InvalidTransitionError, match="exceeds maximum"):
            apply_changes(question, {"escalation_level": MAX_ESCALATION_LEVEL + 1})

    def test_identity_fields_immutable(self) -> None:
        """Test identity fields cannot be rewritten."""
        with pytest.raises(ValueError, match="asker_id"):
            apply_changes(make_question(), {"asker_id": "U2"})


class TestQuestion:
    """Test question helpers."""

    def test_is_escalatable(self) -> None:
        """Test only unanswered questions below the top level escalate."""
        assert make_question().is_escalatable
        assert not make_question(escalation_level=MAX_ESCALATION_LEVEL).is_escalatable
        assert not make_question(status=QuestionStatus.SNOOZED).is_escalatable

    def test_age_minutes(self) -> None:
        """Test age is whole minutes and never negative."""
        question = make_question()
        assert question.age_minutes(T0 + timedelta(minutes=90, seconds=59)) == 90
        assert question.age_minutes(T0 - timedelta(minutes=5)) == 0


class TestEscalationModels:
    """Test targets, effective config and dispatch results."""

    def test_target_from_type(self) -> None:
        """Test stored discriminators map back to variants."""
        assert target_from_type("user", "U1") == UserTarget("U1")
        assert target_from_type(TargetType.USER_GROUP, "S1", "oncall") == UserGroupTarget(
            "S1", "oncall"
        )
        assert target_from_type("channel", "C1").target_type == TargetType.CHANNEL

    def test_target_entry_level_range(self) -> None:
        """Test targets only exist for levels one to three."""
        with pytest.raises(ValueError, match="between 1 and 3"):
            TargetEntry("T1", 4, ChannelTarget("C1"))

    def test_delay_for(self) -> None:
        """Test delays are cumulative offsets per level."""
        config = EffectiveConfig(30, 90, 240)
        assert config.delay_for(0) == timedelta(0)
        assert config.delay_for(1) == timedelta(minutes=30)
        assert config.delay_for(2) == timedelta(minutes=90)
        assert config.delay_for(3) == timedelta(minutes=240)
        with pytest.raises(ValueError):
            config.delay_for(4)

    @pytest.mark.parametrize(
        ("kind", "retryable"),
        [
            (DispatchErrorKind.TRANSIENT, True),
            (DispatchErrorKind.TIMEOUT, True),
            (DispatchErrorKind.PERMISSION, False),
            (DispatchErrorKind.NOT_FOUND, False),
            (DispatchErrorKind.UNKNOWN, False),
        ],
    )
    def test_failed_result_retryable(self, kind: DispatchErrorKind, retryable: bool) -> None:
        """Test only transient failures are retried."""
        assert DispatchResult.failed(kind, "x").retryable is retryable

    def test_delivered_not_retryable(self) -> None:
        """Test successful results are never retried."""
        assert not DispatchResult.delivered("m-1").retryable


class TestSignalsAndMessages:
    """Test signal validation and message helpers."""

    @pytest.mark.parametrize("minutes", [0, MAX_SNOOZE_MINUTES + 1])
    def test_snooze_bounds(self, minutes: int) -> None:
        """Test snooze durations are bounded."""
        with pytest.raises(ValueError, match="Snooze duration"):
            Snooze("T1", "100.1", minutes)

    def test_thread_reply_detection(self) -> None:
        """Test thread roots are not replies."""
        root = ChatMessage("T1", "C1", "100.1", "100.1", "U1", "text", T0)
        reply = ChatMessage("T1", "C1", "100.2", "100.1", "U1", "text", T0)
        top = ChatMessage("T1", "C1", "100.3", None, "U1", "text", T0)

        assert not root.is_thread_reply
        assert reply.is_thread_reply
        assert not top.is_thread_reply
