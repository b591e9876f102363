"""Applies answer signals to tracked questions.

Every signal is applied with a read-then-conditional-write loop under the
question's lock, so a signal racing an escalation claim is retried against
fresh state instead of being lost. Terminal questions are never reopened.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from ..models.escalation import AnswerMode
from ..models.question import Question, QuestionStatus
from ..models.signal import (
    Acknowledge,
    AnswerSignal,
    Dismiss,
    MarkerReaction,
    ReconcileOutcome,
    ReplyConfirmation,
    Snooze,
    ThreadReply,
)
from ..utils.async_helpers import ConcurrentStateConflict, KeyedLock
from ..utils.clock import Clock, SystemClock
from ..utils.metrics import get_metrics

if TYPE_CHECKING:
    from ..config.schema import AnswerPolicy
    from ..core.resolver import EscalationTargetResolver
    from ..interfaces.store import QuestionStore

log = structlog.get_logger()

MAX_APPLY_ATTEMPTS = 3

_SIGNAL_KINDS: dict[type, str] = {
    MarkerReaction: "marker",
    ReplyConfirmation: "reply_confirmation",
    ThreadReply: "thread_reply",
    Dismiss: "dismiss",
    Snooze: "snooze",
    Acknowledge: "acknowledge",
}


def signal_kind(signal: AnswerSignal) -> str:
    return _SIGNAL_KINDS[type(signal)]


def _locator(signal: AnswerSignal) -> tuple[str, str]:
    if isinstance(signal, (ReplyConfirmation, ThreadReply)):
        return signal.workspace_id, signal.thread_id
    return signal.workspace_id, signal.message_id


class AnswerReconciler:
    """Turns answer signals into question state changes.

    Example:
        reconciler = AnswerReconciler(store, resolver, config.answers)
        outcome = await reconciler.apply(MarkerReaction("T1", "1700000000.000100", "U42"))
    """

    def __init__(
        self,
        store: QuestionStore,
        resolver: EscalationTargetResolver,
        policy: AnswerPolicy,
        clock: Clock | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._policy = policy
        self._clock = clock or SystemClock()
        self._locks = locks or KeyedLock()

    async def apply(self, signal: AnswerSignal) -> ReconcileOutcome:
        """Apply one signal.

        Returns:
            APPLIED if the question changed, IGNORED if the signal had no
            effect, NOT_TRACKED if no question matches the signal's message.

        Raises:
            ConcurrentStateConflict: If the row kept changing underneath us.
        """
        kind = signal_kind(signal)
        metrics = get_metrics()
        metrics.signals_received.inc(labels={"kind": kind})

        workspace_id, message_id = _locator(signal)
        located = await self._store.find_by_message(workspace_id, message_id)
        if located is None:
            log.debug("answer_signal_not_tracked", kind=kind, message_id=message_id)
            return ReconcileOutcome.NOT_TRACKED

        for _ in range(MAX_APPLY_ATTEMPTS):
            async with self._locks.hold(located.id):
                question = await self._store.get_question(located.id)
                if question is None:
                    return ReconcileOutcome.NOT_TRACKED

                changes = await self._plan(signal, question, self._clock.now())
                if not changes:
                    log.debug(
                        "answer_signal_ignored",
                        kind=kind,
                        question_id=question.id,
                        status=question.status,
                    )
                    return ReconcileOutcome.IGNORED

                try:
                    updated = await self._store.update_question(
                        question.id, question.version, **changes
                    )
                except ConcurrentStateConflict:
                    metrics.state_conflicts.inc(labels={"operation": "signal"})
                    log.info("answer_signal_conflict_retry", kind=kind, question_id=question.id)
                    continue

            metrics.signals_applied.inc(labels={"kind": kind})
            log.info(
                "answer_signal_applied",
                kind=kind,
                question_id=updated.id,
                status=updated.status,
                escalation_level=updated.escalation_level,
            )
            return ReconcileOutcome.APPLIED

        raise ConcurrentStateConflict(located.id, located.version)

    async def _plan(
        self,
        signal: AnswerSignal,
        question: Question,
        now: datetime,
    ) -> dict[str, Any]:
        """Compute the field changes a signal implies; empty means no effect."""
        if question.is_terminal:
            return {}

        if isinstance(signal, MarkerReaction):
            if self._policy.marker_requires_asker and signal.user_id != question.asker_id:
                return {}
            return self._answered(now, signal.user_id)

        if isinstance(signal, ReplyConfirmation):
            if signal.reply_author_id == question.asker_id:
                return {}
            if self._policy.confirm_requires_asker and signal.confirmed_by != question.asker_id:
                return {}
            return self._answered(now, signal.reply_author_id, signal.reply_message_id)

        if isinstance(signal, ThreadReply):
            return await self._plan_thread_reply(signal, question, now)

        if isinstance(signal, Dismiss):
            return {"status": QuestionStatus.DISMISSED, "snoozed_until": None}

        if isinstance(signal, Snooze):
            return {
                "status": QuestionStatus.SNOOZED,
                "snoozed_until": now + timedelta(minutes=signal.duration_minutes),
            }

        if isinstance(signal, Acknowledge):
            if question.status != QuestionStatus.UNANSWERED:
                return {}
            return {"last_escalated_at": now}

        raise TypeError(f"Unsupported answer signal: {signal!r}")

    async def _plan_thread_reply(
        self,
        signal: ThreadReply,
        question: Question,
        now: datetime,
    ) -> dict[str, Any]:
        if signal.is_bot or signal.author_id == question.asker_id:
            return {}

        config = await self._resolver.get_effective_config(
            question.workspace_id, question.channel_id
        )
        if config.answer_mode == AnswerMode.THREAD_AUTO:
            return self._answered(now, signal.author_id, signal.reply_message_id)

        if config.answer_mode == AnswerMode.HYBRID and question.replied_at is None:
            return {"replied_at": now, "last_escalated_at": now}

        return {}

    @staticmethod
    def _answered(
        now: datetime,
        answered_by: str,
        answering_message_id: str | None = None,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {
            "status": QuestionStatus.ANSWERED,
            "answered_at": now,
            "answered_by": answered_by,
            "snoozed_until": None,
        }
        if answering_message_id is not None:
            changes["answering_message_id"] = answering_message_id
        return changes
