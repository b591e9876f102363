"""Renders and delivers one escalation notification per call.

The dispatcher never retries; it reports a classified DispatchResult and
leaves retry policy to the scheduler.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from ..models.escalation import (
    ChannelTarget,
    DispatchErrorKind,
    DispatchResult,
    EscalationTarget,
    Notification,
    UserGroupTarget,
    UserTarget,
)
from ..utils.async_helpers import NotificationError, RateLimiter, TimeoutError, with_timeout
from ..utils.clock import Clock, SystemClock
from ..utils.metrics import Timer, get_metrics

if TYPE_CHECKING:
    from ..config.schema import SchedulerConfig
    from ..interfaces.notifier import Notifier
    from ..models.question import Question

log = structlog.get_logger()

# Quoted question text is cut to keep alerts readable.
MAX_QUOTED_CHARS = 500


def _quote(text: str) -> str:
    if len(text) > MAX_QUOTED_CHARS:
        text = text[: MAX_QUOTED_CHARS - 1] + "…"
    return "\n".join(f"> {line}" for line in text.splitlines() or [""])


class NotificationDispatcher:
    """Sends a single notification to a single target.

    Example:
        dispatcher = NotificationDispatcher(slack, config.scheduler)
        result = await dispatcher.dispatch(UserGroupTarget("S123"), question, level=1)
        if not result.success:
            print(result.error_kind)
    """

    def __init__(
        self,
        notifier: Notifier,
        config: SchedulerConfig,
        clock: Clock | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._notifier = notifier
        self._timeout = config.dispatch_timeout_seconds
        self._clock = clock or SystemClock()
        self._rate_limiter = rate_limiter

    async def dispatch(
        self,
        target: EscalationTarget,
        question: Question,
        level: int,
    ) -> DispatchResult:
        """Render and send one notification, bounded by the dispatch timeout.

        Never raises; every failure becomes a failed DispatchResult.
        """
        metrics = get_metrics()
        try:
            with Timer(metrics.dispatch_duration, labels={"target_type": target.target_type}):
                message_id = await with_timeout(
                    self._deliver(target, question, level),
                    self._timeout,
                    f"Dispatch to {target.target_type} {target.target_id} timed out",
                )
        except TimeoutError as e:
            return self._failed(target, question, DispatchErrorKind.TIMEOUT, str(e))
        except NotificationError as e:
            return self._failed(target, question, e.kind, str(e))
        except Exception as e:
            log.exception(
                "dispatch_unexpected_error",
                question_id=question.id,
                target_id=target.target_id,
            )
            return self._failed(target, question, DispatchErrorKind.UNKNOWN, str(e))

        log.info(
            "escalation_dispatched",
            question_id=question.id,
            level=level,
            target_type=target.target_type,
            target_id=target.target_id,
            message_id=message_id,
        )
        return DispatchResult.delivered(message_id)

    async def render(
        self,
        target: EscalationTarget,
        question: Question,
        level: int,
    ) -> Notification:
        """Build the outbound message for a target variant."""
        age = question.age_minutes(self._clock.now())
        header = "🔥 *Final escalation*\n\n" if level >= 3 else ""

        if isinstance(target, UserGroupTarget):
            return Notification(
                channel_id=question.channel_id,
                thread_id=question.thread_id or question.message_id,
                text=(
                    f"{header}⚠️ This question has been unanswered for {age} minutes.\n\n"
                    f"<!subteam^{target.target_id}> - Can someone help with this?"
                ),
            )

        link = await self._permalink(question)
        footer = f"\n\n<{link}|View Thread →>" if link else ""

        if isinstance(target, ChannelTarget):
            return Notification(
                channel_id=target.target_id,
                text=(
                    f"{header}🚨 *Unanswered Question Alert*\n\n"
                    f"Question from <@{question.asker_id}> in <#{question.channel_id}> "
                    f"({age} minutes old):\n\n{_quote(question.text)}{footer}"
                ),
            )

        if isinstance(target, UserTarget):
            return Notification(
                channel_id=target.target_id,
                text=(
                    f"{header}👋 A question in <#{question.channel_id}> has been waiting "
                    f"{age} minutes and could use your help:\n\n{_quote(question.text)}{footer}"
                ),
            )

        raise ValueError(f"Unsupported escalation target: {target!r}")

    async def _deliver(
        self,
        target: EscalationTarget,
        question: Question,
        level: int,
    ) -> str:
        notification = await self.render(target, question, level)
        if self._rate_limiter:
            await self._rate_limiter.acquire()
        return await self._notifier.send(notification)

    async def _permalink(self, question: Question) -> str | None:
        # Best effort; an alert without a link is still useful.
        try:
            return await self._notifier.get_permalink(question.channel_id, question.message_id)
        except Exception as e:
            log.debug("permalink_unavailable", question_id=question.id, error=str(e))
            return None

    def _failed(
        self,
        target: EscalationTarget,
        question: Question,
        kind: DispatchErrorKind,
        detail: str,
    ) -> DispatchResult:
        log.warning(
            "escalation_dispatch_failed",
            question_id=question.id,
            target_type=target.target_type,
            target_id=target.target_id,
            error_kind=kind,
            error=detail,
        )
        return DispatchResult.failed(kind, detail)
