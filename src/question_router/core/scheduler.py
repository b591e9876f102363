"""Escalation scheduler.

On every tick the scheduler:
1. Returns expired snoozes to ``unanswered`` (level kept)
2. Finds unanswered questions whose next tier is due
3. Claims each due question with a conditional write so only one tick
   anywhere escalates it
4. Resolves targets, re-checks the question status and fans out dispatches
5. Records one event per attempt and advances the escalation level

Per-question failures are logged and counted; they never stop the tick.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from ..models.escalation import (
    AnswerMode,
    DispatchResult,
    EffectiveConfig,
    EscalationEvent,
    EscalationTarget,
    EventStatus,
)
from ..models.question import MAX_ESCALATION_LEVEL, Question, QuestionStatus
from ..utils.async_helpers import (
    ConcurrentStateConflict,
    KeyedLock,
    create_result_retrying,
)
from ..utils.clock import Clock, SystemClock
from ..utils.logging import question_log_context
from ..utils.metrics import get_metrics

if TYPE_CHECKING:
    from ..config.schema import SchedulerConfig
    from ..core.dispatcher import NotificationDispatcher
    from ..core.resolver import EscalationTargetResolver
    from ..interfaces.store import EventLog, QuestionStore

log = structlog.get_logger()

# Smallest spacing between two escalations of the same question.
MIN_ESCALATION_GAP = timedelta(minutes=1)

# Attempts to record a level advance when other writers keep bumping the row.
MAX_ADVANCE_ATTEMPTS = 5


def compute_due_at(question: Question, config: EffectiveConfig) -> datetime | None:
    """Return when the question's next tier is due, or None if it never is.

    The next tier fires at ``asked_at + delay(next)``, but never sooner than
    the gap between tiers after the last escalation (or snooze expiry, or
    acknowledgement).
    """
    if not question.is_escalatable:
        return None
    if not config.escalation_enabled:
        return None
    if config.answer_mode == AnswerMode.HYBRID and question.replied_at is not None:
        return None

    current = question.escalation_level
    next_level = current + 1
    due = question.asked_at + config.delay_for(next_level)

    if question.last_escalated_at is not None:
        gap = config.delay_for(next_level) - config.delay_for(current)
        due = max(due, question.last_escalated_at + max(gap, MIN_ESCALATION_GAP))

    return due


class Outcome(StrEnum):
    """What a tick did with one question."""

    ESCALATED = "escalated"
    SKIPPED = "skipped"
    NOT_DUE = "not_due"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class TickReport:
    """Summary of one scheduler tick."""

    started_at: datetime
    reactivated: int = 0
    candidates: int = 0
    due: int = 0
    escalated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    outcomes: dict[str, Outcome] = field(default_factory=dict)

    def record(self, question_id: str, outcome: Outcome) -> None:
        self.outcomes[question_id] = outcome
        if outcome == Outcome.ESCALATED:
            self.escalated += 1
        elif outcome == Outcome.SKIPPED:
            self.skipped += 1
        elif outcome == Outcome.CONFLICT:
            self.conflicts += 1
        elif outcome == Outcome.ERROR:
            self.errors += 1


class EscalationScheduler:
    """Periodically escalates overdue questions.

    Example:
        scheduler = EscalationScheduler(store, resolver, dispatcher, store, config.scheduler)
        scheduler.start()
        ...
        await scheduler.stop()

        # Or drive it manually (tests, --once):
        report = await scheduler.run_tick()
    """

    def __init__(
        self,
        store: QuestionStore,
        resolver: EscalationTargetResolver,
        dispatcher: NotificationDispatcher,
        events: EventLog,
        config: SchedulerConfig,
        clock: Clock | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._events = events
        self._config = config
        self._clock = clock or SystemClock()
        self._locks = locks or KeyedLock()

        self._semaphore = asyncio.Semaphore(config.max_concurrent_dispatches)
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._last_report: TickReport | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_report(self) -> TickReport | None:
        return self._last_report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, interval_seconds: float | None = None) -> None:
        """Launch the background loop; a second call while running is a no-op."""
        if self.is_running:
            log.warning("escalation_scheduler_already_running")
            return

        interval = interval_seconds or self._config.interval_seconds
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(interval), name="escalation_scheduler")

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight tick finish."""
        if self._task is None:
            return

        self._stop_event.set()
        await self._task
        self._task = None
        log.info("escalation_scheduler_stopped")

    async def _run(self, interval: float) -> None:
        log.info("escalation_scheduler_started", interval_seconds=interval)

        while not self._stop_event.is_set():
            try:
                await self.run_tick()
            except Exception as e:
                log.exception("escalation_tick_failed", error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickReport | None:
        """Run one pass over all candidates.

        Returns:
            The tick report, or None if a tick was already in flight
        """
        if self._tick_lock.locked():
            log.debug("escalation_tick_skipped_in_flight")
            return None

        async with self._tick_lock:
            return await self._tick()

    async def _tick(self) -> TickReport:
        metrics = get_metrics()
        started = time.perf_counter()
        now = self._clock.now()
        report = TickReport(started_at=now)

        report.reactivated = await self._reactivate_snoozes(now)

        candidates = await self._collect_candidates()
        report.candidates = len(candidates)
        metrics.open_questions.set(len(candidates))

        due: list[Question] = []
        for question in candidates:
            try:
                config = await self._resolver.get_effective_config(
                    question.workspace_id, question.channel_id
                )
            except Exception as e:
                log.exception("effective_config_failed", question_id=question.id, error=str(e))
                report.record(question.id, Outcome.ERROR)
                metrics.tick_errors.inc()
                continue

            due_at = compute_due_at(question, config)
            if due_at is not None and due_at <= now:
                due.append(question)

        report.due = len(due)
        outcomes = await asyncio.gather(*(self._process(q, now) for q in due))
        for question, outcome in zip(due, outcomes, strict=True):
            report.record(question.id, outcome)

        report.duration_seconds = time.perf_counter() - started
        metrics.ticks.inc()
        metrics.tick_duration.observe(report.duration_seconds)
        self._last_report = report

        log.info(
            "escalation_tick_complete",
            candidates=report.candidates,
            due=report.due,
            escalated=report.escalated,
            skipped=report.skipped,
            conflicts=report.conflicts,
            errors=report.errors,
            reactivated=report.reactivated,
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report

    async def _collect_candidates(self) -> list[Question]:
        # Read every page before writing so level advances cannot shift offsets.
        candidates: list[Question] = []
        offset = 0
        while True:
            page = await self._store.list_escalation_candidates(
                limit=self._config.batch_size, offset=offset
            )
            candidates.extend(page)
            if len(page) < self._config.batch_size:
                return candidates
            offset += len(page)

    async def _reactivate_snoozes(self, now: datetime) -> int:
        reactivated = 0
        for question in await self._store.list_expired_snoozes(now):
            async with self._locks.hold(question.id):
                current = await self._store.get_question(question.id)
                if (
                    current is None
                    or current.status != QuestionStatus.SNOOZED
                    or current.snoozed_until is None
                    or current.snoozed_until > now
                ):
                    continue
                try:
                    await self._store.update_question(
                        current.id,
                        current.version,
                        status=QuestionStatus.UNANSWERED,
                        snoozed_until=None,
                        last_escalated_at=current.snoozed_until,
                    )
                except ConcurrentStateConflict:
                    get_metrics().state_conflicts.inc(labels={"operation": "unsnooze"})
                    continue

            reactivated += 1
            get_metrics().snoozes_reactivated.inc()
            log.info(
                "question_snooze_expired",
                question_id=question.id,
                escalation_level=current.escalation_level,
            )
        return reactivated

    async def _process(self, question: Question, now: datetime) -> Outcome:
        with question_log_context(question):
            try:
                return await self._escalate(question, now)
            except Exception as e:
                log.exception("escalation_failed", error=str(e))
                get_metrics().tick_errors.inc()
                return Outcome.ERROR

    async def _escalate(self, question: Question, now: datetime) -> Outcome:
        metrics = get_metrics()
        config = await self._resolver.get_effective_config(
            question.workspace_id, question.channel_id
        )

        # Claim: move last_escalated_at to now, conditional on the version
        # just read. Whoever loses the race sees a conflict or a not-due row.
        async with self._locks.hold(question.id):
            current = await self._store.get_question(question.id)
            if current is None:
                return Outcome.NOT_DUE
            due_at = compute_due_at(current, config)
            if due_at is None or due_at > now:
                return Outcome.NOT_DUE
            try:
                claimed = await self._store.update_question(
                    current.id, current.version, last_escalated_at=now
                )
            except ConcurrentStateConflict:
                metrics.state_conflicts.inc(labels={"operation": "claim"})
                log.info("escalation_claim_lost")
                return Outcome.CONFLICT

        next_level = claimed.escalation_level + 1
        targets = await self._resolver.get_targets(
            claimed.workspace_id, claimed.channel_id, next_level
        )
        if not targets:
            await self._record_skip(claimed, next_level, now, "no_targets")
            log.warning("escalation_no_targets", level=next_level)
            return Outcome.SKIPPED

        latest = await self._store.get_question(claimed.id)
        if latest is None or latest.status != QuestionStatus.UNANSWERED:
            status = latest.status if latest else "missing"
            for target in targets:
                await self._record_skip(
                    claimed, next_level, now, f"status_changed:{status}", target
                )
            log.info("escalation_aborted_status_changed", status=status, level=next_level)
            return Outcome.SKIPPED

        await asyncio.gather(*(self._notify(latest, target, next_level) for target in targets))
        if not await self._advance_level(latest.id, next_level, now):
            log.info("escalation_closed_during_dispatch", level=next_level)
            return Outcome.SKIPPED

        metrics.escalations.inc(labels={"level": str(next_level)})
        log.info(
            "question_escalated",
            level=next_level,
            targets=len(targets),
            age_minutes=latest.age_minutes(now),
        )
        return Outcome.ESCALATED

    async def _notify(self, question: Question, target: EscalationTarget, level: int) -> None:
        if await self._events.has_success(
            question.id, level, target.target_type, target.target_id
        ):
            await self._record_skip(
                question, level, self._clock.now(), "already_notified", target
            )
            return

        attempt = 0

        async def attempt_dispatch() -> DispatchResult | None:
            nonlocal attempt
            attempt += 1
            # The question may be answered while waiting for a slot or a retry
            current = await self._store.get_question(question.id)
            if current is None or current.status != QuestionStatus.UNANSWERED:
                status = current.status if current else "missing"
                await self._record_skip(
                    question, level, self._clock.now(), f"status_changed:{status}", target
                )
                log.info("escalation_dispatch_aborted", status=status, target_id=target.target_id)
                return None

            result = await self._dispatcher.dispatch(target, current, level)
            await self._events.record(
                EscalationEvent(
                    question_id=question.id,
                    level=level,
                    status=EventStatus.SUCCESS if result.success else EventStatus.FAILED,
                    occurred_at=self._clock.now(),
                    attempt=attempt,
                    target_type=target.target_type,
                    target_id=target.target_id,
                    detail=None if result.success else f"{result.error_kind}: {result.error_detail}",
                )
            )
            get_metrics().escalation_attempts.inc(
                labels={"status": "success" if result.success else "failed"}
            )
            return result

        retrying = create_result_retrying(
            lambda result: result is not None and result.retryable,
            max_attempts=self._config.max_dispatch_attempts,
            wait_seconds=self._config.retry_wait_seconds,
        )
        async with self._semaphore:
            await retrying(attempt_dispatch)

    async def _advance_level(self, question_id: str, level: int, now: datetime) -> bool:
        """Record the new level regardless of per-target outcomes.

        Returns False when the question was closed during the fan-out; its
        level then stays where it was.
        """
        for _ in range(MAX_ADVANCE_ATTEMPTS):
            async with self._locks.hold(question_id):
                current = await self._store.get_question(question_id)
                if current is None or current.is_terminal:
                    return False
                if current.escalation_level >= level:
                    return True
                try:
                    await self._store.update_question(
                        question_id,
                        current.version,
                        escalation_level=min(level, MAX_ESCALATION_LEVEL),
                        last_escalated_at=now,
                    )
                    return True
                except ConcurrentStateConflict:
                    get_metrics().state_conflicts.inc(labels={"operation": "advance"})

        log.warning("escalation_level_advance_abandoned", level=level)
        return True

    async def _record_skip(
        self,
        question: Question,
        level: int,
        now: datetime,
        detail: str,
        target: EscalationTarget | None = None,
    ) -> None:
        await self._events.record(
            EscalationEvent(
                question_id=question.id,
                level=level,
                status=EventStatus.SKIPPED,
                occurred_at=now,
                target_type=target.target_type if target else None,
                target_id=target.target_id if target else None,
                detail=detail,
            )
        )
        get_metrics().escalations_skipped.inc(labels={"reason": detail.split(":")[0]})
