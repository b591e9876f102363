"""Shared test fixtures for the question router."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from datetime import UTC, datetime

import pytest

from question_router.adapters.store.memory import InMemoryStore
from question_router.config.schema import (
    AnswerPolicy,
    EscalationSettings,
    SchedulerConfig,
)
from question_router.models.escalation import (
    DispatchErrorKind,
    EscalationTarget,
    Notification,
    TargetValidation,
)
from question_router.models.question import NewQuestion, Question
from question_router.utils.async_helpers import NotificationError
from question_router.utils.clock import ManualClock
from question_router.utils.metrics import MetricsRegistry

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=UTC)

WORKSPACE = "T0001"
CHANNEL = "C0001"
ASKER = "U_ASKER"


class RecordingNotifier:
    """Notifier fake that records sends and can fail on demand."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self.failures: list[DispatchErrorKind] = []
        self.invalid_targets: dict[str, str] = {}
        self.permalink: str | None = "https://example.slack.com/archives/C0001/p1"

    def fail_next(self, *kinds: DispatchErrorKind) -> None:
        self.failures.extend(kinds)

    async def send(self, notification: Notification) -> str:
        if self.failures:
            kind = self.failures.pop(0)
            raise NotificationError(f"scripted {kind} failure", kind)
        self.sent.append(notification)
        return f"msg-{len(self.sent)}"

    async def get_permalink(self, channel_id: str, message_id: str) -> str | None:
        return self.permalink

    async def validate_target(self, target: EscalationTarget) -> TargetValidation:
        reason = self.invalid_targets.get(target.target_id)
        if reason:
            return TargetValidation(valid=False, reason=reason)
        return TargetValidation(valid=True)


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    """Give every test a fresh metrics registry."""
    MetricsRegistry.reset_instance()
    yield
    MetricsRegistry.reset_instance()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fast_delays() -> EscalationSettings:
    """Two, four and six minute tiers."""
    return EscalationSettings(
        first_delay_minutes=2,
        second_delay_minutes=4,
        final_delay_minutes=6,
    )


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(
        interval_seconds=0.01,
        batch_size=50,
        max_dispatch_attempts=3,
        retry_wait_seconds=0,
        dispatch_timeout_seconds=1,
    )


@pytest.fixture
def answer_policy() -> AnswerPolicy:
    return AnswerPolicy()


@pytest.fixture
def make_question(store: InMemoryStore) -> Callable[..., Awaitable[Question]]:
    """Create a tracked question asked at T0 unless overridden."""
    counter = 0

    async def _make(**overrides: object) -> Question:
        nonlocal counter
        counter += 1
        fields: dict[str, object] = {
            "workspace_id": WORKSPACE,
            "channel_id": CHANNEL,
            "message_id": f"1709542800.{counter:06d}",
            "asker_id": ASKER,
            "text": "How do I rotate the deploy key?",
            "asked_at": T0,
        }
        fields.update(overrides)
        return await store.create_question(NewQuestion(**fields))  # type: ignore[arg-type]

    return _make
