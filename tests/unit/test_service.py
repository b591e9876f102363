"""Tests for the router service."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from conftest import ASKER, CHANNEL, T0, WORKSPACE, RecordingNotifier

from question_router.adapters.store.memory import InMemoryStore
from question_router.config.schema import (
    EscalationSettings,
    RouterConfig,
    RuntimeConfig,
    SchedulerConfig,
    SlackConfig,
    StoreConfig,
)
from question_router.core.service import (
    RouterService,
    _create_chat_adapter,
    _create_store,
)
from question_router.models.escalation import TargetEntry, UserGroupTarget
from question_router.models.message import ChatEvent, ChatMessage, IntakeResult, ReactionEvent
from question_router.models.question import QuestionStatus
from question_router.models.signal import ReconcileOutcome
from question_router.utils.async_helpers import StartupError
from question_router.utils.clock import ManualClock

QUESTION_TS = "1709542800.000100"
REPLY_TS = "1709542900.000200"


class FakeChat(RecordingNotifier):
    """Chat adapter fake that replays scripted events."""

    def __init__(self, events: list[ChatEvent] | None = None) -> None:
        super().__init__()
        self.events = list(events or [])
        self.connected = False
        self.reactions: list[tuple[str, str, str]] = []
        self.threads: dict[str, str] = {}

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def listen(self) -> AsyncIterator[ChatEvent]:
        for event in self.events:
            yield event

    async def add_reaction(self, channel_id: str, message_id: str, reaction: str) -> None:
        self.reactions.append((channel_id, message_id, reaction))

    async def get_thread_id(self, channel_id: str, message_id: str) -> str | None:
        return self.threads.get(message_id)


def question_message(text: str = "How do I rotate the deploy key?") -> ChatMessage:
    return ChatMessage(WORKSPACE, CHANNEL, QUESTION_TS, None, ASKER, text, T0)


def reaction(name: str, message_id: str = QUESTION_TS, **overrides: object) -> ReactionEvent:
    fields: dict[str, object] = {
        "workspace_id": WORKSPACE,
        "channel_id": CHANNEL,
        "message_id": message_id,
        "user_id": ASKER,
        "reaction": name,
        "timestamp": T0,
    }
    fields.update(overrides)
    return ReactionEvent(**fields)  # type: ignore[arg-type]


@pytest.fixture
def config() -> RouterConfig:
    return RouterConfig(
        store=StoreConfig(backend="memory"),
        escalation=EscalationSettings(
            first_delay_minutes=2, second_delay_minutes=4, final_delay_minutes=6
        ),
        scheduler=SchedulerConfig(interval_seconds=3600, retry_wait_seconds=0),
    )


@pytest.fixture
def chat() -> FakeChat:
    return FakeChat()


@pytest.fixture
def service(
    config: RouterConfig, chat: FakeChat, store: InMemoryStore, clock: ManualClock
) -> RouterService:
    return RouterService(config, chat, store, chat, clock=clock)


class TestEventRouting:
    """Test routing of chat events."""

    async def test_question_tracked(
        self, service: RouterService, chat: FakeChat, store: InMemoryStore
    ) -> None:
        """Test top-level messages go to intake."""
        outcome = await service.handle_event(question_message())

        assert outcome == IntakeResult.TRACKED
        assert await store.find_by_message(WORKSPACE, QUESTION_TS) is not None
        assert chat.reactions == [(CHANNEL, QUESTION_TS, "question")]

    async def test_marker_reaction_answers(
        self, service: RouterService, store: InMemoryStore
    ) -> None:
        """Test the asker's check mark on the question answers it."""
        await service.handle_event(question_message())

        outcome = await service.handle_event(reaction("white_check_mark"))

        assert outcome == ReconcileOutcome.APPLIED
        question = await store.find_by_message(WORKSPACE, QUESTION_TS)
        assert question is not None
        assert question.status == QuestionStatus.ANSWERED
        assert question.answered_by == ASKER

    async def test_marker_on_reply_confirms_answer(
        self, service: RouterService, chat: FakeChat, store: InMemoryStore
    ) -> None:
        """Test a check mark on a thread reply confirms that reply."""
        await service.handle_event(question_message())
        chat.threads[REPLY_TS] = QUESTION_TS

        outcome = await service.handle_event(
            reaction("white_check_mark", REPLY_TS, item_user_id="U_HELPER")
        )

        assert outcome == ReconcileOutcome.APPLIED
        question = await store.find_by_message(WORKSPACE, QUESTION_TS)
        assert question is not None
        assert question.answered_by == "U_HELPER"
        assert question.answering_message_id == REPLY_TS

    async def test_marker_on_untracked_message(
        self, service: RouterService, chat: FakeChat
    ) -> None:
        """Test a check mark outside any thread is ignored."""
        outcome = await service.handle_event(
            reaction("white_check_mark", "1709549999.000001", item_user_id="U_X")
        )
        assert outcome is None

    async def test_thread_reply_reconciled(
        self, service: RouterService, store: InMemoryStore
    ) -> None:
        """Test thread replies become ThreadReply signals."""
        await service.handle_event(question_message())

        outcome = await service.handle_event(
            ChatMessage(WORKSPACE, CHANNEL, REPLY_TS, QUESTION_TS, "U_HELPER", "Try this", T0)
        )

        # Emoji-only mode: replies do not change state
        assert outcome == ReconcileOutcome.IGNORED

    @pytest.mark.parametrize(
        ("name", "status"),
        [
            ("no_entry", QuestionStatus.DISMISSED),
            ("no_bell", QuestionStatus.SNOOZED),
        ],
    )
    async def test_dismiss_and_snooze(
        self,
        service: RouterService,
        store: InMemoryStore,
        name: str,
        status: QuestionStatus,
    ) -> None:
        """Test dismiss and snooze reactions map to their signals."""
        await service.handle_event(question_message())

        assert await service.handle_event(reaction(name)) == ReconcileOutcome.APPLIED

        question = await store.find_by_message(WORKSPACE, QUESTION_TS)
        assert question is not None
        assert question.status == status

    async def test_snooze_uses_default_duration(
        self, service: RouterService, store: InMemoryStore
    ) -> None:
        """Test snooze reactions use the configured default."""
        await service.handle_event(question_message())
        await service.handle_event(reaction("no_bell"))

        question = await store.find_by_message(WORKSPACE, QUESTION_TS)
        assert question is not None
        assert question.snoozed_until == T0 + timedelta(minutes=60)

    async def test_acknowledge(self, service: RouterService, store: InMemoryStore) -> None:
        """Test the acknowledge reaction resets the escalation clock."""
        await service.handle_event(question_message())

        assert await service.handle_event(reaction("eyes")) == ReconcileOutcome.APPLIED

        question = await store.find_by_message(WORKSPACE, QUESTION_TS)
        assert question is not None
        assert question.last_escalated_at == T0

    async def test_unknown_reaction(self, service: RouterService) -> None:
        """Test unrelated reactions are ignored."""
        assert await service.handle_event(reaction("tada")) is None

    async def test_process_event_swallows_errors(self, service: RouterService) -> None:
        """Test one failing event does not stop processing."""
        with patch.object(service, "handle_event", side_effect=RuntimeError("boom")):
            assert await service.process_event(question_message()) is None

        assert service.stats["errors_count"] == 1
        assert service.stats["events_processed"] == 0


class TestRunOnce:
    """Test single scheduler passes."""

    async def test_escalates_due_question(
        self,
        service: RouterService,
        chat: FakeChat,
        store: InMemoryStore,
        clock: ManualClock,
    ) -> None:
        """Test a due question is escalated to its level one target."""
        await store.add_target(TargetEntry(WORKSPACE, 1, UserGroupTarget("S_SUPPORT")))
        await service.handle_event(question_message())
        clock.advance(minutes=3)

        report = await service.run_once()

        assert report is not None
        assert report.escalated == 1
        assert "<!subteam^S_SUPPORT>" in chat.sent[0].text
        question = await store.find_by_message(WORKSPACE, QUESTION_TS)
        assert question is not None
        assert question.escalation_level == 1

    async def test_unreachable_store(self, service: RouterService, store: InMemoryStore) -> None:
        """Test run_once refuses to run without a store."""

        async def down() -> bool:
            return False

        with patch.object(store, "ping", side_effect=down):
            with pytest.raises(StartupError, match="unreachable"):
                await service.run_once()


class TestLifecycle:
    """Test start and stop."""

    async def test_start_processes_events_then_stops(
        self, service: RouterService, chat: FakeChat, store: InMemoryStore
    ) -> None:
        """Test start connects, consumes events and stop releases resources."""
        chat.events = [question_message()]

        with patch.object(service, "_setup_signal_handlers"):
            await service.start()

        assert service.is_running
        assert service.scheduler.is_running
        assert chat.connected

        await service.stop()

        assert not service.is_running
        assert not service.scheduler.is_running
        assert not chat.connected
        assert await store.find_by_message(WORKSPACE, QUESTION_TS) is not None

    async def test_start_fails_when_connect_fails(
        self, service: RouterService, chat: FakeChat
    ) -> None:
        """Test connection failures surface as StartupError."""

        async def refuse() -> None:
            raise ConnectionRefusedError("no socket")

        with patch.object(chat, "connect", side_effect=refuse):
            with pytest.raises(StartupError, match="no socket"):
                await service.start()

        assert not service.is_running

    async def test_stop_when_not_running(self, service: RouterService) -> None:
        """Test stopping an idle service is a no-op."""
        await service.stop()
        assert not service.is_running


class TestFactories:
    """Test adapter and store construction."""

    async def test_memory_store(self, config: RouterConfig) -> None:
        """Test the memory backend needs no setup."""
        assert isinstance(await _create_store(config), InMemoryStore)

    async def test_sql_store_schema_created(self) -> None:
        """Test the SQL backend creates its schema."""
        config = RouterConfig(store=StoreConfig(url="sqlite+aiosqlite:///:memory:"))

        store = await _create_store(config)
        try:
            assert await store.ping()
            assert await store.list_escalation_candidates(limit=1) == []
        finally:
            await store.close()

    def test_chat_adapter_requires_slack(self, config: RouterConfig) -> None:
        """Test Slack configuration is mandatory for the long-running service."""
        with pytest.raises(ValueError, match="Slack configuration is required"):
            _create_chat_adapter(config)

    def test_chat_adapter_built_from_config(self, config: RouterConfig) -> None:
        """Test the Slack adapter receives the Slack section."""
        config.slack = SlackConfig(bot_token="xoxb-test", app_token="xapp-test")

        with patch("question_router.adapters.chat.slack.AsyncApp") as mock_app_class:
            mock_app_class.return_value = MagicMock()
            adapter = _create_chat_adapter(config)

        mock_app_class.assert_called_once_with(token="xoxb-test")
        assert adapter is not None


async def test_concurrency_limit(config: RouterConfig, store: InMemoryStore) -> None:
    """Test process_event respects the configured concurrency."""
    config = config.model_copy(update={"runtime": RuntimeConfig(max_concurrent=1)})
    chat = FakeChat()
    service = RouterService(config, chat, store, chat)
    running = 0
    peak = 0

    async def slow(event: ChatEvent) -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    with patch.object(service, "handle_event", side_effect=slow):
        await asyncio.gather(*(service.process_event(question_message()) for _ in range(3)))

    assert peak == 1
