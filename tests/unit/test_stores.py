"""Tests shared by the in-memory and SQL store backends."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import timedelta

import pytest
from conftest import ASKER, CHANNEL, T0, WORKSPACE

from question_router.adapters.store.memory import InMemoryStore
from question_router.adapters.store.sql import SqlStore
from question_router.config.schema import ChannelOverride, EscalationSettings, StoreConfig
from question_router.interfaces.store import RouterStore
from question_router.models.escalation import (
    AnswerMode,
    ChannelTarget,
    EscalationEvent,
    EventStatus,
    TargetEntry,
    TargetType,
    UserGroupTarget,
    UserTarget,
)
from question_router.models.question import ANONYMIZED_TEXT, NewQuestion, QuestionStatus
from question_router.utils.async_helpers import (
    ConcurrentStateConflict,
    DuplicateMessageError,
    InvalidTransitionError,
    QuestionNotFound,
)


@pytest.fixture(params=["memory", "sql"])
async def backend(request: pytest.FixtureRequest) -> AsyncIterator[RouterStore]:
    """Each test runs against both backends."""
    if request.param == "memory":
        yield InMemoryStore()
        return

    store = SqlStore.from_config(StoreConfig(url="sqlite+aiosqlite:///:memory:"))
    await store.create_schema()
    try:
        yield store
    finally:
        await store.close()


def new_question(message_id: str = "100.000001", **overrides: object) -> NewQuestion:
    fields: dict[str, object] = {
        "workspace_id": WORKSPACE,
        "channel_id": CHANNEL,
        "message_id": message_id,
        "asker_id": ASKER,
        "text": "Where is the runbook for failovers?",
        "asked_at": T0,
    }
    fields.update(overrides)
    return NewQuestion(**fields)  # type: ignore[arg-type]


class TestQuestions:
    """Test question persistence."""

    async def test_ping(self, backend: RouterStore) -> None:
        """Test a fresh store is reachable."""
        assert await backend.ping()

    async def test_create_and_read(self, backend: RouterStore) -> None:
        """Test a created question starts unanswered at level zero."""
        created = await backend.create_question(
            new_question(thread_id="99.000001", external_ticket_id="48213", source_app="zendesk")
        )

        assert created.status == QuestionStatus.UNANSWERED
        assert created.escalation_level == 0
        assert created.version == 1

        fetched = await backend.get_question(created.id)
        assert fetched == created
        assert fetched is not None
        assert fetched.asked_at == T0
        assert fetched.asked_at.tzinfo is not None
        assert fetched.external_ticket_id == "48213"

        by_message = await backend.find_by_message(WORKSPACE, "100.000001")
        assert by_message is not None
        assert by_message.id == created.id

    async def test_duplicate_message(self, backend: RouterStore) -> None:
        """Test the same message cannot be tracked twice."""
        first = await backend.create_question(new_question())

        with pytest.raises(DuplicateMessageError) as exc_info:
            await backend.create_question(new_question(text="retry"))

        assert exc_info.value.existing.id == first.id

    async def test_same_message_id_other_workspace(self, backend: RouterStore) -> None:
        """Test message ids are scoped to a workspace."""
        await backend.create_question(new_question())
        other = await backend.create_question(new_question(workspace_id="T_OTHER"))

        assert other.workspace_id == "T_OTHER"

    async def test_missing_question(self, backend: RouterStore) -> None:
        """Test lookups of unknown ids return None."""
        assert await backend.get_question("nope") is None
        assert await backend.find_by_message(WORKSPACE, "nope") is None

    async def test_conditional_update(self, backend: RouterStore) -> None:
        """Test updates bump the version and require the current one."""
        question = await backend.create_question(new_question())

        updated = await backend.update_question(
            question.id,
            question.version,
            escalation_level=1,
            last_escalated_at=T0 + timedelta(minutes=2),
        )

        assert updated.version == 2
        assert updated.escalation_level == 1
        assert updated.last_escalated_at == T0 + timedelta(minutes=2)

        with pytest.raises(ConcurrentStateConflict):
            await backend.update_question(question.id, question.version, escalation_level=2)

        stored = await backend.get_question(question.id)
        assert stored == updated

    async def test_update_unknown_question(self, backend: RouterStore) -> None:
        """Test updating a missing question raises QuestionNotFound."""
        with pytest.raises(QuestionNotFound):
            await backend.update_question("nope", 1, escalation_level=1)

    async def test_lifecycle_rules_enforced(self, backend: RouterStore) -> None:
        """Test terminal states and level decreases are rejected."""
        question = await backend.create_question(new_question())
        answered = await backend.update_question(
            question.id, question.version, status=QuestionStatus.ANSWERED, answered_at=T0
        )

        with pytest.raises(InvalidTransitionError):
            await backend.update_question(
                answered.id, answered.version, status=QuestionStatus.UNANSWERED
            )

        other = await backend.create_question(new_question("100.000002"))
        raised = await backend.update_question(other.id, other.version, escalation_level=2)
        with pytest.raises(InvalidTransitionError):
            await backend.update_question(raised.id, raised.version, escalation_level=1)

    async def test_escalation_candidates(self, backend: RouterStore) -> None:
        """Test only unanswered questions below the top level, oldest first."""
        late = await backend.create_question(
            new_question("100.000001", asked_at=T0 + timedelta(minutes=5))
        )
        early = await backend.create_question(new_question("100.000002"))
        done = await backend.create_question(new_question("100.000003"))
        await backend.update_question(done.id, done.version, status=QuestionStatus.DISMISSED)
        maxed = await backend.create_question(new_question("100.000004"))
        await backend.update_question(maxed.id, maxed.version, escalation_level=3)

        candidates = await backend.list_escalation_candidates(limit=10)

        assert [q.id for q in candidates] == [early.id, late.id]

        page = await backend.list_escalation_candidates(limit=1, offset=1)
        assert [q.id for q in page] == [late.id]

    async def test_expired_snoozes(self, backend: RouterStore) -> None:
        """Test snoozes are listed once their deadline passes."""
        question = await backend.create_question(new_question())
        await backend.update_question(
            question.id,
            question.version,
            status=QuestionStatus.SNOOZED,
            snoozed_until=T0 + timedelta(hours=1),
        )

        assert await backend.list_expired_snoozes(T0 + timedelta(minutes=59)) == []
        expired = await backend.list_expired_snoozes(T0 + timedelta(hours=1))
        assert [q.id for q in expired] == [question.id]

    async def test_anonymize_asker(self, backend: RouterStore) -> None:
        """Test only the asker's questions lose their text."""
        mine = await backend.create_question(new_question("100.000001"))
        theirs = await backend.create_question(new_question("100.000002", asker_id="U_OTHER"))

        assert await backend.anonymize_asker(WORKSPACE, ASKER) == 1

        anonymized = await backend.get_question(mine.id)
        assert anonymized is not None
        assert anonymized.text == ANONYMIZED_TEXT
        assert anonymized.version == mine.version + 1
        untouched = await backend.get_question(theirs.id)
        assert untouched is not None
        assert untouched.text == theirs.text


class TestSettings:
    """Test workspace settings, channel overrides and targets."""

    async def test_workspace_settings_roundtrip(self, backend: RouterStore) -> None:
        """Test settings are stored per workspace and replaced on write."""
        assert await backend.get_workspace_settings(WORKSPACE) is None

        await backend.set_workspace_settings(
            WORKSPACE, EscalationSettings(first_delay_minutes=30, answer_mode=AnswerMode.HYBRID)
        )
        await backend.set_workspace_settings(
            WORKSPACE, EscalationSettings(first_delay_minutes=45, answer_mode=AnswerMode.HYBRID)
        )

        settings = await backend.get_workspace_settings(WORKSPACE)
        assert settings is not None
        assert settings.first_delay_minutes == 45
        assert settings.answer_mode == AnswerMode.HYBRID

    async def test_channel_override_roundtrip(self, backend: RouterStore) -> None:
        """Test unset override fields stay unset."""
        await backend.set_channel_override(
            WORKSPACE, CHANNEL, ChannelOverride(second_delay_minutes=90, escalation_enabled=False)
        )

        override = await backend.get_channel_override(WORKSPACE, CHANNEL)
        assert override is not None
        assert override.first_delay_minutes is None
        assert override.second_delay_minutes == 90
        assert override.answer_mode is None
        assert not override.escalation_enabled
        assert await backend.get_channel_override(WORKSPACE, "C_OTHER") is None

    async def test_list_channel_overrides(self, backend: RouterStore) -> None:
        """Test overrides are listed per workspace keyed by channel."""
        await backend.set_channel_override(
            WORKSPACE, CHANNEL, ChannelOverride(first_delay_minutes=30)
        )
        await backend.set_channel_override(
            WORKSPACE, "C_OTHER", ChannelOverride(escalation_enabled=False)
        )
        await backend.set_channel_override(
            "T_OTHER", CHANNEL, ChannelOverride(final_delay_minutes=90)
        )

        overrides = await backend.list_channel_overrides(WORKSPACE)

        assert sorted(overrides) == [CHANNEL, "C_OTHER"]
        assert overrides[CHANNEL].first_delay_minutes == 30
        assert not overrides["C_OTHER"].escalation_enabled
        assert await backend.list_channel_overrides("T_EMPTY") == {}

    async def test_targets_scoped_and_ordered(self, backend: RouterStore) -> None:
        """Test targets are filtered by scope and sorted by priority."""
        low = await backend.add_target(
            TargetEntry(WORKSPACE, 1, UserGroupTarget("S_LOW", "support"), priority=5)
        )
        high = await backend.add_target(TargetEntry(WORKSPACE, 1, UserTarget("U_HIGH")))
        await backend.add_target(
            TargetEntry(WORKSPACE, 1, ChannelTarget("C_ALERTS"), channel_id=CHANNEL)
        )
        await backend.add_target(TargetEntry(WORKSPACE, 2, UserTarget("U_L2")))

        workspace_wide = await backend.list_targets(WORKSPACE, 1)
        assert [e.id for e in workspace_wide] == [high.id, low.id]
        assert workspace_wide[1].target == UserGroupTarget("S_LOW", "support")

        channel_only = await backend.list_targets(WORKSPACE, 1, CHANNEL)
        assert [e.target for e in channel_only] == [ChannelTarget("C_ALERTS")]

    async def test_remove_target(self, backend: RouterStore) -> None:
        """Test removal reports whether the target existed."""
        entry = await backend.add_target(TargetEntry(WORKSPACE, 1, UserTarget("U1")))
        assert entry.id is not None

        assert await backend.remove_target(entry.id)
        assert not await backend.remove_target(entry.id)
        assert await backend.list_targets(WORKSPACE, 1) == []


class TestEventLog:
    """Test the escalation audit trail."""

    async def test_record_and_list(self, backend: RouterStore) -> None:
        """Test events come back in recording order."""
        await backend.record(
            EscalationEvent("q-1", 1, EventStatus.FAILED, T0, 1, TargetType.USER, "U1", "timeout")
        )
        await backend.record(
            EscalationEvent("q-1", 1, EventStatus.SUCCESS, T0, 2, TargetType.USER, "U1")
        )
        await backend.record(EscalationEvent("q-2", 1, EventStatus.SKIPPED, T0))

        events = await backend.list_events("q-1")

        assert [e.status for e in events] == [EventStatus.FAILED, EventStatus.SUCCESS]
        assert events[0].detail == "timeout"
        assert events[1].attempt == 2
        assert events[0].occurred_at == T0

        skipped = await backend.list_events("q-2")
        assert skipped[0].target_type is None

    async def test_has_success(self, backend: RouterStore) -> None:
        """Test success lookups match question, level and target."""
        await backend.record(
            EscalationEvent("q-1", 1, EventStatus.FAILED, T0, 1, TargetType.USER, "U1")
        )
        assert not await backend.has_success("q-1", 1, TargetType.USER, "U1")

        await backend.record(
            EscalationEvent("q-1", 1, EventStatus.SUCCESS, T0, 2, TargetType.USER, "U1")
        )
        assert await backend.has_success("q-1", 1, TargetType.USER, "U1")
        assert not await backend.has_success("q-1", 2, TargetType.USER, "U1")
        assert not await backend.has_success("q-1", 1, TargetType.CHANNEL, "U1")
