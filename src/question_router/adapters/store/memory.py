"""In-process store implementing the question, settings and event protocols.

Used by the test suite and by ``store.backend: memory`` for local runs.
State lives in plain dicts; each method completes without awaiting, so a
read-check-write inside one call is atomic with respect to other coroutines.
"""

from __future__ import annotations

import dataclasses
import itertools
import uuid
from datetime import datetime
from typing import Any

import structlog

from ...config.schema import ChannelOverride, EscalationSettings
from ...models.escalation import EscalationEvent, EventStatus, TargetEntry, TargetType
from ...models.question import (
    ANONYMIZED_TEXT,
    MAX_ESCALATION_LEVEL,
    NewQuestion,
    Question,
    QuestionStatus,
    apply_changes,
)
from ...utils.async_helpers import (
    ConcurrentStateConflict,
    DuplicateMessageError,
    QuestionNotFound,
)

log = structlog.get_logger()


class InMemoryStore:
    """Dict-backed store with optimistic versioning."""

    def __init__(self) -> None:
        self._questions: dict[str, Question] = {}
        self._by_message: dict[tuple[str, str], str] = {}
        self._workspace_settings: dict[str, EscalationSettings] = {}
        self._channel_overrides: dict[tuple[str, str], ChannelOverride] = {}
        self._targets: dict[int, TargetEntry] = {}
        self._events: list[EscalationEvent] = []
        self._target_ids = itertools.count(1)
        self._event_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # QuestionStore
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass

    async def create_question(self, new: NewQuestion) -> Question:
        key = (new.workspace_id, new.message_id)
        existing_id = self._by_message.get(key)
        if existing_id is not None:
            raise DuplicateMessageError(self._questions[existing_id])

        question = Question(
            id=str(uuid.uuid4()),
            workspace_id=new.workspace_id,
            channel_id=new.channel_id,
            message_id=new.message_id,
            thread_id=new.thread_id,
            asker_id=new.asker_id,
            text=new.text,
            asked_at=new.asked_at,
            external_ticket_id=new.external_ticket_id,
            source_app=new.source_app,
        )
        self._questions[question.id] = question
        self._by_message[key] = question.id
        log.debug("question_stored", question_id=question.id, backend="memory")
        return question

    async def get_question(self, question_id: str) -> Question | None:
        return self._questions.get(question_id)

    async def find_by_message(self, workspace_id: str, message_id: str) -> Question | None:
        question_id = self._by_message.get((workspace_id, message_id))
        return self._questions.get(question_id) if question_id else None

    async def list_escalation_candidates(self, limit: int, offset: int = 0) -> list[Question]:
        candidates = sorted(
            (
                q
                for q in self._questions.values()
                if q.status == QuestionStatus.UNANSWERED
                and q.escalation_level < MAX_ESCALATION_LEVEL
            ),
            key=lambda q: (q.asked_at, q.id),
        )
        return candidates[offset : offset + limit]

    async def list_expired_snoozes(self, now: datetime) -> list[Question]:
        return [
            q
            for q in self._questions.values()
            if q.status == QuestionStatus.SNOOZED
            and q.snoozed_until is not None
            and q.snoozed_until <= now
        ]

    async def update_question(
        self,
        question_id: str,
        expected_version: int,
        **changes: Any,
    ) -> Question:
        current = self._questions.get(question_id)
        if current is None:
            raise QuestionNotFound(question_id)
        if current.version != expected_version:
            raise ConcurrentStateConflict(question_id, expected_version)

        updated = apply_changes(current, changes)
        self._questions[question_id] = updated
        return updated

    async def anonymize_asker(self, workspace_id: str, asker_id: str) -> int:
        count = 0
        for question in list(self._questions.values()):
            if question.workspace_id == workspace_id and question.asker_id == asker_id:
                self._questions[question.id] = apply_changes(question, {"text": ANONYMIZED_TEXT})
                count += 1
        return count

    # ------------------------------------------------------------------
    # SettingsStore
    # ------------------------------------------------------------------

    async def get_workspace_settings(self, workspace_id: str) -> EscalationSettings | None:
        return self._workspace_settings.get(workspace_id)

    async def set_workspace_settings(
        self, workspace_id: str, settings: EscalationSettings
    ) -> None:
        self._workspace_settings[workspace_id] = settings.model_copy()

    async def get_channel_override(
        self, workspace_id: str, channel_id: str
    ) -> ChannelOverride | None:
        return self._channel_overrides.get((workspace_id, channel_id))

    async def set_channel_override(
        self, workspace_id: str, channel_id: str, override: ChannelOverride
    ) -> None:
        self._channel_overrides[(workspace_id, channel_id)] = override.model_copy()

    async def list_channel_overrides(self, workspace_id: str) -> dict[str, ChannelOverride]:
        return {
            channel_id: override.model_copy()
            for (ws, channel_id), override in self._channel_overrides.items()
            if ws == workspace_id
        }

    async def list_targets(
        self,
        workspace_id: str,
        level: int,
        channel_id: str | None = None,
    ) -> list[TargetEntry]:
        entries = [
            entry
            for entry in self._targets.values()
            if entry.workspace_id == workspace_id
            and entry.level == level
            and entry.channel_id == channel_id
        ]
        return sorted(entries, key=lambda e: (e.priority, e.id or 0))

    async def add_target(self, entry: TargetEntry) -> TargetEntry:
        stored = dataclasses.replace(entry, id=next(self._target_ids))
        self._targets[stored.id] = stored  # type: ignore[index]
        return stored

    async def remove_target(self, entry_id: int) -> bool:
        return self._targets.pop(entry_id, None) is not None

    # ------------------------------------------------------------------
    # EventLog
    # ------------------------------------------------------------------

    async def record(self, event: EscalationEvent) -> EscalationEvent:
        stored = dataclasses.replace(event, id=next(self._event_ids))
        self._events.append(stored)
        return stored

    async def has_success(
        self,
        question_id: str,
        level: int,
        target_type: TargetType,
        target_id: str,
    ) -> bool:
        return any(
            e.question_id == question_id
            and e.level == level
            and e.target_type == target_type
            and e.target_id == target_id
            and e.status == EventStatus.SUCCESS
            for e in self._events
        )

    async def list_events(self, question_id: str) -> list[EscalationEvent]:
        return [e for e in self._events if e.question_id == question_id]
