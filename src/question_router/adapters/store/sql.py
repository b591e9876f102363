"""SQLAlchemy store implementing the question, settings and event protocols.

Uses SQLAlchemy 2.0 async sessions. SQLite (via aiosqlite) is the default
backend; any async driver SQLAlchemy supports will work.

Question writes are conditional on the ``version`` column, so two processes
racing on the same row cannot both succeed.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    delete,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from ...config.schema import ChannelOverride, EscalationSettings, StoreConfig
from ...models.escalation import (
    AnswerMode,
    EscalationEvent,
    EventStatus,
    TargetEntry,
    TargetType,
    target_from_type,
)
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


class UTCDateTime(TypeDecorator[datetime]):
    """Stores naive UTC, hands back timezone-aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes cannot be stored")
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base for router tables."""


class QuestionRow(Base):
    __tablename__ = "questions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False)
    thread_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    asker_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    asked_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=QuestionStatus.UNANSWERED
    )
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    answered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    answered_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    answering_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    replied_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    snoozed_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    external_ticket_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_app: Mapped[str] = mapped_column(String(32), nullable=False, default="slack")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("workspace_id", "message_id", name="uq_questions_workspace_message"),
        Index("ix_questions_status_level", "status", "escalation_level"),
    )


class WorkspaceSettingsRow(Base):
    __tablename__ = "workspace_settings"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    first_delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    second_delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    final_delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    answer_mode: Mapped[str] = mapped_column(String(20), nullable=False)


class ChannelOverrideRow(Base):
    __tablename__ = "channel_overrides"

    workspace_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    first_delay_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    second_delay_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_delay_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    answer_mode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    escalation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class EscalationTargetRow(Base):
    __tablename__ = "escalation_targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    target_type: Mapped[str] = mapped_column(String(20), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("ix_targets_lookup", "workspace_id", "level", "channel_id"),)


class EscalationEventRow(Base):
    __tablename__ = "escalation_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    target_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


def _to_question(row: QuestionRow) -> Question:
    return Question(
        id=row.id,
        workspace_id=row.workspace_id,
        channel_id=row.channel_id,
        message_id=row.message_id,
        thread_id=row.thread_id,
        asker_id=row.asker_id,
        text=row.text,
        asked_at=row.asked_at,
        status=QuestionStatus(row.status),
        escalation_level=row.escalation_level,
        last_escalated_at=row.last_escalated_at,
        answered_at=row.answered_at,
        answered_by=row.answered_by,
        answering_message_id=row.answering_message_id,
        replied_at=row.replied_at,
        snoozed_until=row.snoozed_until,
        external_ticket_id=row.external_ticket_id,
        source_app=row.source_app,
        version=row.version,
    )


def _to_target_entry(row: EscalationTargetRow) -> TargetEntry:
    return TargetEntry(
        id=row.id,
        workspace_id=row.workspace_id,
        channel_id=row.channel_id,
        level=row.level,
        priority=row.priority,
        target=target_from_type(row.target_type, row.target_id, row.display_name),
    )


def _to_override(row: ChannelOverrideRow) -> ChannelOverride:
    return ChannelOverride(
        first_delay_minutes=row.first_delay_minutes,
        second_delay_minutes=row.second_delay_minutes,
        final_delay_minutes=row.final_delay_minutes,
        answer_mode=AnswerMode(row.answer_mode) if row.answer_mode else None,
        escalation_enabled=row.escalation_enabled,
    )


def _to_event(row: EscalationEventRow) -> EscalationEvent:
    return EscalationEvent(
        id=row.id,
        question_id=row.question_id,
        level=row.level,
        status=EventStatus(row.status),
        attempt=row.attempt,
        occurred_at=row.occurred_at,
        target_type=TargetType(row.target_type) if row.target_type else None,
        target_id=row.target_id,
        detail=row.detail,
    )


def create_engine_for(config: StoreConfig) -> AsyncEngine:
    """Create an async engine for the configured URL.

    In-memory SQLite needs a single shared connection, otherwise every
    session would see its own empty database.
    """
    if not config.url:
        raise ValueError("store.url is required for the SQL store")

    kwargs: dict[str, Any] = {"echo": config.echo}
    if config.url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in config.url or config.url.endswith("://"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    return create_async_engine(config.url, **kwargs)


class SqlStore:
    """Relational store for questions, settings, targets and events.

    Example:
        store = SqlStore.from_config(StoreConfig(url="sqlite+aiosqlite:///router.db"))
        await store.create_schema()
        question = await store.create_question(new_question)
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_config(cls, config: StoreConfig) -> SqlStore:
        return cls(create_engine_for(config))

    async def create_schema(self) -> None:
        """Create any missing tables."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        log.info("database_schema_ready")

    async def close(self) -> None:
        await self._engine.dispose()

    # ------------------------------------------------------------------
    # QuestionStore
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            log.warning("database_ping_failed", error=str(e))
            return False

    async def create_question(self, new: NewQuestion) -> Question:
        row = QuestionRow(
            id=str(uuid.uuid4()),
            workspace_id=new.workspace_id,
            channel_id=new.channel_id,
            message_id=new.message_id,
            thread_id=new.thread_id,
            asker_id=new.asker_id,
            text=new.text,
            asked_at=new.asked_at,
            status=QuestionStatus.UNANSWERED.value,
            escalation_level=0,
            external_ticket_id=new.external_ticket_id,
            source_app=new.source_app,
            version=1,
        )

        async with self._sessions() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                existing = await self.find_by_message(new.workspace_id, new.message_id)
                if existing is None:
                    raise
                raise DuplicateMessageError(existing) from e

        log.debug("question_stored", question_id=row.id, backend="sql")
        return _to_question(row)

    async def get_question(self, question_id: str) -> Question | None:
        async with self._sessions() as session:
            row = await session.get(QuestionRow, question_id)
            return _to_question(row) if row else None

    async def find_by_message(self, workspace_id: str, message_id: str) -> Question | None:
        stmt = select(QuestionRow).where(
            QuestionRow.workspace_id == workspace_id,
            QuestionRow.message_id == message_id,
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_question(row) if row else None

    async def list_escalation_candidates(self, limit: int, offset: int = 0) -> list[Question]:
        stmt = (
            select(QuestionRow)
            .where(
                QuestionRow.status == QuestionStatus.UNANSWERED.value,
                QuestionRow.escalation_level < MAX_ESCALATION_LEVEL,
            )
            .order_by(QuestionRow.asked_at, QuestionRow.id)
            .limit(limit)
            .offset(offset)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_question(row) for row in rows]

    async def list_expired_snoozes(self, now: datetime) -> list[Question]:
        stmt = select(QuestionRow).where(
            QuestionRow.status == QuestionStatus.SNOOZED.value,
            QuestionRow.snoozed_until.is_not(None),
            QuestionRow.snoozed_until <= now,
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_question(row) for row in rows]

    async def update_question(
        self,
        question_id: str,
        expected_version: int,
        **changes: Any,
    ) -> Question:
        async with self._sessions() as session, session.begin():
            row = await session.get(QuestionRow, question_id)
            if row is None:
                raise QuestionNotFound(question_id)
            if row.version != expected_version:
                raise ConcurrentStateConflict(question_id, expected_version)

            updated = apply_changes(_to_question(row), changes)
            values = {name: getattr(updated, name) for name in changes}
            if "status" in values:
                values["status"] = updated.status.value

            stmt = (
                update(QuestionRow)
                .where(
                    QuestionRow.id == question_id,
                    QuestionRow.version == expected_version,
                )
                .values(**values, version=updated.version)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise ConcurrentStateConflict(question_id, expected_version)

        return updated

    async def anonymize_asker(self, workspace_id: str, asker_id: str) -> int:
        stmt = (
            update(QuestionRow)
            .where(
                QuestionRow.workspace_id == workspace_id,
                QuestionRow.asker_id == asker_id,
            )
            .values(text=ANONYMIZED_TEXT, version=QuestionRow.version + 1)
            .execution_options(synchronize_session=False)
        )
        async with self._sessions() as session, session.begin():
            result = await session.execute(stmt)
            return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # SettingsStore
    # ------------------------------------------------------------------

    async def get_workspace_settings(self, workspace_id: str) -> EscalationSettings | None:
        async with self._sessions() as session:
            row = await session.get(WorkspaceSettingsRow, workspace_id)
            if row is None:
                return None
            return EscalationSettings(
                first_delay_minutes=row.first_delay_minutes,
                second_delay_minutes=row.second_delay_minutes,
                final_delay_minutes=row.final_delay_minutes,
                answer_mode=AnswerMode(row.answer_mode),
            )

    async def set_workspace_settings(
        self, workspace_id: str, settings: EscalationSettings
    ) -> None:
        async with self._sessions() as session, session.begin():
            await session.merge(
                WorkspaceSettingsRow(
                    workspace_id=workspace_id,
                    first_delay_minutes=settings.first_delay_minutes,
                    second_delay_minutes=settings.second_delay_minutes,
                    final_delay_minutes=settings.final_delay_minutes,
                    answer_mode=settings.answer_mode.value,
                )
            )

    async def get_channel_override(
        self, workspace_id: str, channel_id: str
    ) -> ChannelOverride | None:
        async with self._sessions() as session:
            row = await session.get(ChannelOverrideRow, (workspace_id, channel_id))
            if row is None:
                return None
            return _to_override(row)

    async def set_channel_override(
        self, workspace_id: str, channel_id: str, override: ChannelOverride
    ) -> None:
        async with self._sessions() as session, session.begin():
            await session.merge(
                ChannelOverrideRow(
                    workspace_id=workspace_id,
                    channel_id=channel_id,
                    first_delay_minutes=override.first_delay_minutes,
                    second_delay_minutes=override.second_delay_minutes,
                    final_delay_minutes=override.final_delay_minutes,
                    answer_mode=override.answer_mode.value if override.answer_mode else None,
                    escalation_enabled=override.escalation_enabled,
                )
            )

    async def list_channel_overrides(self, workspace_id: str) -> dict[str, ChannelOverride]:
        stmt = select(ChannelOverrideRow).where(ChannelOverrideRow.workspace_id == workspace_id)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return {row.channel_id: _to_override(row) for row in rows}

    async def list_targets(
        self,
        workspace_id: str,
        level: int,
        channel_id: str | None = None,
    ) -> list[TargetEntry]:
        stmt = select(EscalationTargetRow).where(
            EscalationTargetRow.workspace_id == workspace_id,
            EscalationTargetRow.level == level,
        )
        if channel_id is None:
            stmt = stmt.where(EscalationTargetRow.channel_id.is_(None))
        else:
            stmt = stmt.where(EscalationTargetRow.channel_id == channel_id)
        stmt = stmt.order_by(EscalationTargetRow.priority, EscalationTargetRow.id)

        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_target_entry(row) for row in rows]

    async def add_target(self, entry: TargetEntry) -> TargetEntry:
        row = EscalationTargetRow(
            workspace_id=entry.workspace_id,
            channel_id=entry.channel_id,
            level=entry.level,
            target_type=entry.target.target_type.value,
            target_id=entry.target.target_id,
            display_name=entry.target.display_name,
            priority=entry.priority,
        )
        async with self._sessions() as session, session.begin():
            session.add(row)
        return _to_target_entry(row)

    async def remove_target(self, entry_id: int) -> bool:
        stmt = delete(EscalationTargetRow).where(EscalationTargetRow.id == entry_id)
        async with self._sessions() as session, session.begin():
            result = await session.execute(stmt)
            return bool(result.rowcount)

    # ------------------------------------------------------------------
    # EventLog
    # ------------------------------------------------------------------

    async def record(self, event: EscalationEvent) -> EscalationEvent:
        row = EscalationEventRow(
            question_id=event.question_id,
            level=event.level,
            target_type=event.target_type.value if event.target_type else None,
            target_id=event.target_id,
            attempt=event.attempt,
            status=event.status.value,
            detail=event.detail,
            occurred_at=event.occurred_at,
        )
        async with self._sessions() as session, session.begin():
            session.add(row)
        return _to_event(row)

    async def has_success(
        self,
        question_id: str,
        level: int,
        target_type: TargetType,
        target_id: str,
    ) -> bool:
        stmt = (
            select(EscalationEventRow.id)
            .where(
                EscalationEventRow.question_id == question_id,
                EscalationEventRow.level == level,
                EscalationEventRow.target_type == target_type.value,
                EscalationEventRow.target_id == target_id,
                EscalationEventRow.status == EventStatus.SUCCESS.value,
            )
            .limit(1)
        )
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def list_events(self, question_id: str) -> list[EscalationEvent]:
        stmt = (
            select(EscalationEventRow)
            .where(EscalationEventRow.question_id == question_id)
            .order_by(EscalationEventRow.id)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_event(row) for row in rows]
