"""Abstract interfaces for question, settings and event persistence."""

from datetime import datetime
from typing import Any, Protocol

from ..config.schema import ChannelOverride, EscalationSettings
from ..models.escalation import EscalationEvent, TargetEntry, TargetType
from ..models.question import NewQuestion, Question


class QuestionStore(Protocol):
    """Persistence for tracked questions.

    Every write is conditional on the version the caller read; stores bump
    the version by one per successful write.
    """

    async def ping(self) -> bool:
        """Return True if the backing store is reachable."""
        ...

    async def create_question(self, new: NewQuestion) -> Question:
        """
        Persist a new question in the ``unanswered`` state at level 0.

        Raises:
            DuplicateMessageError: If the (workspace, message) pair exists;
                the error carries the stored question.
        """
        ...

    async def get_question(self, question_id: str) -> Question | None:
        """Fetch a question by id."""
        ...

    async def find_by_message(self, workspace_id: str, message_id: str) -> Question | None:
        """Fetch the question created from a chat message."""
        ...

    async def list_escalation_candidates(self, limit: int, offset: int = 0) -> list[Question]:
        """
        List unanswered questions below the maximum level, oldest first.

        Args:
            limit: Page size
            offset: Number of rows to skip
        """
        ...

    async def list_expired_snoozes(self, now: datetime) -> list[Question]:
        """List snoozed questions whose ``snoozed_until`` is at or before ``now``."""
        ...

    async def update_question(
        self,
        question_id: str,
        expected_version: int,
        **changes: Any,
    ) -> Question:
        """
        Apply ``changes`` only if the row is still at ``expected_version``.

        Returns:
            The updated question

        Raises:
            QuestionNotFound: If the question does not exist
            ConcurrentStateConflict: If the version moved on
            InvalidTransitionError: If the change breaks lifecycle rules
        """
        ...

    async def anonymize_asker(self, workspace_id: str, asker_id: str) -> int:
        """Replace the text of every question by ``asker_id``; return the count."""
        ...


class SettingsStore(Protocol):
    """Persistence for workspace settings, channel overrides and targets."""

    async def get_workspace_settings(self, workspace_id: str) -> EscalationSettings | None:
        ...

    async def set_workspace_settings(
        self, workspace_id: str, settings: EscalationSettings
    ) -> None:
        ...

    async def get_channel_override(
        self, workspace_id: str, channel_id: str
    ) -> ChannelOverride | None:
        ...

    async def set_channel_override(
        self, workspace_id: str, channel_id: str, override: ChannelOverride
    ) -> None:
        ...

    async def list_channel_overrides(self, workspace_id: str) -> dict[str, ChannelOverride]:
        """Return every override in the workspace keyed by channel id."""
        ...

    async def list_targets(
        self,
        workspace_id: str,
        level: int,
        channel_id: str | None = None,
    ) -> list[TargetEntry]:
        """
        List targets for a level, ordered by priority.

        With ``channel_id`` None only workspace-wide entries are returned;
        otherwise only entries scoped to that channel.
        """
        ...

    async def add_target(self, entry: TargetEntry) -> TargetEntry:
        """Persist a target and return it with its assigned id."""
        ...

    async def remove_target(self, entry_id: int) -> bool:
        """Delete a target; return False if it did not exist."""
        ...


class EventLog(Protocol):
    """Append-only audit trail of escalation attempts."""

    async def record(self, event: EscalationEvent) -> EscalationEvent:
        ...

    async def has_success(
        self,
        question_id: str,
        level: int,
        target_type: TargetType,
        target_id: str,
    ) -> bool:
        """Return True if a ``success`` event exists for this target and level."""
        ...

    async def list_events(self, question_id: str) -> list[EscalationEvent]:
        """List events for a question in the order they were recorded."""
        ...


class RouterStore(QuestionStore, SettingsStore, EventLog, Protocol):
    """A backend implementing all three persistence protocols."""

    async def close(self) -> None:
        ...
