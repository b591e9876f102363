"""Turns top-level chat messages into tracked questions."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from ..config.schema import DetectionConfig
from ..models.message import ChatMessage, IntakeResult
from ..models.question import NewQuestion
from ..utils.async_helpers import DuplicateMessageError
from ..utils.metrics import get_metrics
from ..utils.security import preview_text
from .detector import QuestionDetector, extract_ticket_id

if TYPE_CHECKING:
    from ..interfaces.chat import ChatEventSource
    from ..interfaces.store import QuestionStore

log = structlog.get_logger()


class QuestionIntake:
    """Detects questions in incoming messages and starts tracking them.

    Bot messages are ignored unless they come from the Zendesk integration,
    whose side-conversation posts are tracked with the ticket number they
    mention.

    Example:
        intake = QuestionIntake(store, QuestionDetector(), chat=slack)
        result = await intake.handle_message(message)
    """

    def __init__(
        self,
        store: QuestionStore,
        detector: QuestionDetector,
        chat: ChatEventSource | None = None,
        tracked_reaction: str | None = "question",
        detection: DetectionConfig | None = None,
    ) -> None:
        self._store = store
        self._detector = detector
        self._chat = chat
        self._tracked_reaction = tracked_reaction
        self._detection = detection or DetectionConfig()

    def is_zendesk_bot(self, message: ChatMessage) -> bool:
        if not self._detection.zendesk_enabled or not message.is_bot:
            return False
        if message.user_id in self._detection.zendesk_bot_ids:
            return True
        return bool(message.bot_name and "zendesk" in message.bot_name.lower())

    async def handle_message(self, message: ChatMessage) -> IntakeResult:
        """Track ``message`` if it is a new top-level question."""
        get_metrics().messages_received.inc()

        if message.is_thread_reply:
            return IntakeResult.SKIPPED

        zendesk = self.is_zendesk_bot(message)
        if message.is_bot and not zendesk:
            return IntakeResult.SKIPPED

        if not zendesk and not self._detector.is_question(message.text):
            return IntakeResult.NOT_A_QUESTION

        new = NewQuestion(
            workspace_id=message.workspace_id,
            channel_id=message.channel_id,
            message_id=message.message_id,
            asker_id=message.user_id,
            text=message.text,
            asked_at=message.timestamp,
            thread_id=message.thread_id,
            external_ticket_id=extract_ticket_id(message.text) if zendesk else None,
            source_app="zendesk" if zendesk else "slack",
        )

        try:
            question = await self._store.create_question(new)
        except DuplicateMessageError as e:
            get_metrics().questions_duplicate.inc()
            log.debug("question_duplicate", question_id=e.existing.id)
            return IntakeResult.DUPLICATE

        get_metrics().questions_tracked.inc()
        log.info(
            "question_tracked",
            question_id=question.id,
            workspace_id=question.workspace_id,
            channel_id=question.channel_id,
            source_app=question.source_app,
            preview=preview_text(question.text),
        )

        await self._mark_tracked(message)
        return IntakeResult.TRACKED

    async def erase_user_data(self, workspace_id: str, user_id: str) -> int:
        """Replace the text of every question a user asked in a workspace."""
        count = await self._store.anonymize_asker(workspace_id, user_id)
        log.info("user_data_erased", workspace_id=workspace_id, user_id=user_id, questions=count)
        return count

    async def _mark_tracked(self, message: ChatMessage) -> None:
        if self._chat is None or not self._tracked_reaction:
            return
        try:
            await self._chat.add_reaction(
                message.channel_id, message.message_id, self._tracked_reaction
            )
        except Exception as e:
            log.warning("tracked_reaction_failed", message_id=message.message_id, error=str(e))
