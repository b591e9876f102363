"""Abstract interface for delivering escalation notifications."""

from typing import Protocol

from ..models.escalation import EscalationTarget, Notification, TargetValidation


class Notifier(Protocol):
    """Outbound side of a chat platform.

    Implementations raise NotificationError with a DispatchErrorKind so the
    dispatcher can tell transient failures from permanent ones.
    """

    async def send(self, notification: Notification) -> str:
        """
        Deliver a rendered notification.

        Returns:
            Platform message id of the sent message

        Raises:
            NotificationError: If delivery fails
        """
        ...

    async def get_permalink(self, channel_id: str, message_id: str) -> str | None:
        """Return a link to a message, or None if it cannot be built."""
        ...

    async def validate_target(self, target: EscalationTarget) -> TargetValidation:
        """Check that a target exists and can receive notifications."""
        ...
