"""Slack chat adapter using slack-bolt.

This module implements both sides of the chat platform for Slack:
- ChatEventSource: Socket Mode messages and reactions feed the router
- Notifier: escalation messages, permalinks and target validation

Slack API errors are classified into DispatchErrorKind so the scheduler
can tell a rate limit from a channel the bot was removed from.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiohttp
import structlog
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.app.async_app import AsyncApp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from ...models.escalation import (
    ChannelTarget,
    DispatchErrorKind,
    EscalationTarget,
    Notification,
    TargetValidation,
    UserGroupTarget,
    UserTarget,
)
from ...models.message import ChatEvent, ChatMessage, ReactionEvent
from ...utils.async_helpers import NotificationError

if TYPE_CHECKING:
    from ...config.schema import SlackConfig


log = structlog.get_logger()


PERMISSION_ERRORS = frozenset(
    {
        "not_in_channel",
        "is_archived",
        "missing_scope",
        "invalid_auth",
        "not_authed",
        "account_inactive",
        "cannot_dm_bot",
        "restricted_action",
    }
)

NOT_FOUND_ERRORS = frozenset(
    {
        "channel_not_found",
        "user_not_found",
        "usergroup_not_found",
        "message_not_found",
    }
)

TRANSIENT_ERRORS = frozenset(
    {
        "ratelimited",
        "internal_error",
        "service_unavailable",
        "fatal_error",
        "request_timeout",
    }
)

IGNORED_SUBTYPES = frozenset({"message_changed", "message_deleted", "channel_join"})


def classify_slack_error(error_code: str | None) -> DispatchErrorKind:
    """Map a Slack API error code to a dispatch error kind."""
    if error_code in PERMISSION_ERRORS:
        return DispatchErrorKind.PERMISSION
    if error_code in NOT_FOUND_ERRORS:
        return DispatchErrorKind.NOT_FOUND
    if error_code in TRANSIENT_ERRORS:
        return DispatchErrorKind.TRANSIENT
    return DispatchErrorKind.UNKNOWN


def _error_code(error: SlackApiError) -> str | None:
    return error.response.get("error") if error.response is not None else None


def _parse_ts(ts: str) -> datetime:
    try:
        return datetime.fromtimestamp(float(ts), tz=UTC)
    except (ValueError, TypeError):
        return datetime.now(UTC)


class SlackAdapterError(Exception):
    """Base exception for Slack adapter errors."""


class ConnectionError(SlackAdapterError):
    """Raised when connection to Slack fails."""


class SlackAdapter:
    """Slack adapter implementing ChatEventSource and Notifier.

    Example:
        adapter = SlackAdapter(SlackConfig(bot_token="xoxb-...", app_token="xapp-..."))

        await adapter.connect()
        async for event in adapter.listen():
            await service.handle_event(event)
        await adapter.disconnect()
    """

    def __init__(self, config: SlackConfig) -> None:
        self._config = config
        self._connected = False

        self._app = AsyncApp(token=config.bot_token)
        self._client: AsyncWebClient = self._app.client
        self._socket_handler: AsyncSocketModeHandler | None = None

        self._event_queue: asyncio.Queue[ChatEvent] = asyncio.Queue()

        # Track monitored channels (resolved from names to IDs)
        self._monitored_channel_ids: set[str] = set()

        self._disconnect_event = asyncio.Event()

        self._register_handlers()

    def _register_handlers(self) -> None:
        """Register event handlers with the Slack app."""

        @self._app.event("message")
        async def handle_message(event: dict[str, Any], body: dict[str, Any]) -> None:
            await self._process_message_event(event, body.get("team_id"))

        @self._app.event("reaction_added")
        async def handle_reaction(event: dict[str, Any], body: dict[str, Any]) -> None:
            await self._process_reaction_event(event, body.get("team_id"))

    def _workspace_id(self, team_id: str | None, event: dict[str, Any]) -> str:
        return team_id or event.get("team") or self._config.workspace_id or ""

    def _is_monitored(self, channel_id: str) -> bool:
        return not self._monitored_channel_ids or channel_id in self._monitored_channel_ids

    async def _process_message_event(
        self, event: dict[str, Any], team_id: str | None = None
    ) -> None:
        """Queue a message event if it comes from a monitored channel."""
        if event.get("subtype") in IGNORED_SUBTYPES:
            return

        channel_id = event.get("channel", "")
        if not self._is_monitored(channel_id):
            return

        message_id = event.get("ts", "")
        bot_id = event.get("bot_id")
        message = ChatMessage(
            workspace_id=self._workspace_id(team_id, event),
            channel_id=channel_id,
            message_id=message_id,
            thread_id=event.get("thread_ts"),
            user_id=event.get("user") or bot_id or "",
            text=event.get("text", ""),
            timestamp=_parse_ts(message_id),
            is_bot=bool(bot_id) or event.get("subtype") == "bot_message",
            bot_name=event.get("bot_profile", {}).get("name") or event.get("username"),
            raw_event=event,
        )

        await self._event_queue.put(message)
        log.debug("message_queued", channel_id=channel_id, message_id=message_id)

    async def _process_reaction_event(
        self, event: dict[str, Any], team_id: str | None = None
    ) -> None:
        """Queue a reaction on a message in a monitored channel."""
        item = event.get("item", {})
        if item.get("type") != "message":
            return

        channel_id = item.get("channel", "")
        if not self._is_monitored(channel_id):
            return

        reaction = ReactionEvent(
            workspace_id=self._workspace_id(team_id, event),
            channel_id=channel_id,
            message_id=item.get("ts", ""),
            user_id=event.get("user", ""),
            reaction=event.get("reaction", ""),
            timestamp=_parse_ts(event.get("event_ts", "")),
            item_user_id=event.get("item_user"),
        )

        await self._event_queue.put(reaction)
        log.debug(
            "reaction_queued",
            channel_id=channel_id,
            message_id=reaction.message_id,
            reaction=reaction.reaction,
        )

    async def _resolve_channel_ids(self) -> None:
        """Resolve channel names to IDs."""
        self._monitored_channel_ids = set()
        if not self._config.channels:
            return

        try:
            result = await self._client.conversations_list(
                types="public_channel,private_channel"
            )
        except SlackApiError as e:
            log.warning("channel_resolution_failed", error=str(e))
            return

        channels_list: list[dict[str, Any]] = result.get("channels", [])
        for channel in self._config.channels:
            channel_name = channel.lstrip("#")
            for ch_dict in channels_list:
                if ch_dict.get("name") == channel_name or ch_dict.get("id") == channel:
                    self._monitored_channel_ids.add(ch_dict["id"])
                    log.debug("channel_resolved", name=channel, id=ch_dict["id"])
                    break
            else:
                log.warning("channel_not_resolved", channel=channel)

    # ------------------------------------------------------------------
    # ChatEventSource
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Establish connection to Slack using Socket Mode.

        Raises:
            ConnectionError: If connection fails.
        """
        if self._connected:
            return

        try:
            await self._resolve_channel_ids()

            self._socket_handler = AsyncSocketModeHandler(
                app=self._app,
                app_token=self._config.app_token,
            )
            await self._socket_handler.connect_async()  # type: ignore[no-untyped-call]

            self._connected = True
            self._disconnect_event.clear()

            log.info("chat_connected", monitored_channels=len(self._monitored_channel_ids))

        except Exception as e:
            log.error("slack_connection_failed", error=str(e))
            raise ConnectionError(f"Failed to connect to Slack: {e}") from e

    async def disconnect(self) -> None:
        """Gracefully close the Slack connection."""
        if not self._connected:
            return

        self._disconnect_event.set()

        if self._socket_handler:
            try:
                await self._socket_handler.close_async()  # type: ignore[no-untyped-call]
            except Exception as e:
                log.warning("disconnect_error", error=str(e))

        self._connected = False
        log.info("chat_disconnected")

    async def listen(self) -> AsyncIterator[ChatEvent]:
        """Yield messages and reactions from monitored channels."""
        if not self._connected:
            raise SlackAdapterError("Not connected. Call connect() first.")

        while not self._disconnect_event.is_set():
            try:
                event = await asyncio.wait_for(self._event_queue.get(), timeout=1.0)
                yield event
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    async def add_reaction(self, channel_id: str, message_id: str, reaction: str) -> None:
        """Add a reaction to a message; an existing identical reaction is fine.

        Raises:
            NotificationError: If Slack rejects the reaction.
        """
        try:
            await self._client.reactions_add(
                channel=channel_id,
                timestamp=message_id,
                name=reaction,
            )
        except SlackApiError as e:
            code = _error_code(e)
            if code == "already_reacted":
                return
            log.warning(
                "add_reaction_failed",
                channel_id=channel_id,
                message_id=message_id,
                reaction=reaction,
                error=code,
            )
            raise NotificationError(
                f"Failed to add reaction: {code}", classify_slack_error(code)
            ) from e

        log.debug("reaction_added", channel_id=channel_id, message_id=message_id)

    async def get_thread_id(self, channel_id: str, message_id: str) -> str | None:
        """Look up the thread root of a message via conversations.replies."""
        try:
            result = await self._client.conversations_replies(
                channel=channel_id,
                ts=message_id,
                limit=1,
            )
        except SlackApiError as e:
            log.warning(
                "thread_lookup_failed",
                channel_id=channel_id,
                message_id=message_id,
                error=_error_code(e),
            )
            return None

        messages: list[dict[str, Any]] = result.get("messages", [])
        if not messages:
            return None
        thread_ts: str | None = messages[0].get("thread_ts")
        return thread_ts

    # ------------------------------------------------------------------
    # Notifier
    # ------------------------------------------------------------------

    async def send(self, notification: Notification) -> str:
        """Post a notification and return its ts.

        Raises:
            NotificationError: Classified by Slack error code.
        """
        kwargs: dict[str, Any] = {
            "channel": notification.channel_id,
            "text": notification.text,
            "unfurl_links": notification.unfurl_links,
        }
        if notification.thread_id:
            kwargs["thread_ts"] = notification.thread_id

        try:
            result = await self._client.chat_postMessage(**kwargs)
        except SlackApiError as e:
            code = _error_code(e)
            raise NotificationError(
                f"Slack rejected message to {notification.channel_id}: {code}",
                classify_slack_error(code),
            ) from e
        except aiohttp.ClientError as e:
            raise NotificationError(
                f"Slack request failed: {e}", DispatchErrorKind.TRANSIENT
            ) from e

        message_ts: str = result.get("ts", "")
        log.debug(
            "message_sent",
            channel_id=notification.channel_id,
            message_ts=message_ts,
            thread_id=notification.thread_id,
        )
        return message_ts

    async def get_permalink(self, channel_id: str, message_id: str) -> str | None:
        try:
            result = await self._client.chat_getPermalink(
                channel=channel_id,
                message_ts=message_id,
            )
        except SlackApiError as e:
            log.debug("permalink_failed", channel_id=channel_id, error=_error_code(e))
            return None
        permalink: str | None = result.get("permalink")
        return permalink

    async def validate_target(self, target: EscalationTarget) -> TargetValidation:
        """Check that a target exists and can receive notifications."""
        try:
            if isinstance(target, UserTarget):
                return await self._validate_user(target.target_id)
            if isinstance(target, UserGroupTarget):
                return await self._validate_user_group(target.target_id)
            if isinstance(target, ChannelTarget):
                return await self._validate_channel(target.target_id)
        except SlackApiError as e:
            return TargetValidation(valid=False, reason=_error_code(e))

        return TargetValidation(valid=False, reason=f"unsupported target {target!r}")

    async def _validate_user(self, user_id: str) -> TargetValidation:
        result = await self._client.users_info(user=user_id)
        user: dict[str, Any] = result.get("user", {})
        if user.get("deleted"):
            return TargetValidation(valid=False, reason="user is deactivated")
        if user.get("is_bot"):
            return TargetValidation(valid=False, reason="user is a bot")
        return TargetValidation(valid=True)

    async def _validate_user_group(self, group_id: str) -> TargetValidation:
        result = await self._client.usergroups_list(include_disabled=True)
        groups: list[dict[str, Any]] = result.get("usergroups", [])
        for group in groups:
            if group.get("id") == group_id:
                if group.get("date_delete"):
                    return TargetValidation(valid=False, reason="user group is disabled")
                return TargetValidation(valid=True)
        return TargetValidation(valid=False, reason="usergroup_not_found")

    async def _validate_channel(self, channel_id: str) -> TargetValidation:
        result = await self._client.conversations_info(channel=channel_id)
        channel: dict[str, Any] = result.get("channel", {})
        if channel.get("is_archived"):
            return TargetValidation(valid=False, reason="channel is archived")
        if not channel.get("is_member"):
            return TargetValidation(valid=False, reason="bot is not a member of the channel")
        return TargetValidation(valid=True)
