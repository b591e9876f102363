"""Administrative operations on escalation settings and targets.

All writes are validated before they reach the store and invalidate the
resolver cache afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from ..config.schema import ChannelOverride, EscalationSettings
from ..models.escalation import EffectiveConfig, EscalationTarget, TargetEntry
from ..models.question import MAX_ESCALATION_LEVEL
from ..utils.async_helpers import ConfigurationInvalid
from .resolver import merge_settings

if TYPE_CHECKING:
    from ..core.resolver import EscalationTargetResolver
    from ..interfaces.notifier import Notifier
    from ..interfaces.store import SettingsStore

log = structlog.get_logger()


@dataclass(frozen=True)
class ConfigPreview:
    """What a question asked in a given channel would experience."""

    config: EffectiveConfig
    targets_by_level: dict[int, list[EscalationTarget]] = field(default_factory=dict)


def _check_ordering(config: EffectiveConfig) -> None:
    if not (
        config.first_delay_minutes
        <= config.second_delay_minutes
        <= config.final_delay_minutes
    ):
        raise ConfigurationInvalid(
            "Escalation delays must not decrease: "
            f"{config.first_delay_minutes}, {config.second_delay_minutes}, "
            f"{config.final_delay_minutes}"
        )


class EscalationAdmin:
    """Validated writes for workspace settings, overrides and targets.

    Example:
        admin = EscalationAdmin(store, resolver, notifier=slack)
        await admin.update_workspace_settings("T1", first_delay_minutes=30)
        await admin.add_target("T1", 1, UserGroupTarget("S123"))
    """

    def __init__(
        self,
        settings: SettingsStore,
        resolver: EscalationTargetResolver,
        notifier: Notifier | None = None,
    ) -> None:
        self._settings = settings
        self._resolver = resolver
        self._notifier = notifier

    async def update_workspace_settings(
        self, workspace_id: str, **changes: Any
    ) -> EscalationSettings:
        """Apply partial changes over the workspace's current settings.

        Every existing channel override must still merge to non-decreasing
        delays.

        Raises:
            ConfigurationInvalid: If the result fails validation.
        """
        current = await self._settings.get_workspace_settings(workspace_id)
        base = current or self._resolver.defaults
        try:
            updated = EscalationSettings.model_validate({**base.model_dump(), **changes})
        except ValidationError as e:
            raise ConfigurationInvalid(str(e)) from e

        overrides = await self._settings.list_channel_overrides(workspace_id)
        for channel_id, override in overrides.items():
            try:
                _check_ordering(merge_settings(self._resolver.defaults, updated, override))
            except ConfigurationInvalid as e:
                raise ConfigurationInvalid(f"Channel {channel_id} override conflicts: {e}") from e

        await self._settings.set_workspace_settings(workspace_id, updated)
        self._resolver.invalidate(workspace_id)
        log.info("workspace_settings_updated", workspace_id=workspace_id, fields=sorted(changes))
        return updated

    async def update_channel_override(
        self, workspace_id: str, channel_id: str, **changes: Any
    ) -> ChannelOverride:
        """Apply partial changes to a channel override.

        The merged result with the workspace settings must keep delays
        non-decreasing.

        Raises:
            ConfigurationInvalid: If the override or the merged result is invalid.
        """
        current = await self._settings.get_channel_override(workspace_id, channel_id)
        base = current.model_dump() if current else {}
        try:
            override = ChannelOverride.model_validate({**base, **changes})
        except ValidationError as e:
            raise ConfigurationInvalid(str(e)) from e

        workspace = await self._settings.get_workspace_settings(workspace_id)
        _check_ordering(merge_settings(self._resolver.defaults, workspace, override))

        await self._settings.set_channel_override(workspace_id, channel_id, override)
        self._resolver.invalidate(workspace_id)
        log.info(
            "channel_override_updated",
            workspace_id=workspace_id,
            channel_id=channel_id,
            fields=sorted(changes),
        )
        return override

    async def add_target(
        self,
        workspace_id: str,
        level: int,
        target: EscalationTarget,
        channel_id: str | None = None,
        priority: int = 0,
        validate: bool = True,
    ) -> TargetEntry:
        """Register a target for a level, returning the existing entry if present.

        Raises:
            ConfigurationInvalid: If the level is out of range or the chat
                platform rejects the target.
        """
        if not 1 <= level <= MAX_ESCALATION_LEVEL:
            raise ConfigurationInvalid(f"Escalation level must be between 1 and 3, got {level}")

        for entry in await self._settings.list_targets(workspace_id, level, channel_id):
            if entry.target == target:
                return entry

        if validate and self._notifier is not None:
            result = await self._notifier.validate_target(target)
            if not result.valid:
                raise ConfigurationInvalid(
                    f"Target {target.target_type} {target.target_id} rejected: {result.reason}"
                )

        entry = await self._settings.add_target(
            TargetEntry(
                workspace_id=workspace_id,
                level=level,
                target=target,
                channel_id=channel_id,
                priority=priority,
            )
        )
        self._resolver.invalidate(workspace_id)
        log.info(
            "escalation_target_added",
            workspace_id=workspace_id,
            channel_id=channel_id,
            level=level,
            target_type=target.target_type,
            target_id=target.target_id,
        )
        return entry

    async def remove_target(self, entry_id: int) -> bool:
        removed = await self._settings.remove_target(entry_id)
        if removed:
            self._resolver.invalidate()
            log.info("escalation_target_removed", entry_id=entry_id)
        return removed

    async def preview(self, workspace_id: str, channel_id: str | None = None) -> ConfigPreview:
        """Show the effective settings and targets for a channel."""
        config = await self._resolver.get_effective_config(workspace_id, channel_id)
        targets = {
            level: await self._resolver.get_targets(workspace_id, channel_id, level)
            for level in range(1, MAX_ESCALATION_LEVEL + 1)
        }
        return ConfigPreview(config=config, targets_by_level=targets)
