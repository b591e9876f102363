"""Effective escalation configuration and target resolution.

Settings are layered: application defaults, then workspace settings, then a
channel override. Targets for a level come from the channel when it has any
for that level, otherwise from the workspace.

Reads are cached for a short TTL; administrative writes call ``invalidate``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from cachetools import TTLCache

from ..config.schema import ChannelOverride, EscalationSettings
from ..models.escalation import EffectiveConfig, EscalationTarget
from ..utils.metrics import get_metrics

if TYPE_CHECKING:
    from ..interfaces.store import SettingsStore

log = structlog.get_logger()


def merge_settings(
    defaults: EscalationSettings,
    workspace: EscalationSettings | None,
    override: ChannelOverride | None,
) -> EffectiveConfig:
    """Layer workspace settings and a channel override over the defaults."""
    base = workspace or defaults
    config = EffectiveConfig(
        first_delay_minutes=base.first_delay_minutes,
        second_delay_minutes=base.second_delay_minutes,
        final_delay_minutes=base.final_delay_minutes,
        answer_mode=base.answer_mode,
    )
    if override is None:
        return config

    return EffectiveConfig(
        first_delay_minutes=override.first_delay_minutes or config.first_delay_minutes,
        second_delay_minutes=override.second_delay_minutes or config.second_delay_minutes,
        final_delay_minutes=override.final_delay_minutes or config.final_delay_minutes,
        answer_mode=override.answer_mode or config.answer_mode,
        escalation_enabled=override.escalation_enabled,
    )


class EscalationTargetResolver:
    """Resolves effective settings and targets for a question's location.

    Example:
        resolver = EscalationTargetResolver(store, config.escalation)
        config = await resolver.get_effective_config("T123", "C456")
        targets = await resolver.get_targets("T123", "C456", level=1)
    """

    def __init__(
        self,
        settings: SettingsStore,
        defaults: EscalationSettings,
        cache_ttl_seconds: int = 60,
        cache_size: int = 1024,
    ) -> None:
        self._settings = settings
        self._defaults = defaults
        self._caching = cache_ttl_seconds > 0
        ttl = max(cache_ttl_seconds, 1)
        self._config_cache: TTLCache[tuple[str, str | None], EffectiveConfig] = TTLCache(
            maxsize=cache_size,
            ttl=ttl,
        )
        self._target_cache: TTLCache[tuple[str, str | None, int], list[EscalationTarget]] = (
            TTLCache(maxsize=cache_size, ttl=ttl)
        )

    @property
    def defaults(self) -> EscalationSettings:
        return self._defaults

    async def get_effective_config(
        self,
        workspace_id: str,
        channel_id: str | None = None,
    ) -> EffectiveConfig:
        """Return defaults overlaid with workspace settings and channel override."""
        key = (workspace_id, channel_id)
        if self._caching and key in self._config_cache:
            get_metrics().cache_hits.inc(labels={"cache": "config"})
            return self._config_cache[key]
        get_metrics().cache_misses.inc(labels={"cache": "config"})

        workspace = await self._settings.get_workspace_settings(workspace_id)
        override = None
        if channel_id is not None:
            override = await self._settings.get_channel_override(workspace_id, channel_id)

        config = merge_settings(self._defaults, workspace, override)
        if self._caching:
            self._config_cache[key] = config
        return config

    async def get_targets(
        self,
        workspace_id: str,
        channel_id: str | None,
        level: int,
    ) -> list[EscalationTarget]:
        """Return the targets to notify for ``level``, ordered by priority.

        An empty list means nobody is configured for the level.
        """
        key = (workspace_id, channel_id, level)
        if self._caching and key in self._target_cache:
            get_metrics().cache_hits.inc(labels={"cache": "targets"})
            return list(self._target_cache[key])
        get_metrics().cache_misses.inc(labels={"cache": "targets"})

        entries = []
        if channel_id is not None:
            entries = await self._settings.list_targets(workspace_id, level, channel_id)
        if not entries:
            entries = await self._settings.list_targets(workspace_id, level)

        targets = [entry.target for entry in entries]
        log.debug(
            "targets_resolved",
            workspace_id=workspace_id,
            channel_id=channel_id,
            level=level,
            count=len(targets),
        )
        if self._caching:
            self._target_cache[key] = targets
        return list(targets)

    def invalidate(self, workspace_id: str | None = None) -> None:
        """Drop cached settings and targets for one workspace, or all of them."""
        if workspace_id is None:
            self._config_cache.clear()
            self._target_cache.clear()
            return

        for cache in (self._config_cache, self._target_cache):
            for key in [key for key in cache if key[0] == workspace_id]:
                cache.pop(key, None)
