"""Configuration loading and validation."""

from .loader import load_config
from .schema import (
    AnswerPolicy,
    ChannelOverride,
    DetectionConfig,
    EscalationSettings,
    LoggingConfig,
    ReactionConfig,
    ResolverConfig,
    RouterConfig,
    RuntimeConfig,
    SchedulerConfig,
    SlackConfig,
    StoreConfig,
)

__all__ = [
    # Loader
    "load_config",
    # Root config
    "RouterConfig",
    # Escalation behaviour
    "AnswerPolicy",
    "ChannelOverride",
    "EscalationSettings",
    "ReactionConfig",
    "SchedulerConfig",
    # Infrastructure
    "DetectionConfig",
    "LoggingConfig",
    "ResolverConfig",
    "RuntimeConfig",
    "SlackConfig",
    "StoreConfig",
]
