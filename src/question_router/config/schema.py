"""Pydantic models for configuration schema."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..models.escalation import AnswerMode


class SlackConfig(BaseModel):
    """Slack-specific configuration."""

    bot_token: str
    app_token: str
    channels: list[str] = []
    workspace_id: str | None = None

    @field_validator("bot_token")
    @classmethod
    def validate_bot_token(cls, v: str) -> str:
        """Validate Slack bot token format."""
        if not v.startswith("xoxb-"):
            raise ValueError("Bot token must start with xoxb-")
        return v

    @field_validator("app_token")
    @classmethod
    def validate_app_token(cls, v: str) -> str:
        """Validate Slack app token format."""
        if not v.startswith("xapp-"):
            raise ValueError("App token must start with xapp-")
        return v


class ReactionConfig(BaseModel):
    """Reaction names that drive question state."""

    tracked: str = "question"
    answered: list[str] = ["white_check_mark", "heavy_check_mark", "ballot_box_with_check"]
    dismiss: list[str] = ["no_entry", "no_entry_sign"]
    snooze: list[str] = ["no_bell"]
    acknowledge: list[str] = ["eyes"]

    @model_validator(mode="after")
    def check_disjoint(self) -> "ReactionConfig":
        """A reaction name may only trigger one action."""
        seen: dict[str, str] = {}
        for action in ("answered", "dismiss", "snooze", "acknowledge"):
            for name in getattr(self, action):
                if name in seen:
                    raise ValueError(
                        f"Reaction '{name}' is configured for both {seen[name]} and {action}"
                    )
                seen[name] = action
        return self


class StoreConfig(BaseModel):
    """Question store configuration."""

    backend: Literal["sql", "memory"] = "sql"
    url: str | None = "sqlite+aiosqlite:///question_router.db"
    echo: bool = False
    create_schema: bool = True


class SchedulerConfig(BaseModel):
    """Escalation scheduler configuration."""

    interval_seconds: float = Field(60.0, gt=0, le=3600)
    batch_size: int = Field(200, ge=1, le=5000)
    max_concurrent_dispatches: int = Field(5, ge=1, le=50)
    dispatch_timeout_seconds: float = Field(10.0, gt=0, le=120)
    max_dispatch_attempts: int = Field(2, ge=1, le=10)
    retry_wait_seconds: float = Field(1.0, ge=0, le=60)
    outbound_rate_per_second: float | None = Field(None, gt=0)


class EscalationSettings(BaseModel):
    """Escalation delays and answer detection mode.

    Delays are cumulative offsets in minutes from when the question was asked.
    """

    first_delay_minutes: int = Field(120, ge=1, le=1440)
    second_delay_minutes: int = Field(240, ge=1, le=1440)
    final_delay_minutes: int = Field(1440, ge=1, le=1440)
    answer_mode: AnswerMode = AnswerMode.EMOJI_ONLY

    @model_validator(mode="after")
    def check_ordering(self) -> "EscalationSettings":
        """Later tiers cannot fire before earlier ones."""
        if self.first_delay_minutes > self.second_delay_minutes:
            raise ValueError("first_delay_minutes must not exceed second_delay_minutes")
        if self.second_delay_minutes > self.final_delay_minutes:
            raise ValueError("second_delay_minutes must not exceed final_delay_minutes")
        return self


class ChannelOverride(BaseModel):
    """Per-channel overrides; unset fields fall back to workspace settings."""

    first_delay_minutes: int | None = Field(None, ge=1, le=1440)
    second_delay_minutes: int | None = Field(None, ge=1, le=1440)
    final_delay_minutes: int | None = Field(None, ge=1, le=1440)
    answer_mode: AnswerMode | None = None
    escalation_enabled: bool = True


class AnswerPolicy(BaseModel):
    """Who may mark a question as answered."""

    marker_requires_asker: bool = True
    confirm_requires_asker: bool = True
    default_snooze_minutes: int = Field(60, ge=1, le=10080)


class ResolverConfig(BaseModel):
    """Settings and target cache configuration."""

    cache_ttl_seconds: int = Field(60, ge=0, le=3600)
    cache_size: int = Field(1024, ge=1)


class DetectionConfig(BaseModel):
    """Question detection configuration."""

    min_length: int = Field(10, ge=1, le=500)
    zendesk_enabled: bool = False
    zendesk_bot_ids: list[str] = []


class FileLoggingConfig(BaseModel):
    """File logging configuration."""

    enabled: bool = False
    path: Path = Path("/var/log/question-router/router.log")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console"] = "json"
    file: FileLoggingConfig = FileLoggingConfig()


class RuntimeConfig(BaseModel):
    """Runtime configuration."""

    max_concurrent: int = Field(10, ge=1, le=100, description="Max concurrent chat events")
    shutdown_timeout: int = Field(30, ge=1, le=300, description="Seconds to drain on shutdown")


class RouterConfig(BaseSettings):
    """Root configuration for the question router."""

    slack: SlackConfig | None = None
    store: StoreConfig = StoreConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    escalation: EscalationSettings = EscalationSettings()
    answers: AnswerPolicy = AnswerPolicy()
    reactions: ReactionConfig = ReactionConfig()
    resolver: ResolverConfig = ResolverConfig()
    detection: DetectionConfig = DetectionConfig()
    logging: LoggingConfig = LoggingConfig()
    runtime: RuntimeConfig = RuntimeConfig()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="QUESTION_ROUTER_",
    )
