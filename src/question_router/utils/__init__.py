"""Utility functions and helpers.

- async_helpers: Error taxonomy, result retry, rate limiting, per-key locks
- clock: Injectable time source
- logging: Structured logging with secret sanitization
- health: Health check utilities
- metrics: Application metrics collection
- security: Secret redaction and log-safe text
"""

from question_router.utils.async_helpers import (
    ConcurrentStateConflict,
    ConfigurationInvalid,
    DuplicateMessageError,
    InvalidTransitionError,
    KeyedLock,
    NotificationError,
    QuestionNotFound,
    RateLimiter,
    RouterError,
    StartupError,
)
from question_router.utils.clock import Clock, ManualClock, SystemClock
from question_router.utils.health import (
    HealthChecker,
    HealthReport,
    HealthStatus,
)
from question_router.utils.logging import (
    LogFormat,
    LogLevel,
    configure_from_config,
    configure_logging,
    question_log_context,
)
from question_router.utils.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    Timer,
    get_metrics,
)
from question_router.utils.security import (
    RedactionError,
    SecretRedactor,
    SecurityError,
)

__all__ = [
    # Errors
    "ConcurrentStateConflict",
    "ConfigurationInvalid",
    "DuplicateMessageError",
    "InvalidTransitionError",
    "NotificationError",
    "QuestionNotFound",
    "RouterError",
    "StartupError",
    # Concurrency
    "KeyedLock",
    "RateLimiter",
    # Time
    "Clock",
    "ManualClock",
    "SystemClock",
    # Metrics
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
    "Timer",
    "get_metrics",
    # Health
    "HealthChecker",
    "HealthReport",
    "HealthStatus",
    # Logging
    "LogFormat",
    "LogLevel",
    "configure_from_config",
    "configure_logging",
    "question_log_context",
    # Security
    "RedactionError",
    "SecretRedactor",
    "SecurityError",
]
