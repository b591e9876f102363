"""Health check utilities for monitoring service health.

This module checks:
- Configuration sanity (store backend, escalation ordering)
- Question store reachability
- Slack token presence and format
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from question_router.config.schema import RouterConfig
    from question_router.interfaces.store import QuestionStore

log = structlog.get_logger()


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class CheckResult:
    """Result of a single health check."""

    name: str
    status: HealthStatus
    message: str
    latency_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthReport:
    """Overall health report."""

    healthy: bool
    status: HealthStatus
    timestamp: datetime
    checks: list[CheckResult]
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "healthy": self.healthy,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "checks": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "message": c.message,
                    "latency_ms": c.latency_ms,
                    "details": c.details,
                }
                for c in self.checks
            ],
            "details": self.details,
        }


class HealthChecker:
    """Performs health checks on the router's dependencies.

    Example:
        checker = HealthChecker(config, store)
        report = await checker.run_all_checks()
        if not report.healthy:
            print(report.to_dict())
    """

    def __init__(self, config: RouterConfig, store: QuestionStore | None = None) -> None:
        self._config = config
        self._store = store

    async def run_all_checks(self) -> HealthReport:
        """Run all health checks concurrently and return a report."""
        log.info("health_check_start")
        start_time = datetime.now(UTC)

        checks: list[CheckResult] = []
        results = await asyncio.gather(
            self._check_config(),
            self._check_store(),
            self._check_slack_tokens(),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, BaseException):
                checks.append(
                    CheckResult(
                        name="unknown",
                        status=HealthStatus.UNHEALTHY,
                        message=f"Check failed with exception: {result}",
                    )
                )
            else:
                checks.append(result)

        if all(c.status == HealthStatus.HEALTHY for c in checks):
            overall_status = HealthStatus.HEALTHY
            healthy = True
        elif any(c.status == HealthStatus.UNHEALTHY for c in checks):
            overall_status = HealthStatus.UNHEALTHY
            healthy = False
        else:
            overall_status = HealthStatus.DEGRADED
            healthy = True

        report = HealthReport(
            healthy=healthy,
            status=overall_status,
            timestamp=start_time,
            checks=checks,
            details={
                "total_checks": len(checks),
                "healthy_checks": sum(1 for c in checks if c.status == HealthStatus.HEALTHY),
                "degraded_checks": sum(1 for c in checks if c.status == HealthStatus.DEGRADED),
                "unhealthy_checks": sum(1 for c in checks if c.status == HealthStatus.UNHEALTHY),
            },
        )

        log.info(
            "health_check_complete",
            healthy=healthy,
            status=overall_status.value,
            checks_run=len(checks),
        )
        return report

    async def _check_config(self) -> CheckResult:
        """Check configuration validity."""
        store = self._config.store
        if store.backend == "sql" and not store.url:
            return CheckResult(
                name="config",
                status=HealthStatus.UNHEALTHY,
                message="SQL store selected but no url configured",
            )

        escalation = self._config.escalation
        return CheckResult(
            name="config",
            status=HealthStatus.HEALTHY,
            message="Configuration valid",
            details={
                "store_backend": store.backend,
                "answer_mode": escalation.answer_mode.value,
                "delays_minutes": [
                    escalation.first_delay_minutes,
                    escalation.second_delay_minutes,
                    escalation.final_delay_minutes,
                ],
            },
        )

    async def _check_store(self) -> CheckResult:
        """Check that the question store answers a trivial query."""
        if self._store is None:
            return CheckResult(
                name="store",
                status=HealthStatus.UNKNOWN,
                message="Store not initialized, skipping",
            )

        start = time.monotonic()
        try:
            reachable = await self._store.ping()
        except Exception as e:
            return CheckResult(
                name="store",
                status=HealthStatus.UNHEALTHY,
                message=f"Store check failed: {e}",
            )
        latency = (time.monotonic() - start) * 1000

        if reachable:
            return CheckResult(
                name="store",
                status=HealthStatus.HEALTHY,
                message="Store reachable",
                latency_ms=latency,
            )
        return CheckResult(
            name="store",
            status=HealthStatus.UNHEALTHY,
            message="Store unreachable",
            latency_ms=latency,
        )

    async def _check_slack_tokens(self) -> CheckResult:
        """Check Slack token availability (not validity, which needs an API call)."""
        slack_config = self._config.slack
        if slack_config is None:
            return CheckResult(
                name="slack_tokens",
                status=HealthStatus.DEGRADED,
                message="Slack not configured; no chat events will be received",
            )

        if not slack_config.bot_token.startswith("xoxb-"):
            return CheckResult(
                name="slack_tokens",
                status=HealthStatus.UNHEALTHY,
                message="Invalid bot token format",
            )

        if not slack_config.app_token.startswith("xapp-"):
            return CheckResult(
                name="slack_tokens",
                status=HealthStatus.UNHEALTHY,
                message="Invalid app token format",
            )

        return CheckResult(
            name="slack_tokens",
            status=HealthStatus.HEALTHY,
            message="Slack tokens configured",
            details={
                "bot_token_present": True,
                "app_token_present": True,
                "channels": len(slack_config.channels),
            },
        )


async def write_health_file(report: HealthReport, path: Path) -> None:
    """Write a health report to a file for external monitoring."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report.to_dict(), indent=2))
        log.debug("health_file_written", path=str(path))
    except OSError as e:
        log.error("health_file_write_error", path=str(path), error=str(e))
