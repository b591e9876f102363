"""Entry point for running the question router.

This module handles:
- Configuration loading
- Logging setup with secret sanitization
- Store and adapter instantiation
- Service lifecycle management, or a single scheduler tick with --once
"""

import argparse
import asyncio
import sys
from pathlib import Path

import structlog

from question_router._version import __version__

log = structlog.get_logger()


def setup_logging(
    debug: bool = False,
    log_format: str = "console",
    file_path: Path | None = None,
    file_enabled: bool = False,
) -> None:
    """Configure structured logging with secret sanitization."""
    from question_router.utils.logging import LogFormat, LogLevel, configure_logging

    level = LogLevel.DEBUG if debug else LogLevel.INFO

    configure_logging(
        level=level,
        log_format=LogFormat(log_format.lower()),
        file_path=file_path,
        file_enabled=file_enabled,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="question-router",
        description="Question router - track chat questions and escalate unanswered ones",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file (default: config/config.yaml)",
    )

    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse config and validate without starting the router",
    )

    parser.add_argument(
        "--format",
        choices=["json", "console"],
        default="console",
        help="Log output format (default: console)",
    )

    parser.add_argument(
        "--health-check",
        action="store_true",
        help="Run health check and exit",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single escalation tick and exit",
    )

    return parser.parse_args(argv)


async def run_router(
    config_path: Path,
    dry_run: bool = False,
    health_check: bool = False,
    once: bool = False,
    debug: bool = False,
) -> int:
    """Run the question router.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    log.info("starting_question_router", version=__version__, config_path=str(config_path))

    try:
        from question_router.config.loader import load_config

        config = load_config(config_path)
        log.info("configuration_loaded", path=str(config_path))

        from question_router.utils.logging import configure_from_config

        configure_from_config(config.logging, debug=debug)

        if dry_run:
            from question_router.utils.security import mask_config_value

            log.info(
                "dry_run_mode_config_valid",
                store_backend=config.store.backend,
                store_url=mask_config_value("url", config.store.url or ""),
                slack_configured=config.slack is not None,
            )
            return 0

        from question_router.core.service import _create_store, create_service

        if health_check:
            from question_router.utils.health import HealthChecker

            store = await _create_store(config)
            try:
                report = await HealthChecker(config, store).run_all_checks()
            finally:
                await store.close()

            if report.healthy:
                log.info("health_check_passed", details=report.details)
                return 0
            log.error("health_check_failed", checks=report.to_dict()["checks"])
            return 1

        service = await create_service(config)

        if once:
            tick = await service.run_once()
            if tick is None:
                return 0
            return 1 if tick.errors else 0

        await service.start()
        return 0

    except FileNotFoundError as e:
        log.error("configuration_file_not_found", path=str(config_path), error=str(e))
        return 1
    except ValueError as e:
        log.error("configuration_invalid", error=str(e))
        return 1
    except KeyboardInterrupt:
        log.info("keyboard_interrupt_received")
        return 0
    except Exception as e:
        log.exception("fatal_error", error=str(e))
        return 1


def main() -> int:
    """Main entry point."""
    args = parse_args()

    setup_logging(debug=args.debug, log_format=args.format)

    try:
        return asyncio.run(
            run_router(args.config, args.dry_run, args.health_check, args.once, args.debug)
        )
    except KeyboardInterrupt:
        log.info("shutting_down_gracefully")
        return 0


if __name__ == "__main__":
    sys.exit(main())
