"""CLI entry point for the payment gatekeeper.

Usage:
    python -m payment_gatekeeper [options]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.config
import sys
from typing import NoReturn

from pydantic import ValidationError

from payment_gatekeeper import __version__
from payment_gatekeeper.codec.checksum import PayloadChecksumCodec
from payment_gatekeeper.config import Settings, clear_settings_cache, get_settings
from payment_gatekeeper.service import GatekeeperService
from payment_gatekeeper.shutdown import GracefulShutdown

# Application info
APP_NAME = "Payment Gatekeeper"
APP_VERSION = __version__

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INVALID_CODE = 3
EXIT_INTERRUPTED = 130


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="payment-gatekeeper",
        description="Payment-status driven channel access and notification engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m payment_gatekeeper                        Run the service
  python -m payment_gatekeeper --config-check         Validate config and exit
  python -m payment_gatekeeper --once --dry-run       Run one alert tick, log only
  python -m payment_gatekeeper --validate-code CODE   Check a PIX code checksum
  python -m payment_gatekeeper --repair-code CODE     Print CODE with a fixed checksum
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {APP_VERSION}",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--config-check",
        action="store_true",
        help="Validate configuration and exit",
    )
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run a single alert broadcaster tick, wait for deliveries and exit",
    )
    mode.add_argument(
        "--validate-code",
        metavar="CODE",
        default=None,
        help="Validate the structure and checksum of a payment code and exit",
    )
    mode.add_argument(
        "--repair-code",
        metavar="CODE",
        default=None,
        help="Recompute the checksum of a payment code, print it and exit",
    )

    parser.add_argument(
        "--bot-id",
        type=int,
        default=None,
        help="Restrict --once to a single bot",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level (default: from settings)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log channel operations instead of calling Telegram",
    )

    return parser


def configure_logging(level: str) -> None:
    """Configure console logging for the application.

    Args:
        level: Logging level string (DEBUG, INFO, etc.)
    """
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "detailed": {
                "format": (
                    "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "detailed" if level == "DEBUG" else "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        # Quieter logging for noisy libraries
        "loggers": {
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "redis": {"level": "WARNING"},
        },
    }
    logging.config.dictConfig(config)


def print_config_summary(settings: Settings, dry_run: bool) -> None:
    """Print a summary of the configuration."""
    summary = settings.redacted_summary()
    print(f"{APP_NAME} v{APP_VERSION}")
    print("Configuration:")
    print(f"  Database: {summary['database_url']}")
    print(f"  Redis: {summary['redis_url']}")
    print(f"  Dead-letter stream: {summary['dead_letter_stream']}")
    for group in ("telegram", "dispatcher", "scheduler"):
        values = summary[group]
        if isinstance(values, dict):
            rendered = ", ".join(f"{k}={v}" for k, v in values.items())
        else:
            rendered = values
        print(f"  {group.capitalize()}: {rendered}")
    print(f"  Log Level: {summary['log_level']}")
    print(f"  Dry Run: {dry_run}")
    print()


def validate_config() -> Settings | None:
    """Validate and load configuration.

    Returns:
        Settings instance if valid, None if invalid.
    """
    try:
        clear_settings_cache()
        return get_settings()
    except ValidationError as e:
        print("Configuration validation failed:", file=sys.stderr)
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            print(f"  {field}: {error['msg']}", file=sys.stderr)
        return None


def run_code_check(code: str, *, repair: bool) -> int:
    """Validate or repair a payment code and print the report as JSON.

    Returns:
        Exit code (EXIT_INVALID_CODE if the resulting code is invalid).
    """
    codec = PayloadChecksumCodec()
    if repair:
        repaired, report = codec.repair(code)
        output = {"code": repaired, **report.to_dict()}
    else:
        report = codec.full_validate(code)
        output = report.to_dict()
    print(json.dumps(output, indent=2))
    return EXIT_SUCCESS if report.valid else EXIT_INVALID_CODE


async def run_once(settings: Settings, dry_run: bool, bot_id: int | None = None) -> int:
    """Run one alert tick and wait for its deliveries."""
    logger = logging.getLogger(__name__)
    service = GatekeeperService(settings, dry_run=dry_run)
    try:
        summary = await service.run_alert_tick(bot_id)
        logger.info(
            "Tick finished: %d alerts selected, %d jobs enqueued",
            summary.alerts_selected,
            summary.jobs_enqueued,
        )
        return EXIT_SUCCESS
    except Exception as e:
        logger.exception("Alert tick failed: %s", e)
        return EXIT_ERROR
    finally:
        await service.stop()


async def run_service(
    settings: Settings,
    dry_run: bool,
    shutdown_timeout: float = 30.0,
) -> int:
    """Run the service until a shutdown signal arrives.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)
    shutdown = GracefulShutdown(timeout=shutdown_timeout)

    try:
        async with shutdown:
            service = GatekeeperService(settings, dry_run=dry_run)
            shutdown.register_cleanup(service.stop)

            logger.info("Starting service...")
            await service.start()
            logger.info("Service running. Press Ctrl+C to stop.")

            await shutdown.wait()
            logger.info("Shutdown signal received, stopping service...")

        return EXIT_SUCCESS
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception("Service failed: %s", e)
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:]).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    # Codec diagnostics need no configuration
    if args.validate_code is not None:
        sys.exit(run_code_check(args.validate_code, repair=False))
    if args.repair_code is not None:
        sys.exit(run_code_check(args.repair_code, repair=True))

    settings = validate_config()
    if settings is None:
        sys.exit(EXIT_CONFIG_ERROR)

    configure_logging(args.log_level or settings.log_level)
    dry_run = args.dry_run or settings.dry_run

    if args.config_check:
        print("Configuration is valid!")
        print()
        print_config_summary(settings, dry_run)
        sys.exit(EXIT_SUCCESS)

    print_config_summary(settings, dry_run)

    if args.once:
        sys.exit(asyncio.run(run_once(settings, dry_run, args.bot_id)))

    sys.exit(asyncio.run(run_service(settings, dry_run)))


if __name__ == "__main__":
    main()
