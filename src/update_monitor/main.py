"""
Main application entry point for the update ingestion monitor.

This module configures logging, loads the consumer named in the settings and
runs the monitor until SIGINT/SIGTERM.
"""

import asyncio
import importlib
import logging
import signal
import sys
from typing import Any

import structlog

from .config import Settings, get_settings
from .delivery import Consumer
from .exceptions import ConfigurationError, UpdateMonitorError
from .models import UpdateRecord
from .monitor import UpdateMonitor


def setup_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level), format="%(message)s"
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_update(update: UpdateRecord) -> None:
    """Default consumer: log each update."""
    structlog.get_logger(__name__).info(
        "Update received",
        update_id=update.sequence_id,
        kinds=sorted(key for key in update.payload if key != "update_id"),
    )


def load_consumer(path: str) -> Consumer:
    """
    Import a consumer from a ``module:attr`` path.

    Raises:
        ConfigurationError: If the path cannot be imported or is not callable
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            f"Invalid consumer path {path!r}; expected 'module:attr'",
            context={"consumer": path},
        )
    try:
        consumer: Any = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(
            f"Cannot load consumer {path!r}: {e}", context={"consumer": path}
        ) from e
    if not callable(consumer):
        raise ConfigurationError(
            f"Consumer {path!r} is not callable", context={"consumer": path}
        )
    return consumer


async def run(settings: Settings) -> None:
    """Run the monitor until a shutdown signal arrives."""
    logger = structlog.get_logger()
    cancel_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel_event.set)

    monitor = UpdateMonitor(
        settings, load_consumer(settings.consumer), cancel_event=cancel_event
    )
    try:
        await monitor.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    logger.info("Update monitor stopped")


def main() -> None:
    """Main entry point."""
    settings = get_settings()
    setup_logging(settings)
    logger = structlog.get_logger()

    logger.info(
        "Starting update monitor",
        account_id=settings.telegram_account_id,
        mode=settings.monitor_mode,
    )

    try:
        asyncio.run(run(settings))
    except UpdateMonitorError as e:
        logger.error("Update monitor failed", error=str(e), code=e.code, **e.context)
        sys.exit(1)


if __name__ == "__main__":
    main()
