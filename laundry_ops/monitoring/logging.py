"""
Structured logging configuration.

Every service logs through structlog. Events are rendered as JSON lines on
stdout and carry the request id (API) or job id (workers) bound in
contextvars, so one order's transitions and payment syncs can be followed
across processes.
"""
import logging
import sys
from typing import Any, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from laundry_ops.config import Settings, get_settings

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Add application context to log events.

    ``tap_mode`` tells test-key traffic apart from live payments in shared
    log storage.
    """
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    event_dict["tap_mode"] = "test" if settings.is_test_mode else "live"
    return event_dict


def build_processors(settings: Settings) -> List[Any]:
    """structlog processor chain; the console renderer replaces JSON in debug mode."""
    renderer: Any = (
        structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_app_context,
        renderer,
    ]


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root logger.

    Safe to call more than once; the API and each worker call it on startup.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    # SQL echo goes through the engine logger
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        renderer="console" if settings.debug else "json",
    )
