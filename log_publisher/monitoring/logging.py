"""
Structured logging configuration for the publisher's own diagnostics.

Uses structlog for connection status, sink failures and dropped remote
deliveries. These never go through the publisher itself, so a broken sink
cannot hide its own failure.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from log_publisher.config import PublisherSettings


def add_app_context(settings: PublisherSettings) -> Any:
    """
    Build a processor that adds application context to log events.

    Args:
        settings: Publisher settings

    Returns:
        Any: structlog processor
    """

    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("env", settings.environment)
        return event_dict

    return processor


def setup_logging(settings: PublisherSettings, stream: Optional[Any] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Sets up:
    - Request-ID propagation through structlog contextvars
    - ISO timestamps and exception rendering
    - JSON output (python-json-logger) when settings.json_logs is set

    Args:
        settings: Publisher settings
        stream: Output stream for the root handler (default: stderr)
    """
    # JSON mode hands the event dict to python-json-logger as "extra" fields
    renderer: Any = (
        structlog.stdlib.render_to_log_kwargs
        if settings.json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context(settings),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    if settings.json_logs:
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={
                    "asctime": "@timestamp",
                    "levelname": "level",
                    "name": "logger",
                },
            )
        )
    else:
        handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        json_logs=settings.json_logs,
    )
