"""
Structured-logging publisher for server applications.

Fans each log event out to the terminal, daily archive files and a remote
collector (Loki or OTLP), and instruments HTTP request handling with
correlation IDs and timing.

    publisher = create_publisher(PublisherSettings(app_name="orders", archive_path="/var/log/orders"))
    await publisher.info("Service started")
    await publisher.critical("disk full", archive=False)
"""
from .config import PublisherSettings, get_settings
from .exceptions import (
    ArchiveWriteError,
    PublisherError,
    SinkError,
    TelemetryConnectionError,
    TelemetryError,
)
from .middleware import RequestInstrumentor, current_request_context
from .models import InboundRequest, LogEvent, LogLevel, RequestContext, SinkFlags
from .service import PublisherService, create_publisher

__version__ = "0.1.0"

__all__ = [
    "ArchiveWriteError",
    "InboundRequest",
    "LogEvent",
    "LogLevel",
    "PublisherError",
    "PublisherService",
    "PublisherSettings",
    "RequestContext",
    "RequestInstrumentor",
    "SinkError",
    "SinkFlags",
    "TelemetryConnectionError",
    "TelemetryError",
    "create_publisher",
    "current_request_context",
    "get_settings",
]
