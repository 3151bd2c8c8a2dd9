"""Log sinks: terminal, archive files and remote collector."""
from .archive import FileArchiver
from .console import ConsoleSink
from .remote import (
    LokiClient,
    OtlpHttpClient,
    RemoteTelemetrySink,
    TelemetryClient,
    create_telemetry_client,
)

__all__ = [
    "ConsoleSink",
    "FileArchiver",
    "LokiClient",
    "OtlpHttpClient",
    "RemoteTelemetrySink",
    "TelemetryClient",
    "create_telemetry_client",
]
