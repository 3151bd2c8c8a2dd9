"""
Core data types shared by the publisher, its sinks and the HTTP instrumentation.

Types:
- LogLevel: severity of a log call (drives tag, console color, remote severity)
- SinkFlags: per-call switches for terminal / archive / remote delivery
- LogEvent: one fully-resolved log call, immutable once created
- InboundRequest / RequestContext: per-request data for the instrumentor
- TelemetryRecord: transport-agnostic payload handed to remote clients
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Levels exposed by the publisher."""

    INFO = "info"
    LOG = "log"  # request lifecycle ("completed") lines
    ERROR = "error"
    CRITICAL = "critical"


# Archive category per level. Tag is never chosen by the caller.
TAG_BY_LEVEL: Dict[LogLevel, str] = {
    LogLevel.INFO: "info",
    LogLevel.LOG: "logs",
    LogLevel.ERROR: "exceptions",
    LogLevel.CRITICAL: "criticals",
}


class RemoteSeverity(Enum):
    """Severities declared by the remote collector."""

    INFO = "INFO"
    ERROR = "ERROR"


@dataclass(frozen=True)
class SinkFlags:
    """Which sinks a single log call is delivered to."""

    terminal: bool = True
    archive: bool = True
    remote: bool = True


@dataclass(frozen=True)
class LogEvent:
    """
    A single log call after options have been resolved.

    Attributes:
        level: Severity of the call
        message: Human-readable text
        timestamp: Timezone-aware UTC instant of the call
        app_name: Application name from configuration
        metadata: Structured per-call context (request id, duration, ...)
        sinks: Delivery switches for this call
    """

    level: LogLevel
    message: str
    timestamp: datetime
    app_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    sinks: SinkFlags = field(default_factory=SinkFlags)

    @property
    def tag(self) -> str:
        """Archive category derived from the level."""
        return TAG_BY_LEVEL[self.level]


@dataclass(frozen=True)
class InboundRequest:
    """Request data captured by the HTTP adapter. Diagnostic only."""

    method: str
    path: str
    body: Any = None
    params: Optional[Dict[str, Any]] = None
    query: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class RequestContext:
    """
    Per-request correlation state.

    Created when the instrumentor starts handling a request and dropped when
    the request completes or fails. Never shared between requests.
    """

    request_id: str
    method: str
    path: str
    started_at: datetime
    start_time: float  # time.perf_counter() reading

    def elapsed_ms(self, now: float) -> float:
        """Milliseconds between start_time and ``now`` (a perf_counter reading)."""
        return round((now - self.start_time) * 1000, 3)


@dataclass(frozen=True)
class TelemetryRecord:
    """Logical payload for the remote collector."""

    severity: RemoteSeverity
    body: str
    attributes: Dict[str, Any]
    timestamp: datetime
