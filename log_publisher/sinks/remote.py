"""
Remote telemetry sink.

Best-effort forwarding of log events to a log-aggregation collector:
- Loki (push API, https://grafana.com/docs/loki/latest/reference/loki-http-api/)
- OTLP/HTTP JSON logs (OpenTelemetry collector /v1/logs)

SEVERITY CONVENTION:
The collectors only receive INFO and ERROR. CRITICAL events are sent as ERROR
with the body prefixed by "[CRITICAL] "; the local level name is always kept
in the "level" attribute.

DELIVERY:
emit() schedules the push as a background task and returns immediately, so a
slow collector never delays a response. Failures are caught inside the task,
logged and reported through the on_error callback. There is no retry: a
record that fails is dropped.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Union

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource

from log_publisher.config import PublisherSettings
from log_publisher.exceptions import TelemetryConnectionError, TelemetryError
from log_publisher.models import LogEvent, LogLevel, RemoteSeverity, TelemetryRecord
from log_publisher.serialization import safe_dumps

logger = structlog.get_logger(__name__)

CRITICAL_PREFIX = "[CRITICAL] "

SEVERITY_BY_LEVEL: Dict[LogLevel, RemoteSeverity] = {
    LogLevel.INFO: RemoteSeverity.INFO,
    LogLevel.LOG: RemoteSeverity.INFO,
    LogLevel.ERROR: RemoteSeverity.ERROR,
    LogLevel.CRITICAL: RemoteSeverity.ERROR,
}

# OTLP SeverityNumber values
OTLP_SEVERITY_NUMBER = {
    RemoteSeverity.INFO: 9,
    RemoteSeverity.ERROR: 17,
}

ErrorCallback = Callable[[str, BaseException], None]
Transport = Union[httpx.BaseTransport, httpx.AsyncBaseTransport]


def current_trace_context() -> Dict[str, str]:
    """
    Trace/span IDs of the active OpenTelemetry span.

    Returns:
        Dict[str, str]: trace_id and span_id, or empty if no span is active
    """
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return {}
    return {
        "trace_id": format(ctx.trace_id, "032x"),
        "span_id": format(ctx.span_id, "016x"),
    }


def build_record(event: LogEvent, environment: str) -> TelemetryRecord:
    """
    Map a log event onto the collector's schema.

    Args:
        event: Log event
        environment: Deployment environment

    Returns:
        TelemetryRecord: Severity-mapped record with app/env/level attributes
    """
    severity = SEVERITY_BY_LEVEL[event.level]
    body = event.message
    if event.level is LogLevel.CRITICAL:
        body = CRITICAL_PREFIX + body

    attributes: Dict[str, Any] = {
        "app": event.app_name,
        "env": environment,
        "level": event.level.value,
    }
    attributes.update(current_trace_context())
    attributes.update(event.metadata)

    return TelemetryRecord(
        severity=severity,
        body=body,
        attributes=attributes,
        timestamp=event.timestamp,
    )


def _unix_nanos(timestamp: datetime) -> str:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return str(int(timestamp.timestamp() * 1_000_000_000))


class TelemetryClient(Protocol):
    """Transport contract consumed by RemoteTelemetrySink."""

    def connect(self) -> None:
        """Probe the collector. Raises TelemetryConnectionError."""
        ...

    async def send(self, record: TelemetryRecord) -> None:
        """Deliver one record. Raises TelemetryError."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...


class HttpTelemetryClient(ABC):
    """
    Shared httpx plumbing for HTTP collectors.

    Subclasses provide the probe request and the push payload.
    """

    push_path = ""

    def __init__(
        self,
        endpoint: str,
        app_name: str,
        environment: str,
        timeout: float = 5.0,
        transport: Optional[Transport] = None,
    ):
        """
        Initialize HTTP telemetry client.

        Args:
            endpoint: Collector base URL
            app_name: Application name
            environment: Deployment environment
            timeout: Probe and push timeout (seconds)
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.endpoint = endpoint.rstrip("/")
        self.app_name = app_name
        self.environment = environment
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def push_url(self) -> str:
        return f"{self.endpoint}{self.push_path}"

    @abstractmethod
    def _probe(self, client: httpx.Client) -> httpx.Response:
        """Issue the readiness request."""

    @abstractmethod
    def payload(self, record: TelemetryRecord) -> Dict[str, Any]:
        """Encode one record as the push request body."""

    def connect(self) -> None:
        """
        Synchronously check that the collector is reachable.

        Raises:
            TelemetryConnectionError: On network failure or non-2xx response
        """
        start_time = time.perf_counter()
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = self._probe(client)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise TelemetryConnectionError(
                f"Cannot reach telemetry collector at {self.endpoint}: {e}",
                original_error=e,
            ) from e

        logger.info(
            "telemetry_connected",
            endpoint=self.endpoint,
            duration_seconds=time.perf_counter() - start_time,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def send(self, record: TelemetryRecord) -> None:
        """
        Push one record.

        Raises:
            TelemetryError: On network failure or non-2xx response
        """
        try:
            response = await self._get_client().post(self.push_url, json=self.payload(record))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TelemetryError(
                f"Collector rejected record: {e.response.status_code} - {e.response.text}",
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise TelemetryError(f"Collector push failed: {e}", original_error=e) from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class LokiClient(HttpTelemetryClient):
    """Grafana Loki push API client."""

    push_path = "/loki/api/v1/push"

    def _probe(self, client: httpx.Client) -> httpx.Response:
        return client.get(f"{self.endpoint}/ready")

    def payload(self, record: TelemetryRecord) -> Dict[str, Any]:
        """
        Build a Loki push body.

        Stream labels stay low-cardinality (app_name, env, level); everything
        else travels inside the JSON log line.
        """
        line = {"message": record.body, "severity": record.severity.value}
        line.update(record.attributes)
        return {
            "streams": [
                {
                    "stream": {
                        "app_name": self.app_name,
                        "env": self.environment,
                        "level": record.severity.value.lower(),
                    },
                    "values": [[_unix_nanos(record.timestamp), safe_dumps(line)]],
                }
            ]
        }


def _otlp_value(value: Any) -> Dict[str, Any]:
    if isinstance(value, bool):
        return {"boolValue": value}
    if isinstance(value, int):
        return {"intValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    return {"stringValue": safe_dumps(value)}


def _otlp_attributes(attributes: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [{"key": str(key), "value": _otlp_value(value)} for key, value in attributes.items()]


class OtlpHttpClient(HttpTelemetryClient):
    """OpenTelemetry collector client (OTLP/HTTP, JSON encoding)."""

    push_path = "/v1/logs"

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        # Merges OTEL_RESOURCE_ATTRIBUTES and SDK defaults
        self.resource = Resource.create(
            {
                SERVICE_NAME: self.app_name,
                DEPLOYMENT_ENVIRONMENT: self.environment,
            }
        )

    def _probe(self, client: httpx.Client) -> httpx.Response:
        # Collectors accept an empty export request
        return client.post(self.push_url, json={"resourceLogs": []})

    def payload(self, record: TelemetryRecord) -> Dict[str, Any]:
        """Build an OTLP ExportLogsServiceRequest in JSON form."""
        return {
            "resourceLogs": [
                {
                    "resource": {"attributes": _otlp_attributes(dict(self.resource.attributes))},
                    "scopeLogs": [
                        {
                            "scope": {"name": "log_publisher"},
                            "logRecords": [
                                {
                                    "timeUnixNano": _unix_nanos(record.timestamp),
                                    "severityNumber": OTLP_SEVERITY_NUMBER[record.severity],
                                    "severityText": record.severity.value,
                                    "body": {"stringValue": record.body},
                                    "attributes": _otlp_attributes(record.attributes),
                                }
                            ],
                        }
                    ],
                }
            ]
        }


def create_telemetry_client(
    settings: PublisherSettings,
    transport: Optional[Transport] = None,
) -> Optional[HttpTelemetryClient]:
    """
    Build the client for the configured protocol.

    Returns:
        Optional[HttpTelemetryClient]: None when no endpoint is configured
    """
    if not settings.remote_configured:
        return None

    client_class = OtlpHttpClient if settings.remote_protocol == "otlp" else LokiClient
    return client_class(
        settings.remote_endpoint,
        app_name=settings.app_name,
        environment=settings.environment,
        timeout=settings.remote_timeout,
        transport=transport,
    )


class RemoteTelemetrySink:
    """
    Fire-and-forget delivery to a remote collector.

    The client is fixed at construction. With no client the sink is disabled
    and emit() is a no-op.
    """

    def __init__(
        self,
        client: Optional[TelemetryClient],
        environment: str,
        on_error: Optional[ErrorCallback] = None,
    ):
        """
        Initialize remote sink.

        Args:
            client: Connected telemetry client, or None to disable delivery
            environment: Deployment environment attached to every record
            on_error: Called with ("remote", error) when a delivery fails
        """
        self._client = client
        self.environment = environment
        self._on_error = on_error
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @property
    def pending(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._pending)

    def emit(self, event: LogEvent) -> Optional[asyncio.Task]:
        """
        Schedule delivery of an event without waiting for it.

        Never raises.

        Args:
            event: Log event

        Returns:
            Optional[asyncio.Task]: The delivery task, or None if nothing was scheduled
        """
        if self._client is None:
            return None

        try:
            record = build_record(event, self.environment)
            task = asyncio.get_running_loop().create_task(self._deliver(record))
        except Exception as e:
            self._report(e)
            return None

        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, record: TelemetryRecord) -> None:
        try:
            await self._client.send(record)
        except Exception as e:
            self._report(e)

    def _report(self, error: BaseException) -> None:
        logger.warning(
            "remote_delivery_failed",
            error=str(error),
            error_type=type(error).__name__,
        )
        if self._on_error is not None:
            try:
                self._on_error("remote", error)
            except Exception as e:
                logger.debug("remote_error_callback_failed", error=str(e))

    async def flush(self) -> None:
        """Wait for every in-flight delivery."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        """Flush, then close and detach the client. Later emits are no-ops."""
        await self.flush()
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
