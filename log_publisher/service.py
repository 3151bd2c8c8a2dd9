"""
Publisher service: fan-out of log events to terminal, archive and remote sinks.

Dispatch order is terminal → archive → remote so a human-visible trace exists
even when the archive or collector is failing. Each sink is invoked
independently; a sink failure is counted, reported on the console and never
propagated to the caller.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from log_publisher.config import PublisherSettings, get_settings
from log_publisher.models import LogEvent, LogLevel, SinkFlags
from log_publisher.monitoring import metrics
from log_publisher.serialization import safe_dumps
from log_publisher.sinks.archive import FileArchiver
from log_publisher.sinks.console import ConsoleSink
from log_publisher.sinks.remote import (
    RemoteTelemetrySink,
    TelemetryClient,
    create_telemetry_client,
)

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PublisherService:
    """
    Single entry point for emitting log events.

    Provides:
    - Leveled operations: info, log, error, critical
    - Per-call sink overrides (terminal / archive / remote)
    - Failure isolation between sinks and from the caller
    - One remote connection attempt at construction, never retried
    """

    def __init__(
        self,
        settings: PublisherSettings,
        telemetry_client: Optional[TelemetryClient] = None,
        console: Optional[ConsoleSink] = None,
        archiver: Optional[FileArchiver] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize publisher and connect to the remote collector if configured.

        Args:
            settings: Publisher settings
            telemetry_client: Client to use instead of the one built from settings
            console: Terminal sink (default: stdout/stderr)
            archiver: Archive sink (default: settings.archive_path)
            clock: Source of event timestamps
        """
        self.settings = settings
        self.app_name = settings.app_name
        self._clock = clock
        self._closed = False

        self.console = console or ConsoleSink(settings.app_name)
        self.archiver = archiver or FileArchiver(settings.archive_path)

        client = telemetry_client
        if client is None:
            client = create_telemetry_client(settings)
        self.remote = RemoteTelemetrySink(
            self._connect(client),
            environment=settings.environment,
            on_error=self._report_failure,
        )

    def _connect(self, client: Optional[TelemetryClient]) -> Optional[TelemetryClient]:
        """
        Probe the collector once.

        Returns:
            Optional[TelemetryClient]: The client, or None if remote delivery is disabled
        """
        if client is None:
            return None

        try:
            client.connect()
        except Exception as e:
            metrics.remote_disabled.set(1)
            logger.warning(
                "telemetry_connection_failed",
                endpoint=self.settings.remote_endpoint,
                error=str(e),
                error_type=type(e).__name__,
            )
            self.console.warn(f"Remote telemetry unavailable, remote logging disabled: {e}")
            return None

        metrics.remote_disabled.set(0)
        self.console.write(LogLevel.INFO, "Remote telemetry connected")
        return client

    @property
    def remote_enabled(self) -> bool:
        """Check if a remote connection is live."""
        return self.remote.enabled

    async def info(
        self,
        message: str,
        *,
        terminal: bool = True,
        archive: bool = True,
        remote: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LogEvent:
        """Emit an INFO event (archive tag "info")."""
        return await self.publish(
            LogLevel.INFO, message, SinkFlags(terminal, archive, remote), metadata
        )

    async def log(
        self,
        message: str,
        *,
        terminal: bool = True,
        archive: bool = True,
        remote: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LogEvent:
        """Emit a LOG event (archive tag "logs"), used for request completion."""
        return await self.publish(
            LogLevel.LOG, message, SinkFlags(terminal, archive, remote), metadata
        )

    async def error(
        self,
        message: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LogEvent:
        """Emit an ERROR event (archive tag "exceptions") to every sink."""
        return await self.publish(LogLevel.ERROR, message, SinkFlags(), metadata)

    async def critical(
        self,
        message: str,
        *,
        terminal: bool = True,
        archive: bool = True,
        remote: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LogEvent:
        """Emit a CRITICAL event (archive tag "criticals")."""
        return await self.publish(
            LogLevel.CRITICAL, message, SinkFlags(terminal, archive, remote), metadata
        )

    async def publish(
        self,
        level: LogLevel,
        message: str,
        sinks: SinkFlags,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LogEvent:
        """
        Build an event and dispatch it to the enabled sinks.

        Never raises on sink failure.

        Args:
            level: Log level
            message: Log message
            sinks: Delivery switches
            metadata: Structured per-call context

        Returns:
            LogEvent: The dispatched event
        """
        event = LogEvent(
            level=level,
            message=message,
            timestamp=self._clock(),
            app_name=self.app_name,
            metadata=dict(metadata or {}),
            sinks=sinks,
        )
        metrics.events_total.labels(level=level.value).inc()

        if sinks.terminal:
            try:
                self.console.write(event.level, event.message)
            except Exception as e:
                self._report_failure("terminal", e)

        if sinks.archive:
            try:
                await self.archiver.write(
                    event.tag,
                    event.app_name,
                    self._archive_message(event),
                    event.timestamp,
                )
            except Exception as e:
                self._report_failure("archive", e)

        if sinks.remote:
            try:
                self.remote.emit(event)
            except Exception as e:
                self._report_failure("remote", e)

        return event

    @staticmethod
    def _archive_message(event: LogEvent) -> str:
        if not event.metadata:
            return event.message
        return f"{event.message} {safe_dumps(event.metadata)}"

    def _report_failure(self, sink: str, error: BaseException) -> None:
        metrics.sink_failures_total.labels(sink=sink).inc()
        logger.warning(
            "sink_failed",
            sink=sink,
            error=str(error),
            error_type=type(error).__name__,
        )
        if sink != "terminal":
            # ConsoleSink swallows its own stream errors
            self.console.warn(f"{sink} sink failed: {error}")

    async def flush(self) -> None:
        """Wait for in-flight remote deliveries."""
        await self.remote.flush()

    async def aclose(self) -> None:
        """Flush and release the remote connection. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self.remote.aclose()

    async def __aenter__(self) -> "PublisherService":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def create_publisher(
    settings: Optional[PublisherSettings] = None,
    *,
    telemetry_client: Optional[TelemetryClient] = None,
    **kwargs: Any,
) -> PublisherService:
    """
    Construct a publisher from settings.

    Args:
        settings: Publisher settings (default: get_settings())
        telemetry_client: Client overriding the one built from settings
        **kwargs: Passed to PublisherService (console, archiver, clock)

    Returns:
        PublisherService: Ready publisher
    """
    return PublisherService(
        settings or get_settings(),
        telemetry_client=telemetry_client,
        **kwargs,
    )
