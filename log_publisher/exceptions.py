"""
Exception classes for the log publisher.

Only handler failures are ever visible to callers, and those are the handler's
own exceptions. Everything defined here is raised by a sink and caught by
PublisherService, or raised once at construction when probing the remote
collector.
"""
from typing import Optional


class PublisherError(Exception):
    """Base exception for all publisher errors."""

    pass


class SinkError(PublisherError):
    """A sink failed to record an event."""

    def __init__(
        self,
        message: str,
        sink: str,
        original_error: Optional[BaseException] = None,
    ):
        """
        Initialize sink error.

        Args:
            message: Error message
            sink: Name of the failing sink ("terminal", "archive", "remote")
            original_error: Underlying exception, if any
        """
        super().__init__(message)
        self.sink = sink
        self.original_error = original_error


class ArchiveWriteError(SinkError):
    """Appending to an archive file failed (disk full, permission denied)."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message, sink="archive", original_error=original_error)


class TelemetryError(SinkError):
    """Delivering a record to the remote collector failed."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message, sink="remote", original_error=original_error)


class TelemetryConnectionError(TelemetryError):
    """The remote collector could not be reached at startup."""

    pass
