"""
Request instrumentation.

Wraps the handling of one inbound request:
1. Generate a request ID, record the start time
2. Log "TRIGGERED" (skipped for excluded paths)
3. Run the handler, untouched
4. Log "Completed" or "ENDPOINT ERROR" with the duration (skipped for excluded
   paths) and forward a structured SUCCESS / FAILED event to the collector.
   A result that stands for a failure the framework already turned into a
   response (see ``handled_error``) takes the ENDPOINT ERROR branch
5. Return the handler's result, or re-raise its exception unchanged

Framework-agnostic: the FastAPI adapter in middleware.fastapi is a thin layer
on top of RequestInstrumentor.run().
"""
import functools
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar

import structlog

from log_publisher.models import InboundRequest, RequestContext
from log_publisher.monitoring import metrics
from log_publisher.serialization import DEFAULT_STACK_LIMIT, describe_error, safe_dumps
from log_publisher.service import PublisherService

logger = structlog.get_logger(__name__)

T = TypeVar("T")

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"

_current_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "log_publisher_request_context", default=None
)


def current_request_context() -> Optional[RequestContext]:
    """Context of the request being handled by the current task, if any."""
    return _current_context.get()


class RequestInstrumentor:
    """
    Produces lifecycle and error logs around request handlers.

    The handler's outcome is only observed: its return value is passed back
    as-is and its exception is re-raised with the original traceback.
    """

    def __init__(
        self,
        publisher: PublisherService,
        exclude_routes: Iterable[str] = (),
        stack_limit: int = DEFAULT_STACK_LIMIT,
    ):
        """
        Initialize instrumentor.

        Args:
            publisher: Publisher used for every lifecycle event
            exclude_routes: Exact paths that are not logged (e.g. "/health")
            stack_limit: Max stack characters in endpoint error logs
        """
        self.publisher = publisher
        self.exclude_routes = frozenset(exclude_routes)
        self.stack_limit = stack_limit

    @classmethod
    def from_settings(cls, publisher: PublisherService) -> "RequestInstrumentor":
        """Build an instrumentor using the publisher's exclusion list and stack limit."""
        settings = publisher.settings
        return cls(
            publisher,
            exclude_routes=settings.get_exclude_routes_list(),
            stack_limit=settings.stack_limit,
        )

    def is_excluded(self, path: str) -> bool:
        """Exact match only, no patterns."""
        return path in self.exclude_routes

    @staticmethod
    def start(request: InboundRequest) -> RequestContext:
        """Create the correlation context for a new request."""
        return RequestContext(
            request_id=uuid.uuid4().hex,
            method=request.method.upper(),
            path=request.path,
            started_at=datetime.now(timezone.utc),
            start_time=time.perf_counter(),
        )

    async def run(
        self,
        request: InboundRequest,
        handler: Callable[[], Awaitable[T]],
        result_metadata: Optional[Callable[[T], Dict[str, Any]]] = None,
        handled_error: Optional[Callable[[T], Optional[BaseException]]] = None,
    ) -> T:
        """
        Handle one request.

        Args:
            request: Captured request data
            handler: Zero-argument coroutine function doing the real work
            result_metadata: Extra completion metadata derived from the result
                (e.g. the HTTP status code)
            handled_error: Returns the exception behind a result that is an
                error response (e.g. an HTTPException rendered by the framework)

        Returns:
            T: Whatever the handler returned
        """
        context = self.start(request)
        token = _current_context.set(context)
        try:
            if self.is_excluded(context.path):
                return await handler()

            with structlog.contextvars.bound_contextvars(
                request_id=context.request_id,
                method=context.method,
                path=context.path,
            ):
                await self._triggered(request, context)
                try:
                    result = await handler()
                except Exception as exc:
                    await self._failed(context, exc)
                    raise

                extra = self._result_metadata(result, result_metadata)
                error = self._handled_error(result, handled_error)
                if error is not None:
                    await self._failed(context, error, extra)
                else:
                    await self._completed(context, extra)
                return result
        finally:
            _current_context.reset(token)

    def wrap(
        self, handler: Callable[[InboundRequest], Awaitable[T]]
    ) -> Callable[[InboundRequest], Awaitable[T]]:
        """
        Middleware form: return an instrumented version of ``handler``.

        Args:
            handler: Coroutine function taking the inbound request

        Returns:
            Callable: Coroutine function with the same signature
        """

        @functools.wraps(handler)
        async def instrumented(request: InboundRequest) -> T:
            return await self.run(request, lambda: handler(request))

        return instrumented

    async def _triggered(self, request: InboundRequest, context: RequestContext) -> None:
        await self.publisher.info(
            f"TRIGGERED: {context.method} '{context.path}' "
            f"body: {safe_dumps(request.body)}, "
            f"params: {safe_dumps(request.params or {})}, "
            f"query: {safe_dumps(request.query or {})}, "
            f"requestID: {context.request_id}",
            remote=False,
            metadata=self._metadata(context),
        )

    async def _completed(self, context: RequestContext, extra: Dict[str, Any]) -> None:
        duration_ms = context.elapsed_ms(time.perf_counter())
        metrics.request_duration_seconds.labels(
            method=context.method, status=STATUS_SUCCESS
        ).observe(duration_ms / 1000)

        metadata = self._metadata(context, duration_ms)
        metadata.update(extra)
        await self.publisher.log(
            f"Completed {context.method} {context.path}, "
            f"requestID: {context.request_id}, Time Taken: {int(duration_ms)}ms",
            remote=False,
            metadata=metadata,
        )
        await self.publisher.info(
            "Request completed",
            terminal=False,
            archive=False,
            metadata={**metadata, "status": STATUS_SUCCESS},
        )

    async def _failed(
        self,
        context: RequestContext,
        error: BaseException,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        duration_ms = context.elapsed_ms(time.perf_counter())
        metrics.request_duration_seconds.labels(
            method=context.method, status=STATUS_FAILED
        ).observe(duration_ms / 1000)

        description = describe_error(error, self.stack_limit)
        metadata = self._metadata(context, duration_ms)
        metadata.update(extra or {})
        await self.publisher.critical(
            f"ENDPOINT ERROR {context.method} '{context.path}' "
            f"{safe_dumps(description)}, requestID: {context.request_id}",
            remote=False,
            metadata=metadata,
        )
        await self.publisher.critical(
            "Request failed",
            terminal=False,
            archive=False,
            metadata={
                **metadata,
                "status": STATUS_FAILED,
                "error_name": description["name"],
                "error_message": description["message"],
            },
        )

    @staticmethod
    def _metadata(context: RequestContext, duration_ms: Optional[float] = None) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "request_id": context.request_id,
            "request_method": context.method,
            "request_path": context.path,
        }
        if duration_ms is not None:
            metadata["duration_ms"] = duration_ms
        return metadata

    @staticmethod
    def _result_metadata(
        result: Any, result_metadata: Optional[Callable[[Any], Dict[str, Any]]]
    ) -> Dict[str, Any]:
        if result_metadata is None:
            return {}
        try:
            return dict(result_metadata(result))
        except Exception as e:
            logger.debug("result_metadata_failed", error=str(e))
            return {}

    @staticmethod
    def _handled_error(
        result: Any, handled_error: Optional[Callable[[Any], Optional[BaseException]]]
    ) -> Optional[BaseException]:
        if handled_error is None:
            return None
        try:
            return handled_error(result)
        except Exception as e:
            logger.debug("handled_error_lookup_failed", error=str(e))
            return None
