"""
FastAPI / Starlette adapter for RequestInstrumentor.

Usage:
    app = FastAPI()
    publisher = create_publisher()
    install_http_logger(app, publisher, exclude_routes=["/health"])

    @app.get("/orders/{order_id}")
    async def get_order(order_id: int): ...

FastAPI renders HTTPException (and any exception with a registered handler)
into a response before the middleware sees it. Routes built with LoggedRoute
record the handler's exception in the request scope so the middleware can
still log it as an ENDPOINT ERROR. install_http_logger() makes LoggedRoute the
app's default route class, so declare routes after installing it; separate
APIRouters take ``route_class=LoggedRoute``. Without a recorded exception, a
5xx response is still logged as a failure.
"""
import functools
import json
from typing import Any, Callable, Coroutine, Iterable, Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from log_publisher.middleware.instrumentor import RequestInstrumentor, current_request_context
from log_publisher.models import InboundRequest
from log_publisher.service import PublisherService

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
HANDLER_ERROR_SCOPE_KEY = "log_publisher.handler_error"

RouteHandler = Callable[[Request], Coroutine[Any, Any, Response]]


async def read_body(request: Request) -> Any:
    """
    Read a request body for diagnostics.

    Returns:
        Any: Parsed JSON, decoded text, or None for an empty/unreadable body
    """
    try:
        raw = await request.body()
    except Exception as e:
        logger.debug("request_body_unreadable", error=str(e))
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def record_handler_errors(handler: RouteHandler) -> RouteHandler:
    """Wrap a route handler so its exception is left in the request scope."""

    @functools.wraps(handler)
    async def recording_handler(request: Request) -> Response:
        try:
            return await handler(request)
        except Exception as exc:
            request.scope[HANDLER_ERROR_SCOPE_KEY] = exc
            raise

    return recording_handler


class LoggedRoute(APIRoute):
    """APIRoute whose handler exceptions stay visible to HTTPLoggerMiddleware."""

    def get_route_handler(self) -> RouteHandler:
        return record_handler_errors(super().get_route_handler())


def handled_error(request: Request, response: Response) -> Optional[BaseException]:
    """
    Exception behind an error response the framework already rendered.

    Args:
        request: Current request
        response: Response returned by the rest of the stack

    Returns:
        Optional[BaseException]: The route handler's exception, a synthetic
            HTTPException for a 5xx response without one, or None
    """
    error = request.scope.get(HANDLER_ERROR_SCOPE_KEY)
    if error is not None:
        return error
    if response.status_code >= 500:
        return HTTPException(status_code=response.status_code)
    return None


class HTTPLoggerMiddleware(BaseHTTPMiddleware):
    """HTTP middleware logging every request through a PublisherService."""

    def __init__(
        self,
        app: ASGIApp,
        publisher: PublisherService,
        exclude_routes: Optional[Iterable[str]] = None,
        capture_body: bool = True,
        stack_limit: Optional[int] = None,
    ):
        """
        Initialize middleware.

        Args:
            app: Wrapped ASGI app
            publisher: Publisher for lifecycle events
            exclude_routes: Exact paths not logged (default: from publisher settings)
            capture_body: Include request bodies in TRIGGERED lines
            stack_limit: Max stack characters (default: from publisher settings)
        """
        super().__init__(app)
        settings = publisher.settings
        if exclude_routes is None:
            exclude_routes = settings.get_exclude_routes_list()
        self.instrumentor = RequestInstrumentor(
            publisher,
            exclude_routes=exclude_routes,
            stack_limit=stack_limit if stack_limit is not None else settings.stack_limit,
        )
        self.capture_body = capture_body

    async def extract(self, request: Request) -> InboundRequest:
        """Capture method, path, params, query and body."""
        path = request.url.path
        body = None
        if (
            self.capture_body
            and request.method in BODY_METHODS
            and not self.instrumentor.is_excluded(path)
        ):
            body = await read_body(request)

        return InboundRequest(
            method=request.method,
            path=path,
            body=body,
            params=dict(request.path_params),
            query=dict(request.query_params),
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        inbound = await self.extract(request)

        async def handle() -> Response:
            response = await call_next(request)
            context = current_request_context()
            if context is not None:
                response.headers[REQUEST_ID_HEADER] = context.request_id
            return response

        return await self.instrumentor.run(
            inbound,
            handle,
            result_metadata=lambda response: {"status_code": response.status_code},
            handled_error=lambda response: handled_error(request, response),
        )


def install_http_logger(
    app: FastAPI,
    publisher: PublisherService,
    exclude_routes: Optional[Iterable[str]] = None,
    capture_body: bool = True,
    stack_limit: Optional[int] = None,
) -> None:
    """
    Register HTTPLoggerMiddleware on an application.

    Also makes LoggedRoute the default route class for routes declared
    afterwards.

    Args:
        app: FastAPI application
        publisher: Publisher for lifecycle events
        exclude_routes: Exact paths not logged (default: from publisher settings)
        capture_body: Include request bodies in TRIGGERED lines
        stack_limit: Max stack characters (default: from publisher settings)
    """
    app.router.route_class = LoggedRoute
    app.add_middleware(
        HTTPLoggerMiddleware,
        publisher=publisher,
        exclude_routes=list(exclude_routes) if exclude_routes is not None else None,
        capture_body=capture_body,
        stack_limit=stack_limit,
    )
