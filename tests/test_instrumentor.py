"""
Unit tests for RequestInstrumentor.
"""
import asyncio
import io
import re
from pathlib import Path
from typing import Any, List

import pytest

from log_publisher.middleware.instrumentor import RequestInstrumentor, current_request_context
from log_publisher.models import InboundRequest, RemoteSeverity
from log_publisher.service import PublisherService

from .conftest import FakeTelemetryClient, archive_file, read_lines

REQUEST_ID = re.compile(r"requestID: ([0-9a-f]{32})")


class PaymentDeclined(Exception):
    def __init__(self, code: str) -> None:
        super().__init__(f"declined: {code}")
        self.code = code


@pytest.fixture
def instrumentor(publisher: PublisherService) -> RequestInstrumentor:
    return RequestInstrumentor(publisher, exclude_routes=["/health"])


def request_ids(lines: List[str]) -> List[str]:
    return [m.group(1) for m in (REQUEST_ID.search(line) for line in lines) if m]


def archived(root: Path, tag: str) -> List[str]:
    path = archive_file(root, tag)
    return read_lines(path) if path.exists() else []


class TestSuccessfulRequest:
    """Lifecycle logging around a handler that returns."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_result_is_returned_unchanged(self, instrumentor: RequestInstrumentor) -> None:
        result = {"id": 1}

        async def handler() -> Any:
            return result

        assert await instrumentor.run(InboundRequest("GET", "/orders/1"), handler) is result

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_triggered_and_completed_share_request_id(
        self, instrumentor: RequestInstrumentor, archive_root: Path
    ) -> None:
        async def handler() -> str:
            return "ok"

        await instrumentor.run(
            InboundRequest("post", "/orders", body={"amount": 10}, params={"id": "1"}, query={"q": "x"}),
            handler,
        )

        triggered = archived(archive_root, "info")
        completed = archived(archive_root, "logs")
        assert len(triggered) == 1
        assert len(completed) == 1
        assert "TRIGGERED: POST '/orders' body: {\"amount\":10}, params: {\"id\":\"1\"}, query: {\"q\":\"x\"}" in triggered[0]
        assert "Completed POST /orders, requestID: " in completed[0]
        assert "Time Taken: " in completed[0]
        assert request_ids(triggered) == request_ids(completed)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_remote_receives_structured_success(
        self, instrumentor: RequestInstrumentor, publisher: PublisherService, telemetry_client: FakeTelemetryClient
    ) -> None:
        async def handler() -> str:
            return "ok"

        await instrumentor.run(InboundRequest("GET", "/orders"), handler)
        await publisher.flush()

        assert len(telemetry_client.records) == 1
        record = telemetry_client.records[0]
        assert record.body == "Request completed"
        assert record.severity is RemoteSeverity.INFO
        assert record.attributes["status"] == "SUCCESS"
        assert record.attributes["request_method"] == "GET"
        assert record.attributes["request_path"] == "/orders"
        assert record.attributes["duration_ms"] >= 0
        assert len(record.attributes["request_id"]) == 32

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_result_metadata_is_attached(
        self, instrumentor: RequestInstrumentor, publisher: PublisherService, telemetry_client: FakeTelemetryClient
    ) -> None:
        async def handler() -> int:
            return 201

        await instrumentor.run(
            InboundRequest("POST", "/orders"), handler, result_metadata=lambda status: {"status_code": status}
        )
        await publisher.flush()

        assert telemetry_client.records[0].attributes["status_code"] == 201

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unserializable_body_uses_sentinel(
        self, instrumentor: RequestInstrumentor, archive_root: Path
    ) -> None:
        async def handler() -> None:
            return None

        await instrumentor.run(InboundRequest("POST", "/upload", body=object()), handler)

        assert 'body: "[unserializable]"' in archived(archive_root, "info")[0]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_context_is_visible_inside_handler_only(self, instrumentor: RequestInstrumentor) -> None:
        seen = []

        async def handler() -> None:
            seen.append(current_request_context())

        await instrumentor.run(InboundRequest("GET", "/orders"), handler)

        assert seen[0] is not None
        assert seen[0].path == "/orders"
        assert current_request_context() is None


class TestFailedRequest:
    """Error capture around a handler that raises."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_original_exception_is_reraised(self, instrumentor: RequestInstrumentor) -> None:
        error = PaymentDeclined("insufficient_funds")

        async def handler() -> None:
            raise error

        with pytest.raises(PaymentDeclined) as exc_info:
            await instrumentor.run(InboundRequest("POST", "/pay"), handler)

        assert exc_info.value is error
        assert exc_info.value.code == "insufficient_funds"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_endpoint_error_is_logged_as_critical(
        self, instrumentor: RequestInstrumentor, archive_root: Path, stderr: io.StringIO
    ) -> None:
        async def handler() -> None:
            raise PaymentDeclined("expired_card")

        with pytest.raises(PaymentDeclined):
            await instrumentor.run(InboundRequest("POST", "/pay"), handler)

        criticals = archived(archive_root, "criticals")
        assert len(criticals) == 1
        assert "ENDPOINT ERROR POST '/pay'" in criticals[0]
        assert '"name":"PaymentDeclined"' in criticals[0]
        assert '"message":"declined: expired_card"' in criticals[0]
        assert "[test-app] CRITICAL ENDPOINT ERROR POST '/pay'" in stderr.getvalue()
        # No completion line on failure
        assert archived(archive_root, "logs") == []
        assert request_ids(criticals) == request_ids(archived(archive_root, "info"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_remote_receives_structured_failure(
        self, instrumentor: RequestInstrumentor, publisher: PublisherService, telemetry_client: FakeTelemetryClient
    ) -> None:
        async def handler() -> None:
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await instrumentor.run(InboundRequest("DELETE", "/orders/1"), handler)
        await publisher.flush()

        assert len(telemetry_client.records) == 1
        record = telemetry_client.records[0]
        assert record.body == "[CRITICAL] Request failed"
        assert record.severity is RemoteSeverity.ERROR
        assert record.attributes["status"] == "FAILED"
        assert record.attributes["error_name"] == "ValueError"
        assert record.attributes["error_message"] == "bad"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stack_is_truncated(self, publisher: PublisherService, archive_root: Path) -> None:
        instrumentor = RequestInstrumentor(publisher, stack_limit=50)

        async def handler() -> None:
            raise ValueError("x" * 500)

        with pytest.raises(ValueError):
            await instrumentor.run(InboundRequest("GET", "/big"), handler)

        line = archived(archive_root, "criticals")[0]
        assert '"stack":"...' in line


class TestHandledError:
    """Results that stand for an error already rendered by the framework."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_result_is_logged_and_returned(
        self,
        instrumentor: RequestInstrumentor,
        publisher: PublisherService,
        archive_root: Path,
        telemetry_client: FakeTelemetryClient,
    ) -> None:
        response = {"status": 503}

        async def handler() -> Any:
            return response

        result = await instrumentor.run(
            InboundRequest("GET", "/orders/1"),
            handler,
            result_metadata=lambda r: {"status_code": r["status"]},
            handled_error=lambda r: PaymentDeclined("gateway_down") if r["status"] >= 500 else None,
        )
        await publisher.flush()

        assert result is response
        assert archived(archive_root, "logs") == []
        # One TRIGGERED line, no separator lines
        assert len(archived(archive_root, "info")) == 1
        [critical] = archived(archive_root, "criticals")
        assert "ENDPOINT ERROR GET '/orders/1'" in critical
        assert '"message":"declined: gateway_down"' in critical
        assert [r.attributes["status"] for r in telemetry_client.records] == ["FAILED"]
        assert telemetry_client.records[0].attributes["status_code"] == 503

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_error_means_completed(
        self, instrumentor: RequestInstrumentor, archive_root: Path
    ) -> None:
        async def handler() -> str:
            return "ok"

        await instrumentor.run(InboundRequest("GET", "/orders/1"), handler, handled_error=lambda r: None)

        assert len(archived(archive_root, "logs")) == 1
        assert archived(archive_root, "criticals") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_lookup_falls_back_to_completed(
        self, instrumentor: RequestInstrumentor, archive_root: Path
    ) -> None:
        def lookup(result: Any) -> None:
            raise KeyError("status")

        async def handler() -> dict:
            return {}

        assert await instrumentor.run(InboundRequest("GET", "/x"), handler, handled_error=lookup) == {}
        assert len(archived(archive_root, "logs")) == 1


class TestExcludedRoutes:
    """Exact-match exclusions skip logging but never the handler."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_excluded_success_logs_nothing(
        self,
        instrumentor: RequestInstrumentor,
        publisher: PublisherService,
        archive_root: Path,
        telemetry_client: FakeTelemetryClient,
    ) -> None:
        async def handler() -> str:
            return "healthy"

        assert await instrumentor.run(InboundRequest("GET", "/health"), handler) == "healthy"
        await publisher.flush()

        assert not archive_root.exists()
        assert telemetry_client.records == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_excluded_failure_propagates_without_logs(
        self, instrumentor: RequestInstrumentor, archive_root: Path, stderr: io.StringIO
    ) -> None:
        async def handler() -> None:
            raise ConnectionError("db down")

        with pytest.raises(ConnectionError, match="db down"):
            await instrumentor.run(InboundRequest("GET", "/health"), handler)

        assert not archive_root.exists()
        assert stderr.getvalue() == ""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_matching_is_exact(self, instrumentor: RequestInstrumentor, archive_root: Path) -> None:
        async def handler() -> None:
            return None

        await instrumentor.run(InboundRequest("GET", "/health/db"), handler)

        assert len(archived(archive_root, "info")) == 1

    @pytest.mark.unit
    def test_from_settings_uses_configured_routes(self, publisher: PublisherService) -> None:
        instrumentor = RequestInstrumentor.from_settings(publisher)

        assert instrumentor.is_excluded("/health")
        assert instrumentor.is_excluded("/metrics")
        assert not instrumentor.is_excluded("/orders")


class TestConcurrency:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_requests_get_distinct_ids(
        self, instrumentor: RequestInstrumentor, archive_root: Path
    ) -> None:
        seen = {}

        async def handler(name: str) -> str:
            await asyncio.sleep(0.01)
            seen[name] = current_request_context().request_id
            return name

        results = await asyncio.gather(
            instrumentor.run(InboundRequest("GET", "/orders"), lambda: handler("a")),
            instrumentor.run(InboundRequest("GET", "/orders"), lambda: handler("b")),
        )

        assert results == ["a", "b"]
        assert seen["a"] != seen["b"]
        triggered = request_ids(archived(archive_root, "info"))
        completed = request_ids(archived(archive_root, "logs"))
        assert sorted(triggered) == sorted(seen.values())
        assert sorted(completed) == sorted(seen.values())


class TestWrap:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrapped_handler_keeps_name_and_result(
        self, instrumentor: RequestInstrumentor, archive_root: Path
    ) -> None:
        async def get_order(request: InboundRequest) -> dict:
            return {"path": request.path}

        wrapped = instrumentor.wrap(get_order)

        assert wrapped.__name__ == "get_order"
        assert await wrapped(InboundRequest("GET", "/orders/7")) == {"path": "/orders/7"}
        assert len(archived(archive_root, "logs")) == 1
