"""
Pytest configuration and fixtures.
"""
import asyncio
import io
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List

import pytest

from log_publisher.config import PublisherSettings
from log_publisher.exceptions import TelemetryConnectionError, TelemetryError
from log_publisher.models import TelemetryRecord
from log_publisher.service import PublisherService
from log_publisher.sinks.console import ConsoleSink

FIXED_TIME = datetime(2024, 1, 15, 10, 23, 45, 123456, tzinfo=timezone.utc)


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "integration: tests spanning several components")


class FakeTelemetryClient:
    """In-memory TelemetryClient."""

    def __init__(
        self,
        fail_connect: bool = False,
        fail_send: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.fail_connect = fail_connect
        self.fail_send = fail_send
        self.delay = delay
        self.records: List[TelemetryRecord] = []
        self.connect_calls = 0
        self.closed = False

    def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise TelemetryConnectionError("collector unreachable")

    async def send(self, record: TelemetryRecord) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_send:
            raise TelemetryError("push rejected")
        self.records.append(record)

    async def aclose(self) -> None:
        self.closed = True


def read_lines(path: Path) -> List[str]:
    """Lines of an archive file without trailing newlines."""
    return path.read_text(encoding="utf-8").splitlines()


def archive_file(root: Path, tag: str, when: datetime = FIXED_TIME) -> Path:
    return root / tag / f"{when.date().isoformat()}.log"


@pytest.fixture
def archive_root(tmp_path: Path) -> Path:
    return tmp_path / "archive"


@pytest.fixture
def test_settings(archive_root: Path) -> PublisherSettings:
    """Settings with archiving on and no remote endpoint."""
    return PublisherSettings(
        app_name="test-app",
        environment="test",
        archive_path=archive_root,
        exclude_routes="/health,/metrics",
    )


@pytest.fixture
def stdout() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def stderr() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def console(stdout: io.StringIO, stderr: io.StringIO) -> ConsoleSink:
    return ConsoleSink("test-app", stdout=stdout, stderr=stderr, colors=False)


@pytest.fixture
def telemetry_client() -> FakeTelemetryClient:
    return FakeTelemetryClient()


@pytest.fixture
def publisher(
    test_settings: PublisherSettings,
    console: ConsoleSink,
    telemetry_client: FakeTelemetryClient,
) -> PublisherService:
    """Publisher with all three sinks live and a fixed clock."""
    return PublisherService(
        test_settings,
        telemetry_client=telemetry_client,
        console=console,
        clock=lambda: FIXED_TIME,
    )
