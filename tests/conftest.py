"""
Pytest configuration and fixtures for Sprint Watch tests.
"""

import json
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import unquote

import pytest

from sprint_watch.config import PollingConfig, RallyConfig, RetryConfig, Settings
from sprint_watch.models import TrackerConfig
from sprint_watch.notifications import NotificationEngine, NotificationSink
from sprint_watch.polling.orchestrator import PollingOrchestrator
from sprint_watch.rally_client import RallyClient
from sprint_watch.state.manager import InMemoryStateBackend
from sprint_watch.state.tracker_state import TrackerStateStore
from sprint_watch.trackers import TrackerRegistry
from sprint_watch.transport import RequestExecutor, TransportRequest, TransportResponse

BASE_URL = "https://rally.example.com"
SPRINT_START = "2024-03-01T00:00:00.000Z"


def wsapi_response(
    results: list[dict[str, Any]], errors: list[str] | None = None, status: int = 200
) -> TransportResponse:
    body = {
        "QueryResult": {
            "Results": results,
            "Errors": errors or [],
            "TotalResultCount": len(results),
        }
    }
    return TransportResponse(status=status, body=json.dumps(body))


def lookback_response(results: list[dict[str, Any]]) -> TransportResponse:
    return TransportResponse(
        status=200, body=json.dumps({"Results": results, "TotalResultCount": len(results)})
    )


def story_row(
    story_id: int,
    formatted_id: str,
    ready: bool | None = None,
    schedule_state: str | None = "Defined",
    project: str = "Team A",
    name: str | None = None,
) -> dict[str, Any]:
    return {
        "ObjectID": story_id,
        "FormattedID": formatted_id,
        "Name": name or f"Story {formatted_id}",
        "Owner": {"_refObjectName": "Dana"},
        "Status": {"Name": "Open"},
        "Ready": ready,
        "ScheduleState": schedule_state,
        "Project": {"_refObjectName": project, "Name": project},
    }


class FakeExecutor(RequestExecutor):
    """
    Request executor that records requests and replays canned responses.

    Queued responses (or exceptions) are consumed first; after that every
    request goes to ``handler``.
    """

    def __init__(
        self, handler: Callable[[TransportRequest], TransportResponse] | None = None
    ) -> None:
        self.requests: list[TransportRequest] = []
        self.queue: deque[TransportResponse | Exception] = deque()
        self.handler = handler
        self.closed = False

    def enqueue(self, *items: TransportResponse | Exception) -> None:
        self.queue.extend(items)

    async def execute(self, request: TransportRequest) -> TransportResponse:
        self.requests.append(request)
        if self.queue:
            item = self.queue.popleft()
        elif self.handler is not None:
            item = self.handler(request)
        else:
            item = wsapi_response([])
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True

    def decoded_urls(self) -> list[str]:
        return [unquote(request.url) for request in self.requests]


class RallyStub:
    """Routes requests to canned Rally data by endpoint."""

    def __init__(self) -> None:
        self.stories: list[dict[str, Any]] = []
        self.snapshots: list[dict[str, Any]] = []
        self.iterations: list[dict[str, Any]] = []
        self.projects: list[dict[str, Any]] = []
        self.status: int | None = None

    def __call__(self, request: TransportRequest) -> TransportResponse:
        if self.status is not None:
            return TransportResponse(status=self.status, body="")

        url = unquote(request.url)
        if "snapshot/query.js" in url:
            return lookback_response(self.snapshots)
        if "/iteration?" in url:
            return wsapi_response(self.iterations)
        if "/hierarchicalrequirement?" in url:
            if "ObjectID =" in url:
                return wsapi_response(
                    [row for row in self.stories if f"(ObjectID = {row['ObjectID']})" in url]
                )
            return wsapi_response(self.stories)
        if "/project?" in url:
            return wsapi_response(self.projects)
        return wsapi_response([])


class RecordingSink(NotificationSink):
    """Notification sink that keeps everything it receives."""

    def __init__(self) -> None:
        self.sent = []

    async def send(self, notification) -> None:
        self.sent.append(notification)


class FixedClock:
    """Settable clock for deterministic time."""

    def __init__(self, now: datetime) -> None:
        self.current = now

    def __call__(self) -> datetime:
        return self.current


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def mock_settings() -> Settings:
    """Settings for testing."""
    return Settings(
        rally_base_url=f"{BASE_URL}/",
        rally_api_key="test-key",
        state_backend="memory",
        debug=True,
        log_level="DEBUG",
    )


@pytest.fixture
def rally_config() -> RallyConfig:
    return RallyConfig(base_url=BASE_URL, api_key="test-key")


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_retries=3, base_delay_seconds=0.5, max_delay_seconds=4.0)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def rally_client(
    rally_config: RallyConfig, retry_config: RetryConfig, fake_executor: FakeExecutor
) -> RallyClient:
    return RallyClient(rally_config, retry_config, executor=fake_executor, sleep=no_sleep)


@pytest.fixture
def sample_tracker() -> TrackerConfig:
    """Tracker following sprint 1000 in one project."""
    return TrackerConfig(
        id="trk_1",
        name="Sprint 1",
        workspace_id="10",
        project_ids=["20"],
        iteration_id="1000",
        base_url=BASE_URL,
        created_at="2024-03-01T00:00:00.000Z",
        project_names=["Team A"],
        iteration_name="Sprint 1",
        iteration_start_date=SPRINT_START,
        poll_interval_minutes=5,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 5, 12, 0, tzinfo=UTC))


@pytest.fixture
def rally_stub() -> RallyStub:
    return RallyStub()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def orchestrator(
    rally_config: RallyConfig,
    retry_config: RetryConfig,
    rally_stub: RallyStub,
    recording_sink: RecordingSink,
    clock: FixedClock,
) -> PollingOrchestrator:
    """Orchestrator wired to in-memory state and the Rally stub."""
    store = TrackerStateStore(InMemoryStateBackend(), PollingConfig(), clock=clock)
    return PollingOrchestrator(
        TrackerRegistry(),
        store,
        NotificationEngine([recording_sink], summary_threshold=5),
        rally_config,
        retry_config,
        PollingConfig(),
        executor=FakeExecutor(rally_stub),
        request_sleep=no_sleep,
        clock=clock,
    )
