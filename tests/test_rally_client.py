"""
Tests for the Rally API client: retry policy, pagination, sprint resolution
and the snapshot query.
"""

import json

import pytest
from conftest import (
    BASE_URL,
    SPRINT_START,
    FakeExecutor,
    lookback_response,
    no_sleep,
    story_row,
    wsapi_response,
)

from sprint_watch.config import RallyConfig, RetryConfig
from sprint_watch.exceptions import (
    AuthenticationError,
    MalformedResponseError,
    RallyAPIError,
    TransientRemoteError,
    TransportFailure,
)
from sprint_watch.models import TrackerScope
from sprint_watch.rally_client import RallyClient, backoff_delay, escape_query_string
from sprint_watch.transport import TransportResponse


def make_scope(**overrides) -> TrackerScope:
    values = {
        "workspace_id": "10",
        "project_ids": ("20",),
        "iteration_id": "1000",
        "iteration_name": "Sprint 1",
        "iteration_start_date": SPRINT_START,
    }
    values.update(overrides)
    return TrackerScope(**values)


class TestBackoffDelay:
    """Test the pure backoff delay function."""

    def test_doubles_per_attempt(self):
        """Test delays double from the base delay."""
        assert backoff_delay(0, 0.5, 4.0) == 0.5
        assert backoff_delay(1, 0.5, 4.0) == 1.0
        assert backoff_delay(2, 0.5, 4.0) == 2.0

    def test_capped_at_max_delay(self):
        """Test delays never exceed the cap."""
        assert backoff_delay(3, 0.5, 4.0) == 4.0
        assert backoff_delay(10, 0.5, 4.0) == 4.0


class TestRetryPolicy:
    """Test retry and error classification of requests."""

    def setup_method(self):
        self.delays = []

        async def record_sleep(delay: float) -> None:
            self.delays.append(delay)

        self.executor = FakeExecutor()
        self.client = RallyClient(
            RallyConfig(base_url=BASE_URL, api_key="secret"),
            RetryConfig(max_retries=3, base_delay_seconds=0.5, max_delay_seconds=4.0),
            executor=self.executor,
            sleep=record_sleep,
        )

    @pytest.mark.asyncio
    async def test_server_errors_are_retried_then_succeed(self):
        """Test 5xx and 429 responses are retried with backoff."""
        self.executor.enqueue(
            TransportResponse(status=503, body=""),
            TransportResponse(status=429, body=""),
            wsapi_response([{"ObjectID": 1, "Name": "Workspace"}]),
        )

        workspaces = await self.client.list_workspaces()

        assert [w.name for w in workspaces] == ["Workspace"]
        assert len(self.executor.requests) == 3
        assert self.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self):
        """Test a persistent failure is attempted max_retries + 1 times."""
        self.executor.enqueue(*[TransportResponse(status=500, body="")] * 4)

        with pytest.raises(TransientRemoteError) as exc_info:
            await self.client.test_connection()

        assert exc_info.value.status_code == 500
        assert len(self.executor.requests) == 4
        assert self.delays == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_negative_retry_budget_raises_transient_error(self):
        """Test a budget that allows no attempt fails without a request."""
        self.client.retry_config = RetryConfig(max_retries=-1)

        with pytest.raises(TransientRemoteError):
            await self.client.test_connection()

        assert self.executor.requests == []
        assert self.delays == []

    @pytest.mark.asyncio
    async def test_transport_failure_is_retried(self):
        """Test executor failures count as transient."""
        self.executor.enqueue(
            TransportFailure("connection refused"),
            wsapi_response([]),
        )

        await self.client.test_connection()

        assert len(self.executor.requests) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_failure_is_never_retried(self, status):
        """Test 401/403 raise AuthenticationError on the first attempt."""
        self.executor.enqueue(TransportResponse(status=status, body="denied"))

        with pytest.raises(AuthenticationError):
            await self.client.test_connection()

        assert len(self.executor.requests) == 1
        assert self.delays == []

    @pytest.mark.asyncio
    async def test_malformed_body_is_retried(self):
        """Test non-JSON and schema-violating bodies are retried."""
        self.executor.enqueue(
            TransportResponse(status=200, body="<html>proxy error</html>"),
            TransportResponse(status=200, body=json.dumps({"unexpected": True})),
            wsapi_response([]),
        )

        await self.client.test_connection()

        assert len(self.executor.requests) == 3

    @pytest.mark.asyncio
    async def test_malformed_body_exhausts_retries(self):
        """Test a persistently malformed body surfaces as MalformedResponseError."""
        self.executor.enqueue(*[TransportResponse(status=200, body="not json")] * 4)

        with pytest.raises(MalformedResponseError):
            await self.client.test_connection()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        """Test other 4xx responses fail immediately."""
        self.executor.enqueue(TransportResponse(status=404, body="missing"))

        with pytest.raises(RallyAPIError) as exc_info:
            await self.client.test_connection()

        assert exc_info.value.status_code == 404
        assert len(self.executor.requests) == 1

    @pytest.mark.asyncio
    async def test_credential_is_passed_to_executor(self):
        """Test every request carries the API key."""
        self.executor.enqueue(wsapi_response([]))

        await self.client.test_connection()

        assert self.executor.requests[0].credential == "secret"
        assert self.executor.requests[0].url.startswith(
            f"{BASE_URL}/slm/webservice/v2.0/user?"
        )


class TestPagination:
    """Test paged WSAPI queries."""

    @pytest.mark.asyncio
    async def test_full_page_triggers_another_fetch(self):
        """Test an exactly full page is followed by a confirming fetch."""
        executor = FakeExecutor()
        client = RallyClient(
            RallyConfig(base_url=BASE_URL, api_key="k", live_page_size=2),
            executor=executor,
            sleep=no_sleep,
        )
        executor.enqueue(
            wsapi_response([{"ObjectID": 1, "Name": "A"}, {"ObjectID": 2, "Name": "B"}]),
            wsapi_response([]),
        )

        projects = await client.list_projects("10")

        assert [p.object_id for p in projects] == ["1", "2"]
        urls = executor.decoded_urls()
        assert len(urls) == 2
        assert "start=1" in urls[0]
        assert "start=3" in urls[1]

    @pytest.mark.asyncio
    async def test_short_page_ends_scan(self):
        """Test a page shorter than the page size is the last one."""
        executor = FakeExecutor()
        client = RallyClient(
            RallyConfig(base_url=BASE_URL, api_key="k", live_page_size=2),
            executor=executor,
            sleep=no_sleep,
        )
        executor.enqueue(wsapi_response([{"ObjectID": 1, "Name": "A"}]))

        await client.list_projects("10")

        assert len(executor.requests) == 1

    @pytest.mark.asyncio
    async def test_page_cap_stops_runaway_pagination(self):
        """Test paging stops at max_pages even if pages stay full."""
        executor = FakeExecutor(lambda request: wsapi_response([{"ObjectID": 1}]))
        client = RallyClient(
            RallyConfig(base_url=BASE_URL, api_key="k", live_page_size=1, max_pages=3),
            executor=executor,
            sleep=no_sleep,
        )

        await client.list_workspaces()

        assert len(executor.requests) == 3

    @pytest.mark.asyncio
    async def test_query_errors_raise_api_error(self, rally_client, fake_executor):
        """Test WSAPI query errors are not retried."""
        fake_executor.enqueue(wsapi_response([], errors=["Could not parse query"]))

        with pytest.raises(RallyAPIError):
            await rally_client.list_workspaces()

        assert len(fake_executor.requests) == 1


class TestSprintResolution:
    """Test resolution of duplicated sprint ids."""

    @pytest.mark.asyncio
    async def test_same_name_and_start_day_are_unioned(self, rally_client, fake_executor):
        """Test duplicates share name (case-insensitive) and start day."""
        fake_executor.enqueue(
            wsapi_response(
                [
                    {"ObjectID": 1000, "Name": "Sprint 1", "StartDate": SPRINT_START},
                    {
                        "ObjectID": 1001,
                        "Name": " sprint 1 ",
                        "StartDate": "2024-03-01T06:00:00.000Z",
                    },
                    {"ObjectID": 1002, "Name": "Sprint 1", "StartDate": "2024-03-15T00:00:00.000Z"},
                    {"ObjectID": 1003, "Name": "Sprint 2", "StartDate": SPRINT_START},
                ]
            )
        )

        ids = await rally_client.resolve_iteration_ids(make_scope())

        assert ids == [1000, 1001]

    @pytest.mark.asyncio
    async def test_no_name_uses_selected_id_only(self, rally_client, fake_executor):
        """Test a scope without a sprint name skips the lookup."""
        ids = await rally_client.resolve_iteration_ids(make_scope(iteration_name=""))

        assert ids == [1000]
        assert fake_executor.requests == []

    @pytest.mark.asyncio
    async def test_missing_sprint_resolves_nothing(self, rally_client):
        """Test a scope without a sprint id resolves to no ids."""
        assert await rally_client.resolve_iteration_ids(make_scope(iteration_id="")) == []


class TestFetchStories:
    """Test the current-state story query."""

    @pytest.mark.asyncio
    async def test_union_across_projects_by_story_id(self, rally_client, fake_executor):
        """Test stories from several projects are unioned by id."""
        fake_executor.enqueue(
            wsapi_response([story_row(1, "US1"), story_row(2, "US2")]),
            wsapi_response([story_row(2, "US2"), story_row(3, "US3", project="Team B")]),
        )
        scope = make_scope(project_ids=("20", "21"))

        stories = await rally_client.fetch_stories_in_iteration(scope, [1000, 1001])

        assert sorted(s.story_id for s in stories) == [1, 2, 3]
        urls = fake_executor.decoded_urls()
        assert '(Iteration = "/iteration/1000") OR (Iteration = "/iteration/1001")' in urls[0]

    @pytest.mark.asyncio
    async def test_story_fields_are_mapped(self, rally_client, fake_executor):
        """Test live rows become Story records with a detail URL."""
        fake_executor.enqueue(
            wsapi_response([story_row(7, "US7", ready=True, schedule_state="In-Progress")])
        )

        stories = await rally_client.fetch_stories_in_iteration(make_scope(), [1000])

        story = stories[0]
        assert story.formatted_id == "US7"
        assert story.owner_name == "Dana"
        assert story.status_name == "Open"
        assert story.ready is True
        assert story.schedule_state == "In-Progress"
        assert story.project_name == "Team A"
        assert story.url == f"{BASE_URL}/#/detail/userstory/7"

    @pytest.mark.asyncio
    async def test_name_fallback_only_when_id_query_is_empty(
        self, rally_client, fake_executor
    ):
        """Test the by-name query runs only after an empty id-based union."""
        fake_executor.enqueue(
            wsapi_response([]),
            wsapi_response([story_row(9, "US9")]),
        )

        stories = await rally_client.fetch_stories_in_iteration(
            make_scope(iteration_name='Sprint "A"'), [1000]
        )

        assert [s.story_id for s in stories] == [9]
        urls = fake_executor.decoded_urls()
        assert len(urls) == 2
        assert '(Iteration.Name = "Sprint \\"A\\"")' in urls[1]

    @pytest.mark.asyncio
    async def test_no_fallback_when_id_query_finds_stories(
        self, rally_client, fake_executor
    ):
        """Test id-based results are never merged with name-based results."""
        fake_executor.enqueue(wsapi_response([story_row(1, "US1")]))

        await rally_client.fetch_stories_in_iteration(make_scope(), [1000])

        assert len(fake_executor.requests) == 1


class TestFetchSnapshots:
    """Test the Lookback snapshot query."""

    @pytest.mark.asyncio
    async def test_query_body(self, rally_client, fake_executor):
        """Test the snapshot query is inclusive, ascending and one page."""
        fake_executor.enqueue(lookback_response([{"ObjectID": 1}]))
        since = "2024-03-01T00:45:00.000Z"

        snapshots = await rally_client.fetch_snapshots(since, make_scope(), [1000, 1001])

        assert snapshots == [{"ObjectID": 1}]
        request = fake_executor.requests[0]
        assert request.method == "POST"
        assert request.url == (
            f"{BASE_URL}/analytics/v2.0/service/rally/workspace/10"
            "/artifact/snapshot/query.js"
        )
        body = json.loads(request.body)
        assert body["find"] == {
            "_TypeHierarchy": "HierarchicalRequirement",
            "Iteration": {"$in": [1000, 1001]},
            "_ValidFrom": {"$gte": since},
        }
        assert body["sort"] == {"_ValidFrom": 1}
        assert body["pagesize"] == 500
        assert "_PreviousValues" in body["fields"]
        assert "_User" in body["fields"]

    @pytest.mark.asyncio
    async def test_lookback_errors_raise(self, rally_client, fake_executor):
        """Test rejected Lookback queries are not retried."""
        fake_executor.enqueue(
            TransportResponse(status=200, body=json.dumps({"Errors": ["bad find"]}))
        )

        with pytest.raises(RallyAPIError):
            await rally_client.fetch_snapshots("2024-03-01T00:00:00.000Z", make_scope(), [1])


class TestLookups:
    """Test batch metadata lookups and helpers."""

    @pytest.mark.asyncio
    async def test_project_names_by_id(self, rally_client, fake_executor):
        """Test project names are keyed by numeric id."""
        fake_executor.enqueue(
            wsapi_response([{"ObjectID": 20, "Name": "Team A"}, {"ObjectID": 21, "Name": ""}])
        )

        names = await rally_client.fetch_project_names("10", [21, 20, 20])

        assert names == {20: "Team A"}
        assert "((ObjectID = 20) OR (ObjectID = 21))" in fake_executor.decoded_urls()[0]

    @pytest.mark.asyncio
    async def test_empty_lookup_skips_request(self, rally_client, fake_executor):
        """Test no request is made without ids."""
        assert await rally_client.fetch_story_metadata("10", []) == {}
        assert fake_executor.requests == []

    @pytest.mark.asyncio
    async def test_story_metadata_keeps_missing_fields_empty(
        self, rally_client, fake_executor
    ):
        """Test metadata rows are not padded with placeholder values."""
        fake_executor.enqueue(
            wsapi_response(
                [{"ObjectID": 7, "FormattedID": "US7"}, story_row(8, "US8", ready=True)]
            )
        )

        metadata = await rally_client.fetch_story_metadata("10", [7, 8])

        sparse = metadata[7]
        assert sparse.formatted_id == "US7"
        assert sparse.name is None
        assert sparse.project_name is None
        assert sparse.schedule_state is None
        full = metadata[8]
        assert full.name == "Story US8"
        assert full.project_name == "Team A"
        assert full.ready is True

    def test_escape_query_string(self):
        """Test quotes and backslashes are escaped."""
        assert escape_query_string('a "b" \\c') == 'a \\"b\\" \\\\c'
