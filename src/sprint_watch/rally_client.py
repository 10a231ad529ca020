"""
Rally API client for Sprint Watch.

This module wraps the two Rally query surfaces the poller needs: WSAPI for
live stories, sprints and lookups, and the Lookback API for the time-ranged
snapshot feed. Requests go through an injected ``RequestExecutor`` and are
retried with exponential backoff on transport failures, 429 and 5xx.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import quote, urlencode

import structlog

from .config import RallyConfig, RetryConfig
from .exceptions import (
    AuthenticationError,
    MalformedResponseError,
    RallyAPIError,
    TransientRemoteError,
    TransportFailure,
)
from .fields import (
    UNKNOWN_PROJECT,
    extract_object_id,
    extract_owner_name,
    extract_ready_flag,
    extract_status_name,
    non_empty_str,
)
from .models import (
    IterationOption,
    NamedOption,
    Story,
    StoryMetadata,
    TrackerScope,
    parse_timestamp,
)
from .transport import HttpxRequestExecutor, RequestExecutor, TransportRequest

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]

STORY_FETCH = "ObjectID,FormattedID,Name,Owner,Status,Ready,ScheduleState,Project"
SNAPSHOT_FIELDS = [
    "ObjectID",
    "FormattedID",
    "Project",
    "Name",
    "Owner",
    "Status",
    "Ready",
    "ScheduleState",
    "LastUpdateDate",
    "_ValidFrom",
    "_PreviousValues",
    "_User",
]

# Ids per "(ObjectID = n) OR ..." lookup, keeps the query string bounded
LOOKUP_BATCH_SIZE = 100


def backoff_delay(
    attempt: int, base_delay: float = 0.5, max_delay: float = 4.0
) -> float:
    """
    Delay before retrying after a failed attempt.

    Args:
        attempt: Zero-based index of the attempt that failed
        base_delay: Delay after the first failure in seconds
        max_delay: Upper bound in seconds

    Returns:
        ``min(max_delay, base_delay * 2 ** attempt)``
    """
    return min(max_delay, base_delay * (2**attempt))


def escape_query_string(value: str) -> str:
    """Escape a value for interpolation into a quoted WSAPI query term."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _identity(payload: Any) -> Any:
    return payload


def _wsapi_results(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict) or not isinstance(
        payload.get("QueryResult"), dict
    ):
        raise MalformedResponseError("WSAPI response is missing QueryResult")

    query_result = payload["QueryResult"]
    errors = query_result.get("Errors")
    if isinstance(errors, list) and errors:
        raise RallyAPIError(f"WSAPI query rejected: {'; '.join(map(str, errors))}")

    results = query_result.get("Results")
    if not isinstance(results, list):
        raise MalformedResponseError("WSAPI response is missing QueryResult.Results")
    return [row for row in results if isinstance(row, dict)]


def _lookback_results(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        raise MalformedResponseError("Lookback response is not an object")

    errors = payload.get("Errors")
    if isinstance(errors, list) and errors:
        raise RallyAPIError(f"Lookback query rejected: {'; '.join(map(str, errors))}")

    results = payload.get("Results", [])
    if not isinstance(results, list):
        raise MalformedResponseError("Lookback response Results is not a list")
    return [row for row in results if isinstance(row, dict)]


def _chunks(items: list[int], size: int) -> list[list[int]]:
    return [items[index : index + size] for index in range(0, len(items), size)]


class RallyClient:
    """
    Rally API client with retry, pagination and auth failure classification.

    The client holds no poll state; everything it needs about the tracked
    sprint is passed in as a ``TrackerScope``.
    """

    def __init__(
        self,
        config: RallyConfig,
        retry_config: RetryConfig | None = None,
        executor: RequestExecutor | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """
        Initialize the Rally client.

        Args:
            config: Rally connection settings (base URL, API key, page sizes)
            retry_config: Retry and backoff settings
            executor: Credential transport; defaults to an httpx executor
            sleep: Awaitable used between retries
        """
        self.config = config
        self.retry_config = retry_config or RetryConfig()
        self.executor = executor or HttpxRequestExecutor(config.timeout_seconds)
        self._sleep = sleep
        self.base_url = config.base_url.rstrip("/")

    @property
    def wsapi_root(self) -> str:
        return f"{self.base_url}/slm/webservice/v2.0"

    def story_url(self, story_id: int) -> str:
        """Canonical detail URL for a story."""
        return f"{self.base_url}/#/detail/userstory/{story_id}"

    def _workspace_ref(self, workspace_id: str) -> str:
        return f"/workspace/{workspace_id}"

    async def _request(
        self,
        url: str,
        method: str = "GET",
        body: str | None = None,
        parse: Callable[[Any], T] = _identity,
    ) -> T:
        """
        Execute a request with bounded retries.

        Args:
            url: Absolute request URL
            method: HTTP method
            body: Optional JSON body
            parse: Validates the decoded JSON; raising MalformedResponseError
                makes the attempt retryable

        Returns:
            Parsed payload

        Raises:
            AuthenticationError: On 401/403, never retried
            RallyAPIError: On other non-2xx responses or rejected queries
            TransientRemoteError: When every attempt failed transiently
        """
        request = TransportRequest(
            url=url, method=method, body=body, credential=self.config.api_key
        )
        max_retries = self.retry_config.max_retries
        last_error: TransientRemoteError | None = None

        for attempt in range(max_retries + 1):
            try:
                response = await self.executor.execute(request)
            except TransportFailure as e:
                last_error = TransientRemoteError(str(e))
            else:
                status = response.status
                if status in (401, 403):
                    logger.error("Rally rejected credentials", status_code=status)
                    raise AuthenticationError(
                        "Invalid or unauthorized Rally API key",
                        context={"status_code": status},
                    )

                if status == 429 or status >= 500:
                    last_error = TransientRemoteError(
                        f"Rally request failed ({status})", status_code=status
                    )
                elif status < 200 or status >= 300:
                    raise RallyAPIError(
                        f"Rally request failed ({status}): {response.body[:200]}",
                        status_code=status,
                    )
                else:
                    try:
                        return parse(json.loads(response.body))
                    except ValueError:
                        last_error = MalformedResponseError(
                            f"Rally request returned non-JSON body ({status})",
                            status_code=status,
                        )
                    except MalformedResponseError as e:
                        last_error = e

            if attempt < max_retries:
                delay = backoff_delay(
                    attempt,
                    self.retry_config.base_delay_seconds,
                    self.retry_config.max_delay_seconds,
                )
                logger.warning(
                    "Retrying Rally request",
                    method=method,
                    attempt=attempt + 1,
                    max_attempts=max_retries + 1,
                    delay_seconds=delay,
                    error=str(last_error),
                )
                await self._sleep(delay)

        raise last_error or TransientRemoteError("Rally request was not attempted")

    async def _wsapi_get(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        url = f"{self.wsapi_root}{path}?{urlencode(params, quote_via=quote)}"
        return await self._request(url, parse=_wsapi_results)

    async def _wsapi_paged(
        self, path: str, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        """
        Fetch every page of a WSAPI list query.

        A page shorter than the page size ends the scan; a full page always
        triggers one more fetch. ``max_pages`` bounds runaway pagination.
        """
        page_size = self.config.live_page_size
        rows: list[dict[str, Any]] = []
        start = 1

        for _ in range(self.config.max_pages):
            page_rows = await self._wsapi_get(
                path, {**params, "pagesize": page_size, "start": start}
            )
            rows.extend(page_rows)
            if len(page_rows) < page_size:
                break
            start += page_size
        else:
            logger.warning(
                "Stopped paging at page cap", path=path, max_pages=self.config.max_pages
            )

        return rows

    def _metadata_from_row(self, row: dict[str, Any]) -> StoryMetadata | None:
        """Story fields exactly as returned; anything missing stays None."""
        story_id = extract_object_id(row.get("ObjectID"))
        if story_id is None:
            return None
        project = row.get("Project")
        project_name = None
        if isinstance(project, dict):
            project_name = non_empty_str(project.get("Name")) or non_empty_str(
                project.get("_refObjectName")
            )
        return StoryMetadata(
            story_id=story_id,
            formatted_id=non_empty_str(row.get("FormattedID")),
            name=non_empty_str(row.get("Name")),
            project_name=project_name,
            owner_name=extract_owner_name(row.get("Owner")),
            status_name=extract_status_name(row.get("Status")),
            ready=extract_ready_flag(row.get("Ready")),
            schedule_state=non_empty_str(row.get("ScheduleState")),
        )

    def _story_from_row(self, row: dict[str, Any]) -> Story | None:
        metadata = self._metadata_from_row(row)
        if metadata is None:
            return None
        story_id = metadata.story_id
        return Story(
            story_id=story_id,
            formatted_id=metadata.formatted_id or f"US{story_id}",
            name=metadata.name or f"Story {story_id}",
            owner_name=metadata.owner_name,
            status_name=metadata.status_name,
            ready=metadata.ready,
            schedule_state=metadata.schedule_state,
            project_name=metadata.project_name or UNKNOWN_PROJECT,
            url=self.story_url(story_id),
        )

    async def test_connection(self) -> None:
        """Verify the API key by fetching the current user."""
        await self._wsapi_get("/user", {"pagesize": 1, "start": 1, "fetch": "ObjectID"})

    async def list_workspaces(self) -> list[NamedOption]:
        rows = await self._wsapi_paged("/workspace", {"fetch": "ObjectID,Name"})
        return [
            NamedOption(object_id=str(row["ObjectID"]), name=str(row.get("Name", "")))
            for row in rows
            if "ObjectID" in row
        ]

    async def list_projects(self, workspace_id: str) -> list[NamedOption]:
        rows = await self._wsapi_paged(
            "/project",
            {"workspace": self._workspace_ref(workspace_id), "fetch": "ObjectID,Name"},
        )
        return [
            NamedOption(object_id=str(row["ObjectID"]), name=str(row.get("Name", "")))
            for row in rows
            if "ObjectID" in row
        ]

    async def list_project_iterations(
        self, workspace_id: str, project_id: str
    ) -> list[IterationOption]:
        """List sprints visible from a project, newest first."""
        rows = await self._wsapi_paged(
            "/iteration",
            {
                "workspace": self._workspace_ref(workspace_id),
                "project": f"/project/{project_id}",
                "projectScopeDown": "true",
                "projectScopeUp": "false",
                "order": "StartDate DESC",
                "fetch": "ObjectID,Name,StartDate,EndDate",
            },
        )
        return [
            IterationOption(
                object_id=str(row["ObjectID"]),
                name=str(row.get("Name", "")),
                start_date=non_empty_str(row.get("StartDate")),
                end_date=non_empty_str(row.get("EndDate")),
            )
            for row in rows
            if "ObjectID" in row
        ]

    async def resolve_iteration_ids(self, scope: TrackerScope) -> list[int]:
        """
        Resolve every internal sprint id that stands for the tracked sprint.

        Rally duplicates a sprint across iteration hierarchies, so the same
        sprint can carry several ObjectIDs. Any iteration visible from the
        tracked projects with the same name (case-insensitive) and the same
        start day is treated as the tracked sprint.
        """
        if not scope.iteration_id or not scope.project_ids:
            return []

        resolved: list[int] = []
        selected_id = extract_object_id(scope.iteration_id)
        if selected_id is not None:
            resolved.append(selected_id)

        normalized_name = scope.iteration_name.strip().lower()
        if not normalized_name:
            return resolved

        selected_start = scope.start_date
        iterations_by_project = await asyncio.gather(
            *(
                self.list_project_iterations(scope.workspace_id, project_id)
                for project_id in scope.project_ids
            )
        )

        for iterations in iterations_by_project:
            for iteration in iterations:
                if iteration.name.strip().lower() != normalized_name:
                    continue
                if selected_start is not None:
                    iteration_start = parse_timestamp(iteration.start_date)
                    if (
                        iteration_start is None
                        or iteration_start.date() != selected_start.date()
                    ):
                        continue
                iteration_id = extract_object_id(iteration.object_id)
                if iteration_id is not None and iteration_id not in resolved:
                    resolved.append(iteration_id)

        if len(resolved) > 1:
            logger.debug(
                "Resolved duplicate sprint ids",
                iteration_name=scope.iteration_name,
                iteration_ids=resolved,
            )
        return resolved

    async def _fetch_stories_for_query(
        self, workspace_id: str, project_id: str, query: str
    ) -> list[Story]:
        rows = await self._wsapi_paged(
            "/hierarchicalrequirement",
            {
                "workspace": self._workspace_ref(workspace_id),
                "project": f"/project/{project_id}",
                "projectScopeDown": "true",
                "projectScopeUp": "false",
                "query": query,
                "fetch": STORY_FETCH,
            },
        )
        stories = []
        for row in rows:
            story = self._story_from_row(row)
            if story is not None:
                stories.append(story)
        return stories

    async def _fetch_union(self, scope: TrackerScope, query: str) -> dict[int, Story]:
        per_project = await asyncio.gather(
            *(
                self._fetch_stories_for_query(scope.workspace_id, project_id, query)
                for project_id in scope.project_ids
            )
        )
        unique: dict[int, Story] = {}
        for stories in per_project:
            for story in stories:
                unique[story.story_id] = story
        return unique

    async def fetch_stories_in_iteration(
        self, scope: TrackerScope, iteration_ids: list[int] | None = None
    ) -> list[Story]:
        """
        Fetch the live stories of the tracked sprint across all projects.

        Results are unioned by story id. Only when the id-based query finds
        nothing at all is the sprint looked up by exact name instead.
        """
        if iteration_ids is None:
            iteration_ids = await self.resolve_iteration_ids(scope)
        if not iteration_ids or not scope.project_ids:
            return []

        id_query = " OR ".join(
            f'(Iteration = "/iteration/{iteration_id}")'
            for iteration_id in iteration_ids
        )
        unique = await self._fetch_union(scope, f"({id_query})")
        if unique:
            return list(unique.values())

        iteration_name = scope.iteration_name.strip()
        if not iteration_name:
            return []

        logger.info(
            "No stories found by sprint id, falling back to sprint name",
            iteration_name=iteration_name,
        )
        name_query = f'(Iteration.Name = "{escape_query_string(iteration_name)}")'
        unique = await self._fetch_union(scope, name_query)
        return list(unique.values())

    async def fetch_snapshots(
        self,
        since: str,
        scope: TrackerScope,
        iteration_ids: list[int] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch one page of Lookback snapshots at or after ``since``.

        Snapshots are sorted oldest first so a capped page always holds the
        oldest unconsumed changes; newer ones come back on a later poll.
        """
        if iteration_ids is None:
            iteration_ids = await self.resolve_iteration_ids(scope)
        if not iteration_ids or not scope.project_ids:
            return []

        url = (
            f"{self.base_url}/analytics/v2.0/service/rally/workspace/"
            f"{scope.workspace_id}/artifact/snapshot/query.js"
        )
        body = {
            "find": {
                "_TypeHierarchy": "HierarchicalRequirement",
                "Iteration": {"$in": iteration_ids},
                "_ValidFrom": {"$gte": since},
            },
            "sort": {"_ValidFrom": 1},
            "pagesize": self.config.snapshot_page_size,
            "fields": SNAPSHOT_FIELDS,
        }
        snapshots = await self._request(
            url, method="POST", body=json.dumps(body), parse=_lookback_results
        )
        if len(snapshots) >= self.config.snapshot_page_size:
            logger.info(
                "Snapshot page full, remaining changes deferred to next poll",
                since=since,
                page_size=self.config.snapshot_page_size,
            )
        return snapshots

    async def _lookup(
        self, path: str, workspace_id: str, object_ids: list[int], fetch: str
    ) -> list[dict[str, Any]]:
        unique_ids = sorted(set(object_ids))
        rows: list[dict[str, Any]] = []
        for batch in _chunks(unique_ids, LOOKUP_BATCH_SIZE):
            query = " OR ".join(f"(ObjectID = {object_id})" for object_id in batch)
            if len(batch) > 1:
                query = f"({query})"
            rows.extend(
                await self._wsapi_get(
                    path,
                    {
                        "pagesize": self.config.metadata_page_size,
                        "start": 1,
                        "workspace": self._workspace_ref(workspace_id),
                        "query": query,
                        "fetch": fetch,
                    },
                )
            )
        return rows

    async def fetch_story_metadata(
        self, workspace_id: str, story_ids: list[int]
    ) -> dict[int, StoryMetadata]:
        """Batch-fetch current story fields for ids only known from snapshots."""
        if not story_ids:
            return {}
        rows = await self._lookup(
            "/hierarchicalrequirement", workspace_id, story_ids, STORY_FETCH
        )
        metadata: dict[int, StoryMetadata] = {}
        for row in rows:
            entry = self._metadata_from_row(row)
            if entry is not None:
                metadata[entry.story_id] = entry
        return metadata

    async def fetch_project_names(
        self, workspace_id: str, project_ids: list[int]
    ) -> dict[int, str]:
        """Batch-fetch project names for project ids referenced by snapshots."""
        if not project_ids:
            return {}
        rows = await self._lookup("/project", workspace_id, project_ids, "ObjectID,Name")
        names: dict[int, str] = {}
        for row in rows:
            project_id = extract_object_id(row.get("ObjectID"))
            name = non_empty_str(row.get("Name"))
            if project_id is not None and name:
                names[project_id] = name
        return names
