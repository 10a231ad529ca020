"""
Change extraction for the Sprint Watch polling system.

This module turns raw Lookback snapshots into normalized, deduplicated
``StoryChange`` entries. Display fields are resolved through explicit ordered
resolver chains: live story, then batch-fetched metadata, then the snapshot
itself, then a literal fallback.
"""

import asyncio
import hashlib
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

import structlog

from ..fields import (
    UNKNOWN_PROJECT,
    extract_changed_fields,
    extract_object_id,
    extract_owner_name,
    extract_previous_values,
    extract_project_id,
    extract_project_name,
    extract_ready_flag,
    extract_status_name,
    non_empty_str,
)
from ..models import (
    PollResult,
    Story,
    StoryChange,
    StoryMetadata,
    TrackerScope,
    change_sort_key,
    formatted_id_sort_key,
    isoformat_utc,
)
from ..rally_client import RallyClient

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CONFIGURATION_INCOMPLETE_MESSAGE = "Select a sprint before polling."


def compute_change_id(
    story_id: int, changed_at: str, changed_fields: Iterable[str]
) -> str:
    """
    Deterministic change identity.

    A pure function of the story id, the effective-change timestamp and the
    sorted changed field names; it is the only dedup key for changes.
    """
    key = f"{story_id}:{changed_at}:{','.join(sorted(changed_fields))}"
    return hashlib.sha256(key.encode()).hexdigest()[:16]


@dataclass
class ResolutionContext:
    """Every candidate source for one snapshot's display fields."""

    story_id: int
    snapshot: dict[str, Any]
    live: Story | None = None
    metadata: StoryMetadata | None = None
    project_names: dict[int, str] = field(default_factory=dict)
    base_url: str = ""


Resolver = Callable[[ResolutionContext], T | None]


class ResolverChain(Generic[T]):
    """Ordered resolvers; the first one returning a value wins."""

    def __init__(self, name: str, resolvers: list[Resolver[T]]) -> None:
        self.name = name
        self.resolvers = resolvers

    def resolve(self, context: ResolutionContext) -> T | None:
        for resolver in self.resolvers:
            value = resolver(context)
            if value is not None:
                return value
        return None


def _live(attr: str) -> Resolver[Any]:
    return lambda ctx: getattr(ctx.live, attr) if ctx.live is not None else None


def _metadata(attr: str) -> Resolver[Any]:
    return lambda ctx: (
        getattr(ctx.metadata, attr) if ctx.metadata is not None else None
    )


def _snapshot_str(key: str) -> Resolver[str]:
    return lambda ctx: non_empty_str(ctx.snapshot.get(key))


FORMATTED_ID = ResolverChain[str](
    "formatted_id",
    [
        _live("formatted_id"),
        _metadata("formatted_id"),
        _snapshot_str("FormattedID"),
        lambda ctx: f"US{ctx.story_id}",
    ],
)

NAME = ResolverChain[str](
    "name",
    [
        _live("name"),
        _metadata("name"),
        _snapshot_str("Name"),
        lambda ctx: f"Story {ctx.story_id}",
    ],
)

OWNER_NAME = ResolverChain[str](
    "owner_name",
    [
        _live("owner_name"),
        _metadata("owner_name"),
        lambda ctx: extract_owner_name(ctx.snapshot.get("Owner")),
    ],
)

STATUS_NAME = ResolverChain[str](
    "status_name",
    [
        _live("status_name"),
        _metadata("status_name"),
        lambda ctx: extract_status_name(ctx.snapshot.get("Status")),
    ],
)

READY = ResolverChain[bool](
    "ready",
    [
        _live("ready"),
        _metadata("ready"),
        lambda ctx: extract_ready_flag(ctx.snapshot.get("Ready")),
    ],
)

SCHEDULE_STATE = ResolverChain[str](
    "schedule_state",
    [
        _live("schedule_state"),
        _metadata("schedule_state"),
        _snapshot_str("ScheduleState"),
    ],
)

PROJECT_NAME = ResolverChain[str](
    "project_name",
    [
        _live("project_name"),
        _metadata("project_name"),
        lambda ctx: extract_project_name(ctx.snapshot.get("Project"), ctx.project_names),
        lambda ctx: UNKNOWN_PROJECT,
    ],
)

URL = ResolverChain[str](
    "url",
    [
        _live("url"),
        lambda ctx: f"{ctx.base_url}/#/detail/userstory/{ctx.story_id}",
    ],
)


def _changed_by(snapshot: dict[str, Any]) -> str | None:
    for key in ("_User", "UserName"):
        value = snapshot.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
    return None


def dedupe_changes(changes: Iterable[StoryChange]) -> list[StoryChange]:
    """Collapse changes by id and sort newest first."""
    unique: dict[str, StoryChange] = {}
    for change in changes:
        unique[change.change_id] = change
    return sorted(unique.values(), key=change_sort_key, reverse=True)


def referenced_ids(snapshots: list[dict[str, Any]]) -> tuple[list[int], list[int]]:
    """Story ids and project ids referenced by a batch of snapshots."""
    story_ids: set[int] = set()
    project_ids: set[int] = set()
    for snapshot in snapshots:
        story_id = extract_object_id(snapshot.get("ObjectID"))
        if story_id is not None:
            story_ids.add(story_id)
        project_id = extract_project_id(snapshot.get("Project"))
        if project_id is not None:
            project_ids.add(project_id)
    return sorted(story_ids), sorted(project_ids)


class ChangeExtractor:
    """Converts Lookback snapshots into normalized story changes."""

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")

    def extract(
        self,
        snapshots: list[dict[str, Any]],
        current_stories: list[Story],
        story_metadata: dict[int, StoryMetadata] | None = None,
        project_names: dict[int, str] | None = None,
        seen_ids: set[str] | frozenset[str] = frozenset(),
    ) -> list[StoryChange]:
        """
        Extract deduplicated changes, newest first.

        Args:
            snapshots: Raw Lookback records
            current_stories: Live stories from the current-state query
            story_metadata: Batch-fetched story fields by id
            project_names: Batch-fetched project names by id
            seen_ids: Change ids already recorded for the tracker

        Returns:
            Changes sorted descending by ``changed_at``
        """
        live_by_id = {story.story_id: story for story in current_stories}
        story_metadata = story_metadata or {}
        project_names = project_names or {}
        changes: list[StoryChange] = []

        for snapshot in snapshots:
            story_id = extract_object_id(snapshot.get("ObjectID"))
            if story_id is None:
                logger.debug("Discarding snapshot without ObjectID")
                continue

            changed_at = non_empty_str(snapshot.get("_ValidFrom"))
            if changed_at is None:
                logger.debug("Discarding snapshot without _ValidFrom", story_id=story_id)
                continue

            changed_fields = extract_changed_fields(snapshot)
            if not changed_fields:
                continue

            change_id = compute_change_id(story_id, changed_at, changed_fields)
            if change_id in seen_ids:
                continue

            context = ResolutionContext(
                story_id=story_id,
                snapshot=snapshot,
                live=live_by_id.get(story_id),
                metadata=story_metadata.get(story_id),
                project_names=project_names,
                base_url=self.base_url,
            )
            previous_state = non_empty_str(
                extract_previous_values(snapshot).get("ScheduleState")
            )
            schedule_state = SCHEDULE_STATE.resolve(context)

            changes.append(
                StoryChange(
                    change_id=change_id,
                    story_id=story_id,
                    formatted_id=FORMATTED_ID.resolve(context) or f"US{story_id}",
                    name=NAME.resolve(context) or f"Story {story_id}",
                    owner_name=OWNER_NAME.resolve(context),
                    status_name=STATUS_NAME.resolve(context),
                    ready=READY.resolve(context),
                    schedule_state=schedule_state,
                    schedule_state_from=previous_state,
                    schedule_state_to=schedule_state,
                    project_name=PROJECT_NAME.resolve(context) or UNKNOWN_PROJECT,
                    changed_at=changed_at,
                    changed_fields=tuple(changed_fields),
                    changed_by=_changed_by(snapshot),
                    url=URL.resolve(context) or "",
                )
            )

        return dedupe_changes(changes)


class StoryChangeFetcher:
    """
    Runs the remote side of one poll.

    Resolves the sprint ids once, then issues the current-state query and the
    snapshot query in parallel, batch-fetches metadata for ids that only the
    snapshots mention and hands everything to the extractor.
    """

    def __init__(self, client: RallyClient) -> None:
        self.client = client
        self.extractor = ChangeExtractor(client.base_url)

    async def fetch(
        self,
        scope: TrackerScope,
        since: str,
        seen_ids: set[str],
        observed_at: datetime | None = None,
    ) -> PollResult:
        """
        Fetch current stories and new changes for a tracker.

        Args:
            scope: Tracked workspace, projects and sprint
            since: Inclusive lower bound for the snapshot query
            seen_ids: Change ids already recorded for the tracker
            observed_at: Poll observation time; becomes the next cursor

        Returns:
            Poll result; ``errors`` is set when the tracker has no sprint or
            the sprint id resolves to nothing
        """
        started = time.perf_counter()
        observed_at = observed_at or datetime.now(UTC)
        cursor = isoformat_utc(observed_at)

        iteration_ids = (
            await self.client.resolve_iteration_ids(scope)
            if scope.iteration_id
            else []
        )
        if not iteration_ids:
            return PollResult(
                current_stories=[],
                new_changes=[],
                cursor=since,
                api_latency_ms=(time.perf_counter() - started) * 1000,
                errors=[CONFIGURATION_INCOMPLETE_MESSAGE],
            )

        current_stories, snapshots = await asyncio.gather(
            self.client.fetch_stories_in_iteration(scope, iteration_ids),
            self.client.fetch_snapshots(since, scope, iteration_ids),
        )

        story_ids, project_ids = referenced_ids(snapshots)
        story_metadata, project_names = await asyncio.gather(
            self.client.fetch_story_metadata(scope.workspace_id, story_ids),
            self.client.fetch_project_names(scope.workspace_id, project_ids),
        )

        new_changes = self.extractor.extract(
            snapshots, current_stories, story_metadata, project_names, seen_ids
        )

        logger.debug(
            "Fetched story changes",
            iteration_ids=iteration_ids,
            stories=len(current_stories),
            snapshots=len(snapshots),
            new_changes=len(new_changes),
        )

        return PollResult(
            current_stories=sorted(
                current_stories, key=lambda s: formatted_id_sort_key(s.formatted_id)
            ),
            new_changes=new_changes,
            cursor=cursor,
            api_latency_ms=(time.perf_counter() - started) * 1000,
        )
