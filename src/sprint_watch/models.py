"""
Domain models for Sprint Watch.

Stories and story changes are immutable value objects; the per-tracker
persisted state is mutable and owned by the tracker state store. Every model
serializes to the camelCase document shape used by the persisted state file.
"""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp or date into an aware UTC datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def isoformat_utc(moment: datetime) -> str:
    """Format a datetime the way Rally does: millisecond precision, Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    moment = moment.astimezone(UTC)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def timestamp_sort_key(value: str) -> datetime:
    """Sort key for ISO strings; unparseable values sort oldest."""
    return parse_timestamp(value) or _EPOCH


_FORMATTED_ID = re.compile(r"^(\D*)(\d+)$")


def formatted_id_sort_key(formatted_id: str) -> tuple[str, int, str]:
    """Sort key that orders "US9" before "US10"."""
    match = _FORMATTED_ID.match(formatted_id)
    if match is None:
        return (formatted_id, -1, formatted_id)
    return (match.group(1), int(match.group(2)), formatted_id)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _optional_bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


@dataclass(frozen=True)
class TrackerScope:
    """
    Immutable identity of what a tracker follows.

    Equality only considers the workspace, the project set and the sprint id;
    the sprint name and start date ride along for queries and cursor seeding.
    """

    workspace_id: str
    project_ids: tuple[str, ...]
    iteration_id: str
    iteration_name: str = field(default="", compare=False)
    iteration_start_date: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "project_ids", tuple(sorted(set(self.project_ids))))

    @property
    def key(self) -> str:
        """Serialized scope key used to fence persisted state."""
        return f"{self.workspace_id}|{','.join(self.project_ids)}|{self.iteration_id}"

    @property
    def start_date(self) -> datetime | None:
        return parse_timestamp(self.iteration_start_date)


@dataclass(frozen=True)
class Story:
    """Live current-state record of a story in the tracked sprint."""

    story_id: int
    formatted_id: str
    name: str
    project_name: str
    url: str
    owner_name: str | None = None
    status_name: str | None = None
    ready: bool | None = None
    schedule_state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "storyObjectId": self.story_id,
            "formattedId": self.formatted_id,
            "name": self.name,
            "ownerName": self.owner_name,
            "statusName": self.status_name,
            "ready": self.ready,
            "scheduleState": self.schedule_state,
            "projectName": self.project_name,
            "url": self.url,
        }


@dataclass(frozen=True)
class StoryMetadata:
    """
    Story fields batch-fetched by id for stories only the snapshots mention.

    Fields Rally did not return stay None so later resolvers can fill them.
    """

    story_id: int
    formatted_id: str | None = None
    name: str | None = None
    project_name: str | None = None
    owner_name: str | None = None
    status_name: str | None = None
    ready: bool | None = None
    schedule_state: str | None = None


@dataclass(frozen=True)
class StoryRef:
    """Story id and formatted id pair stored for the classification set."""

    story_id: int
    formatted_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"storyObjectId": self.story_id, "formattedId": self.formatted_id}

    @classmethod
    def from_dict(cls, data: Any) -> "StoryRef | None":
        """Create a StoryRef, returning None for malformed entries."""
        if not isinstance(data, dict):
            return None
        try:
            story_id = int(data.get("storyObjectId"))
        except (TypeError, ValueError):
            return None
        formatted_id = data.get("formattedId")
        if not isinstance(formatted_id, str) or not formatted_id.strip():
            return None
        return cls(story_id=story_id, formatted_id=formatted_id.strip())


@dataclass(frozen=True)
class StoryChange:
    """A single deduplicated change-log entry. Never mutated once created."""

    change_id: str
    story_id: int
    formatted_id: str
    name: str
    project_name: str
    url: str
    changed_at: str
    changed_fields: tuple[str, ...]
    owner_name: str | None = None
    status_name: str | None = None
    ready: bool | None = None
    schedule_state: str | None = None
    schedule_state_from: str | None = None
    schedule_state_to: str | None = None
    changed_by: str | None = None

    @property
    def changed_at_dt(self) -> datetime | None:
        return parse_timestamp(self.changed_at)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "changeId": self.change_id,
            "storyObjectId": self.story_id,
            "formattedId": self.formatted_id,
            "name": self.name,
            "ownerName": self.owner_name,
            "statusName": self.status_name,
            "ready": self.ready,
            "scheduleState": self.schedule_state,
            "scheduleStateFrom": self.schedule_state_from,
            "scheduleStateTo": self.schedule_state_to,
            "projectName": self.project_name,
            "changedAt": self.changed_at,
            "changedFields": list(self.changed_fields),
            "changedBy": self.changed_by,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StoryChange | None":
        """Create a StoryChange from storage, returning None if unusable."""
        if not isinstance(data, dict):
            return None
        change_id = data.get("changeId")
        changed_at = data.get("changedAt")
        fields = data.get("changedFields")
        if not isinstance(change_id, str) or not change_id:
            return None
        if not isinstance(changed_at, str) or not changed_at:
            return None
        if not isinstance(fields, list):
            return None
        try:
            story_id = int(data.get("storyObjectId"))
        except (TypeError, ValueError):
            return None

        return cls(
            change_id=change_id,
            story_id=story_id,
            formatted_id=_optional_str(data.get("formattedId")) or f"US{story_id}",
            name=_optional_str(data.get("name")) or f"Story {story_id}",
            project_name=_optional_str(data.get("projectName")) or "Unknown Project",
            url=_optional_str(data.get("url")) or "",
            changed_at=changed_at,
            changed_fields=tuple(str(name) for name in fields),
            owner_name=_optional_str(data.get("ownerName")),
            status_name=_optional_str(data.get("statusName")),
            ready=_optional_bool(data.get("ready")),
            schedule_state=_optional_str(data.get("scheduleState")),
            schedule_state_from=_optional_str(data.get("scheduleStateFrom")),
            schedule_state_to=_optional_str(data.get("scheduleStateTo")),
            changed_by=_optional_str(data.get("changedBy")),
        )


@dataclass
class TrackerConfig:
    """User-selected workspace/projects/sprint plus polling preferences."""

    id: str
    name: str
    workspace_id: str
    project_ids: list[str]
    iteration_id: str
    base_url: str
    created_at: str
    project_names: list[str] = field(default_factory=list)
    iteration_name: str = ""
    iteration_start_date: str = ""
    poll_interval_minutes: int = 5
    timezone: str = "UTC"
    teams_webhook_url: str | None = None

    @property
    def scope(self) -> TrackerScope:
        return TrackerScope(
            workspace_id=self.workspace_id,
            project_ids=tuple(self.project_ids),
            iteration_id=self.iteration_id,
            iteration_name=self.iteration_name,
            iteration_start_date=self.iteration_start_date,
        )

    @property
    def poll_interval_seconds(self) -> int:
        return self.poll_interval_minutes * 60

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "projectNames": list(self.project_names),
            "createdAt": self.created_at,
            "baseUrl": self.base_url,
            "workspaceOid": self.workspace_id,
            "projectOids": list(self.project_ids),
            "iterationOid": self.iteration_id,
            "iterationName": self.iteration_name,
            "iterationStartDate": self.iteration_start_date,
            "pollIntervalMinutes": self.poll_interval_minutes,
            "timezone": self.timezone,
        }
        if self.teams_webhook_url:
            data["teamsWebhookUrl"] = self.teams_webhook_url
        return data


@dataclass
class TrackerPersistedState:
    """Per-tracker cursor, seen ids, history and classification snapshot."""

    scope_key: str = ""
    cursor: str | None = None
    seen_change_ids: list[str] = field(default_factory=list)
    history: list[StoryChange] = field(default_factory=list)
    last_checked_at: str | None = None
    last_notification_at: str | None = None
    classified_stories: list[StoryRef] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "scopeKey": self.scope_key,
            "cursor": self.cursor,
            "seenChangeIds": list(self.seen_change_ids),
            "lastNotificationAt": self.last_notification_at,
            "history": [change.to_dict() for change in self.history],
            "lastCheckedAt": self.last_checked_at,
            "classifiedStories": [ref.to_dict() for ref in self.classified_stories],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TrackerPersistedState":
        """
        Create state from a stored entry.

        Missing or malformed fields fall back to empty values instead of
        failing the whole document.
        """
        if not isinstance(data, dict):
            return cls()

        history: list[StoryChange] = []
        raw_history = data.get("history")
        if isinstance(raw_history, list):
            for entry in raw_history:
                change = StoryChange.from_dict(entry)
                if change is None:
                    logger.debug("Dropping malformed history entry")
                    continue
                history.append(change)

        raw_seen = data.get("seenChangeIds")
        seen = (
            [item for item in raw_seen if isinstance(item, str)]
            if isinstance(raw_seen, list)
            else []
        )

        # testingRequiredStories is the key older documents used
        raw_classified = data.get("classifiedStories")
        if raw_classified is None:
            raw_classified = data.get("testingRequiredStories")
        classified: list[StoryRef] = []
        if isinstance(raw_classified, list):
            for item in raw_classified:
                ref = StoryRef.from_dict(item)
                if ref is not None:
                    classified.append(ref)

        scope_key = data.get("scopeKey")
        return cls(
            scope_key=scope_key if isinstance(scope_key, str) else "",
            cursor=_optional_str(data.get("cursor")),
            seen_change_ids=seen,
            history=history,
            last_checked_at=_optional_str(data.get("lastCheckedAt")),
            last_notification_at=_optional_str(data.get("lastNotificationAt")),
            classified_stories=classified,
        )


LEGACY_TRACKER_ID = "legacy"


@dataclass
class PersistedState:
    """The single persisted document holding every tracker's state."""

    active_tracker_id: str | None = None
    trackers: dict[str, TrackerPersistedState] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "activeTrackerId": self.active_tracker_id,
            "trackers": {
                tracker_id: state.to_dict()
                for tracker_id, state in self.trackers.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PersistedState":
        """
        Create the document from parsed JSON.

        A legacy single-tracker document (top-level history/scopeKey/cursor and
        no trackers map) is wrapped under the synthetic ``legacy`` tracker id.
        """
        if not isinstance(data, dict):
            return cls()

        if "trackers" not in data and any(
            data.get(key) for key in ("history", "scopeKey", "cursor")
        ):
            logger.info("Migrating legacy single-tracker state document")
            return cls(
                active_tracker_id=None,
                trackers={LEGACY_TRACKER_ID: TrackerPersistedState.from_dict(data)},
            )

        trackers: dict[str, TrackerPersistedState] = {}
        raw_trackers = data.get("trackers")
        if isinstance(raw_trackers, dict):
            for tracker_id, state in raw_trackers.items():
                trackers[str(tracker_id)] = TrackerPersistedState.from_dict(state)

        active = data.get("activeTrackerId")
        return cls(
            active_tracker_id=active if isinstance(active, str) else None,
            trackers=trackers,
        )


@dataclass
class PollResult:
    """Outcome of one poll of one tracker."""

    current_stories: list[Story]
    new_changes: list[StoryChange]
    cursor: str
    api_latency_ms: float = 0.0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class NamedOption:
    """Workspace or project choice offered when creating a tracker."""

    object_id: str
    name: str


@dataclass(frozen=True)
class IterationOption:
    """Sprint choice offered when creating a tracker."""

    object_id: str
    name: str
    start_date: str | None = None
    end_date: str | None = None


def change_sort_key(change: StoryChange) -> tuple[datetime, str]:
    """Sort key for changes; ties on timestamp break on change id."""
    return (timestamp_sort_key(change.changed_at), change.change_id)
