"""
Tracker configuration registry for Sprint Watch.

Tracker configurations live in their own JSON document, separate from the
polling state. Loading is tolerant: unusable entries are dropped, missing
optional fields are filled with defaults and a legacy single-tracker object
is migrated into a one-element list.
"""

import json
import random
import string
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from .config import DEFAULT_RALLY_BASE_URL
from .models import TrackerConfig, isoformat_utc

logger = structlog.get_logger(__name__)

ALLOWED_POLL_INTERVALS = (1, 5, 10)
DEFAULT_POLL_INTERVAL = 5
DEFAULT_TIMEZONE = "UTC"

_BASE36 = string.digits + string.ascii_lowercase


def generate_tracker_id() -> str:
    """Tracker id of the form ``trk_<epoch ms>_<6 base36 chars>``."""
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"trk_{int(time.time() * 1000)}_{suffix}"


def coerce_poll_interval(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        if value in ALLOWED_POLL_INTERVALS:
            return value
    return DEFAULT_POLL_INTERVAL


def _str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _webhook(value: Any) -> str | None:
    return _str(value) or None


def _now_iso() -> str:
    return isoformat_utc(datetime.now(UTC))


def hydrate_tracker(
    data: Any, index: int, default_base_url: str = DEFAULT_RALLY_BASE_URL
) -> TrackerConfig | None:
    """
    Build a tracker from a stored list entry.

    Returns None for entries without a workspace id, a sprint id or at least
    one project id. Entries without a base URL get ``default_base_url``.
    """
    if not isinstance(data, dict):
        return None

    workspace_id = _str(data.get("workspaceOid"))
    iteration_id = _str(data.get("iterationOid"))
    project_ids = _str_list(data.get("projectOids"))
    if not workspace_id or not iteration_id or not project_ids:
        return None

    iteration_name = _str(data.get("iterationName"))
    return TrackerConfig(
        id=_str(data.get("id")) or f"trk_legacy_{index}",
        name=_str(data.get("name")) or iteration_name or f"Sprint {index + 1}",
        workspace_id=workspace_id,
        project_ids=project_ids,
        iteration_id=iteration_id,
        base_url=_str(data.get("baseUrl")) or default_base_url,
        created_at=_str(data.get("createdAt")) or _now_iso(),
        project_names=_str_list(data.get("projectNames")),
        iteration_name=iteration_name,
        iteration_start_date=_str(data.get("iterationStartDate")),
        poll_interval_minutes=coerce_poll_interval(data.get("pollIntervalMinutes")),
        timezone=_str(data.get("timezone")) or DEFAULT_TIMEZONE,
        teams_webhook_url=_webhook(data.get("teamsWebhookUrl")),
    )


def hydrate_legacy_tracker(
    data: dict[str, Any], default_base_url: str = DEFAULT_RALLY_BASE_URL
) -> TrackerConfig | None:
    """Migrate the single-object document older versions stored."""
    project_ids = _str_list(data.get("projectOids"))
    if not project_ids and _str(data.get("projectOid")):
        project_ids = [_str(data.get("projectOid"))]

    workspace_id = _str(data.get("workspaceOid"))
    iteration_id = _str(data.get("iterationOid"))
    if not workspace_id or not iteration_id or not project_ids:
        return None

    iteration_name = _str(data.get("iterationName"))
    return TrackerConfig(
        id=generate_tracker_id(),
        name=iteration_name or "Sprint Tracker",
        workspace_id=workspace_id,
        project_ids=project_ids,
        iteration_id=iteration_id,
        base_url=_str(data.get("baseUrl")) or default_base_url,
        created_at=_now_iso(),
        iteration_name=iteration_name,
        iteration_start_date=_str(data.get("iterationStartDate")),
        poll_interval_minutes=coerce_poll_interval(data.get("pollIntervalMinutes")),
        timezone=_str(data.get("timezone")) or DEFAULT_TIMEZONE,
        teams_webhook_url=_webhook(data.get("teamsWebhookUrl")),
    )


def parse_trackers(
    document: Any, default_base_url: str = DEFAULT_RALLY_BASE_URL
) -> list[TrackerConfig]:
    """Hydrate trackers from a parsed tracker document."""
    if isinstance(document, list):
        trackers = []
        for index, entry in enumerate(document):
            tracker = hydrate_tracker(entry, index, default_base_url)
            if tracker is None:
                logger.debug("Dropping unusable tracker entry", index=index)
                continue
            trackers.append(tracker)
        return trackers

    if isinstance(document, dict):
        migrated = hydrate_legacy_tracker(document, default_base_url)
        if migrated is not None:
            logger.info("Migrated legacy tracker configuration", tracker_id=migrated.id)
            return [migrated]

    return []


class TrackerRegistry:
    """
    Ordered collection of tracker configurations.

    With no path the registry is in-memory only. Stored entries without a
    base URL are given ``default_base_url``.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        default_base_url: str = DEFAULT_RALLY_BASE_URL,
    ) -> None:
        self.path = Path(path) if path else None
        self.default_base_url = default_base_url
        self._trackers: dict[str, TrackerConfig] = {}

    def load(self) -> list[TrackerConfig]:
        """Load trackers from disk; an unreadable document yields no trackers."""
        self._trackers = {}
        if self.path is None or not self.path.exists():
            return []

        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(
                "Failed to load tracker configuration", path=str(self.path), error=str(e)
            )
            return []

        for tracker in parse_trackers(document, self.default_base_url):
            self._trackers[tracker.id] = tracker

        logger.info("Loaded trackers", count=len(self._trackers))
        return self.list_trackers()

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps([tracker.to_dict() for tracker in self._trackers.values()], indent=2),
            encoding="utf-8",
        )

    def list_trackers(self) -> list[TrackerConfig]:
        return list(self._trackers.values())

    def get(self, tracker_id: str) -> TrackerConfig | None:
        return self._trackers.get(tracker_id)

    def add(self, tracker: TrackerConfig) -> TrackerConfig:
        """Add or replace a tracker and save."""
        tracker.poll_interval_minutes = coerce_poll_interval(
            tracker.poll_interval_minutes
        )
        self._trackers[tracker.id] = tracker
        self.save()
        return tracker

    def remove(self, tracker_id: str) -> bool:
        removed = self._trackers.pop(tracker_id, None) is not None
        if removed:
            self.save()
        return removed

    def __len__(self) -> int:
        return len(self._trackers)

    def __contains__(self, tracker_id: object) -> bool:
        return tracker_id in self._trackers
