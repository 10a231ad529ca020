"""
Per-tracker polling state for Sprint Watch.

This module owns the persisted document in memory: scope fencing, the query
lower bound derived from the cursor, history merging and the retention and
seen-id bounds applied before every write.
"""

import copy
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

import structlog

from ..config import PollingConfig
from ..exceptions import StateError
from ..models import (
    LEGACY_TRACKER_ID,
    PersistedState,
    PollResult,
    StoryChange,
    StoryRef,
    TrackerPersistedState,
    TrackerScope,
    change_sort_key,
    isoformat_utc,
    parse_timestamp,
)
from .manager import StateBackend

logger = structlog.get_logger(__name__)


def compute_query_since(
    cursor: str | None,
    sprint_start: str | None,
    overlap: timedelta,
    now: datetime,
) -> str:
    """
    Inclusive lower bound for the snapshot query.

    The cursor is widened by ``overlap`` to tolerate clock skew and delayed
    indexing, then clamped so the query never reaches before the sprint start.
    Falls back to the sprint start, then to ``now``.
    """
    cursor_dt = parse_timestamp(cursor)
    start_dt = parse_timestamp(sprint_start)

    if cursor_dt is None:
        return isoformat_utc(start_dt or now)

    since = cursor_dt - overlap
    if start_dt is not None and since < start_dt:
        since = start_dt
    return isoformat_utc(since)


def merge_history(
    existing: Iterable[StoryChange], incoming: Iterable[StoryChange]
) -> list[StoryChange]:
    """Union two histories by change id, newest first. Idempotent."""
    merged: dict[str, StoryChange] = {}
    for change in existing:
        merged[change.change_id] = change
    for change in incoming:
        merged.setdefault(change.change_id, change)
    return sorted(merged.values(), key=change_sort_key, reverse=True)


def remember_change_ids(
    seen: list[str], change_ids: Iterable[str], limit: int
) -> list[str]:
    """Append unseen ids, keeping only the most recent ``limit`` entries."""
    known = set(seen)
    updated = list(seen)
    for change_id in change_ids:
        if change_id not in known:
            known.add(change_id)
            updated.append(change_id)
    if limit >= 0 and len(updated) > limit:
        updated = updated[len(updated) - limit :]
    return updated


def trim_state(
    state: TrackerPersistedState,
    now: datetime,
    retention: timedelta,
    seen_limit: int,
) -> TrackerPersistedState:
    """Apply history retention and the seen-id cap in place."""
    cutoff = now - retention
    kept: list[StoryChange] = []
    for change in state.history:
        changed_at = parse_timestamp(change.changed_at)
        if changed_at is None or changed_at < cutoff:
            continue
        kept.append(change)
    state.history = kept
    state.seen_change_ids = remember_change_ids(
        [], state.seen_change_ids, seen_limit
    )
    return state


def fresh_state(scope: TrackerScope) -> TrackerPersistedState:
    """Empty state for a scope, with the cursor seeded from the sprint start."""
    return TrackerPersistedState(
        scope_key=scope.key,
        cursor=scope.iteration_start_date or None,
    )


class TrackerStateStore:
    """
    In-memory owner of the persisted document.

    Polls work on a copy of a tracker's state obtained from ``begin_poll`` and
    hand it back through ``apply_poll``; nothing touches the stored entry
    while remote calls are outstanding.
    """

    def __init__(
        self,
        backend: StateBackend,
        polling_config: PollingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend
        self.config = polling_config or PollingConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self.document = PersistedState()

    def now(self) -> datetime:
        return self._clock()

    async def load(self) -> PersistedState:
        """Load the document; unreadable storage starts an empty one."""
        try:
            raw = await self.backend.read_document()
        except StateError as e:
            logger.error("Failed to load persisted state, starting empty", error=str(e))
            raw = None

        self.document = PersistedState.from_dict(raw or {})
        logger.info("Loaded persisted state", trackers=len(self.document.trackers))
        return self.document

    async def persist(self) -> None:
        """Trim every tracker's state and write the whole document."""
        now = self.now()
        retention = timedelta(days=self.config.history_retention_days)
        for state in self.document.trackers.values():
            trim_state(state, now, retention, self.config.seen_change_ids_limit)
        await self.backend.write_document(self.document.to_dict())

    def has_tracker(self, tracker_id: str) -> bool:
        return tracker_id in self.document.trackers

    def get(self, tracker_id: str) -> TrackerPersistedState | None:
        return self.document.trackers.get(tracker_id)

    @property
    def active_tracker_id(self) -> str | None:
        return self.document.active_tracker_id

    def set_active_tracker(self, tracker_id: str | None) -> None:
        self.document.active_tracker_id = tracker_id

    def create_tracker_state(
        self, tracker_id: str, scope: TrackerScope
    ) -> TrackerPersistedState:
        """Create state for a tracker unless a matching entry already exists."""
        state = self.document.trackers.get(tracker_id)
        if state is None or state.scope_key != scope.key:
            state = fresh_state(scope)
            self.document.trackers[tracker_id] = state
        if self.document.active_tracker_id is None:
            self.document.active_tracker_id = tracker_id
        return state

    def adopt_legacy_state(self, tracker_id: str) -> bool:
        """Move state migrated from a single-tracker document to ``tracker_id``."""
        state = self.document.trackers.get(LEGACY_TRACKER_ID)
        if state is None or tracker_id in self.document.trackers:
            return False
        self.document.trackers[tracker_id] = self.document.trackers.pop(
            LEGACY_TRACKER_ID
        )
        if self.document.active_tracker_id in (None, LEGACY_TRACKER_ID):
            self.document.active_tracker_id = tracker_id
        logger.info("Adopted legacy tracker state", tracker_id=tracker_id)
        return True

    def remove_tracker(self, tracker_id: str) -> None:
        self.document.trackers.pop(tracker_id, None)
        if self.document.active_tracker_id == tracker_id:
            self.document.active_tracker_id = next(iter(self.document.trackers), None)

    def begin_poll(self, tracker_id: str, scope: TrackerScope) -> TrackerPersistedState:
        """
        Working copy of a tracker's state for one poll.

        A tracker without stored state gets a fresh entry. When the stored
        scope key differs from the tracker's current scope the
        stored state is discarded and replaced by a fresh one.
        """
        stored = self.document.trackers.get(tracker_id)
        if stored is None:
            stored = self.create_tracker_state(tracker_id, scope)
        if stored.scope_key != scope.key:
            logger.info(
                "Tracker scope changed, resetting state",
                tracker_id=tracker_id,
                previous_scope=stored.scope_key,
                scope=scope.key,
            )
            state = fresh_state(scope)
            self.document.trackers[tracker_id] = state
            return copy.deepcopy(state)
        return copy.deepcopy(stored)

    def query_since(self, state: TrackerPersistedState, scope: TrackerScope) -> str:
        return compute_query_since(
            state.cursor,
            scope.iteration_start_date,
            timedelta(minutes=self.config.snapshot_overlap_minutes),
            self.now(),
        )

    def apply_poll(
        self,
        tracker_id: str,
        scope: TrackerScope,
        working: TrackerPersistedState,
        result: PollResult,
        classified: list[StoryRef],
        notified_at: str | None = None,
    ) -> bool:
        """
        Fold a successful poll into the stored document.

        Returns False without changing anything if the tracker was removed
        while its poll was in flight.
        """
        if tracker_id not in self.document.trackers:
            logger.info("Discarding poll result for removed tracker", tracker_id=tracker_id)
            return False

        working.scope_key = scope.key
        working.history = merge_history(working.history, result.new_changes)
        working.seen_change_ids = remember_change_ids(
            working.seen_change_ids,
            (change.change_id for change in result.new_changes),
            self.config.seen_change_ids_limit,
        )
        working.cursor = result.cursor
        working.last_checked_at = result.cursor
        working.classified_stories = list(classified)
        if notified_at is not None:
            working.last_notification_at = notified_at

        self.document.trackers[tracker_id] = working
        return True
