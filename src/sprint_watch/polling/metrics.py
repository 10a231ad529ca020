"""
Metrics collection for the polling system.

Tracks polling passes and per-tracker poll outcomes so the status server can
report latency, error counts and an overall health indicator.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class PollingCycleMetrics:
    """Metrics for a single polling pass."""

    cycle_id: str
    start_time: datetime
    end_time: datetime | None = None
    trackers_polled: int = 0
    stories_seen: int = 0
    changes_discovered: int = 0
    notifications_sent: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Get cycle duration in seconds."""
        if self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0


@dataclass
class TrackerMetrics:
    """Metrics for a specific tracker."""

    tracker_id: str
    last_poll_time: datetime | None = None
    total_polls: int = 0
    total_changes: int = 0
    last_story_count: int = 0
    last_latency_ms: float = 0.0
    average_latency_ms: float = 0.0
    consecutive_failures: int = 0
    last_error: str | None = None
    error_count: int = 0

    def update_poll_metrics(
        self, latency_ms: float, stories: int, changes: int
    ) -> None:
        """Update metrics after a successful poll."""
        self.last_poll_time = datetime.now()
        self.total_polls += 1
        self.total_changes += changes
        self.last_story_count = stories
        self.last_latency_ms = latency_ms
        self.consecutive_failures = 0

        self.average_latency_ms = (
            self.average_latency_ms * (self.total_polls - 1) + latency_ms
        ) / self.total_polls

    def record_failure(self, error: str) -> None:
        self.last_error = error
        self.error_count += 1
        self.consecutive_failures += 1


class MetricsCollector:
    """
    Central metrics collector for the polling system.

    Collects pass-level and tracker-level metrics and keeps a short history
    of completed passes for health scoring.
    """

    def __init__(self, max_history: int = 50) -> None:
        self.start_time = datetime.now()
        self.max_history = max_history
        self.tracker_metrics: dict[str, TrackerMetrics] = {}
        self.cycle_history: deque[PollingCycleMetrics] = deque(maxlen=max_history)
        self.current_cycle: PollingCycleMetrics | None = None

        # Global counters
        self.total_cycles = 0
        self.total_polls = 0
        self.total_changes = 0
        self.total_notifications = 0
        self.total_errors = 0

    def start_cycle(self, cycle_id: str) -> PollingCycleMetrics:
        """Start a new polling pass."""
        if self.current_cycle and not self.current_cycle.end_time:
            # End previous cycle if it wasn't properly closed
            self.end_cycle()

        self.current_cycle = PollingCycleMetrics(
            cycle_id=cycle_id, start_time=datetime.now()
        )
        logger.debug("Started metrics collection for cycle", cycle_id=cycle_id)
        return self.current_cycle

    def end_cycle(self) -> PollingCycleMetrics | None:
        """End the current polling pass."""
        if not self.current_cycle:
            return None

        cycle = self.current_cycle
        cycle.end_time = datetime.now()

        self.total_cycles += 1
        self.total_polls += cycle.trackers_polled
        self.total_changes += cycle.changes_discovered
        self.total_notifications += cycle.notifications_sent
        self.total_errors += len(cycle.errors)

        self.cycle_history.append(cycle)
        self.current_cycle = None

        logger.debug(
            "Completed metrics collection for cycle",
            cycle_id=cycle.cycle_id,
            duration=cycle.duration_seconds,
            trackers=cycle.trackers_polled,
            changes=cycle.changes_discovered,
        )
        return cycle

    def _tracker(self, tracker_id: str) -> TrackerMetrics:
        if tracker_id not in self.tracker_metrics:
            self.tracker_metrics[tracker_id] = TrackerMetrics(tracker_id=tracker_id)
        return self.tracker_metrics[tracker_id]

    def record_tracker_poll(
        self,
        tracker_id: str,
        latency_ms: float,
        stories: int,
        changes: int,
    ) -> None:
        """Record a successful tracker poll."""
        self._tracker(tracker_id).update_poll_metrics(latency_ms, stories, changes)

        if self.current_cycle:
            self.current_cycle.trackers_polled += 1
            self.current_cycle.stories_seen += stories
            self.current_cycle.changes_discovered += changes

    def record_tracker_error(self, tracker_id: str, error: str) -> None:
        """Record a failed tracker poll."""
        self._tracker(tracker_id).record_failure(error)

        if self.current_cycle:
            self.current_cycle.trackers_polled += 1
            self.current_cycle.errors.append(f"{tracker_id}: {error}")

    def record_notification(self, count: int = 1) -> None:
        if self.current_cycle:
            self.current_cycle.notifications_sent += count

    def forget_tracker(self, tracker_id: str) -> None:
        self.tracker_metrics.pop(tracker_id, None)

    def get_tracker_summary(self) -> dict[str, dict[str, Any]]:
        """Get summary metrics for all trackers."""
        summary = {}
        for tracker_id, metrics in self.tracker_metrics.items():
            summary[tracker_id] = {
                "total_polls": metrics.total_polls,
                "total_changes": metrics.total_changes,
                "last_story_count": metrics.last_story_count,
                "last_latency_ms": metrics.last_latency_ms,
                "average_latency_ms": metrics.average_latency_ms,
                "consecutive_failures": metrics.consecutive_failures,
                "last_poll": (
                    metrics.last_poll_time.isoformat()
                    if metrics.last_poll_time
                    else None
                ),
                "last_error": metrics.last_error,
                "error_count": metrics.error_count,
            }
        return summary

    def get_global_summary(self) -> dict[str, Any]:
        """Get global polling metrics summary."""
        uptime_seconds = (datetime.now() - self.start_time).total_seconds()
        cycle_times = [cycle.duration_seconds for cycle in self.cycle_history]

        return {
            "uptime_seconds": uptime_seconds,
            "total_cycles": self.total_cycles,
            "total_polls": self.total_polls,
            "total_changes": self.total_changes,
            "total_notifications": self.total_notifications,
            "total_errors": self.total_errors,
            "error_rate": (
                (self.total_errors / self.total_polls * 100)
                if self.total_polls > 0
                else 0
            ),
            "avg_cycle_time": (
                sum(cycle_times) / len(cycle_times) if cycle_times else 0
            ),
        }

    def get_health_indicators(self) -> dict[str, Any]:
        """Get health indicators for monitoring."""
        recent_cycles = list(self.cycle_history)[-10:]
        recent_errors = sum(len(cycle.errors) for cycle in recent_cycles)
        recent_polls = sum(cycle.trackers_polled for cycle in recent_cycles)

        # Health scoring (0-100)
        health_score = 100.0
        if recent_polls:
            health_score -= min(recent_errors / recent_polls * 100, 100)

        if health_score >= 90:
            status = "healthy"
        elif health_score >= 50:
            status = "degraded"
        else:
            status = "failing"

        return {
            "status": status,
            "health_score": max(0.0, health_score),
            "recent_error_count": recent_errors,
            "active_trackers": len(self.tracker_metrics),
            "last_cycle_time": (
                recent_cycles[-1].end_time.isoformat()
                if recent_cycles and recent_cycles[-1].end_time
                else None
            ),
        }
