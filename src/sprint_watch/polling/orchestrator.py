"""
Polling orchestrator for Sprint Watch.

This module schedules polls of every configured tracker, sequences the remote
fetch, change extraction, state merge and classification diff for each one,
and is the only caller of the notification engine.
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import structlog

from ..config import PollingConfig, RallyConfig, RetryConfig
from ..exceptions import AuthenticationError, ConfigurationIncompleteError, StateError
from ..fields import extract_object_id
from ..models import Story, TrackerConfig, isoformat_utc
from ..notifications import NotificationEngine, TeamsWebhookSink
from ..rally_client import RallyClient
from ..state.tracker_state import TrackerStateStore
from ..trackers import TrackerRegistry
from ..transport import HttpxRequestExecutor, RequestExecutor
from .change_extractor import StoryChangeFetcher
from .classifier import diff_classification
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

AUTH_FAILED_STATUS = "Authentication failed. Update API key."
POLL_FAILED_PREFIX = "Polling failed; retrying."


class TrackerPhase(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    SUCCESS = "success"
    AUTH_FAILED = "auth_failed"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class TrackerRuntime:
    """In-process view of one tracker: phase, status text and live stories."""

    tracker_id: str
    phase: TrackerPhase = TrackerPhase.IDLE
    status_text: str = ""
    last_poll_at: datetime | None = None
    last_success_at: datetime | None = None
    current_stories: list[Story] = field(default_factory=list)
    in_flight: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "phase": self.phase.value,
            "statusText": self.status_text,
            "lastPollAt": (
                isoformat_utc(self.last_poll_at) if self.last_poll_at else None
            ),
            "lastSuccessAt": (
                isoformat_utc(self.last_success_at) if self.last_success_at else None
            ),
            "storyCount": len(self.current_stories),
            "inFlight": self.in_flight,
        }


class PollingOrchestrator:
    """
    Orchestrates polling across every configured tracker.

    A single pass polls all due trackers concurrently and persists the state
    document once. Passes never overlap and a tracker is never polled twice
    at the same time. An authentication failure halts scheduling for every
    tracker until new credentials arrive.
    """

    def __init__(
        self,
        registry: TrackerRegistry,
        store: TrackerStateStore,
        notification_engine: NotificationEngine,
        rally_config: RallyConfig,
        retry_config: RetryConfig | None = None,
        polling_config: PollingConfig | None = None,
        executor: RequestExecutor | None = None,
        request_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the polling orchestrator.

        Args:
            registry: Tracker configurations
            store: Per-tracker persisted state
            notification_engine: Destination for testing-required changes
            rally_config: Shared Rally settings, including the API key
            retry_config: Request retry settings
            polling_config: Tick and retention settings
            executor: Shared credential transport for every tracker
            request_sleep: Awaitable used between request retries
            clock: Source of the current time
        """
        self.registry = registry
        self.store = store
        self.notification_engine = notification_engine
        self.rally_config = rally_config
        self.retry_config = retry_config or RetryConfig()
        self.config = polling_config or PollingConfig()
        self.executor = executor or HttpxRequestExecutor(rally_config.timeout_seconds)
        self._request_sleep = request_sleep
        self._clock = clock or (lambda: datetime.now(UTC))

        self.metrics = MetricsCollector()
        self.runtime: dict[str, TrackerRuntime] = {}

        # Polling state
        self.is_running_flag = False
        self.polling_task: asyncio.Task[None] | None = None
        self.pass_in_flight = False
        self.halted = False

    def now(self) -> datetime:
        return self._clock()

    @property
    def api_key(self) -> str:
        return self.rally_config.api_key

    def is_running(self) -> bool:
        """Check if polling is currently active."""
        return self.is_running_flag

    def runtime_for(self, tracker_id: str) -> TrackerRuntime:
        if tracker_id not in self.runtime:
            self.runtime[tracker_id] = TrackerRuntime(tracker_id=tracker_id)
        return self.runtime[tracker_id]

    def add_tracker(self, tracker: TrackerConfig) -> TrackerConfig:
        """
        Register a tracker and create its persisted state.

        Raises:
            ConfigurationIncompleteError: If the tracker has no usable sprint id
        """
        if extract_object_id(tracker.iteration_id) is None:
            raise ConfigurationIncompleteError(tracker_id=tracker.id)

        self.registry.add(tracker)
        self.store.create_tracker_state(tracker.id, tracker.scope)
        self.runtime_for(tracker.id)
        logger.info("Added tracker", tracker_id=tracker.id, name=tracker.name)
        return tracker

    def remove_tracker(self, tracker_id: str) -> bool:
        """Delete a tracker; an in-flight poll for it is discarded on completion."""
        removed = self.registry.remove(tracker_id)
        self.store.remove_tracker(tracker_id)
        self.runtime.pop(tracker_id, None)
        self.metrics.forget_tracker(tracker_id)
        if removed:
            logger.info("Removed tracker", tracker_id=tracker_id)
        return removed

    def update_credentials(self, api_key: str) -> None:
        """Replace the shared API key and lift an authentication halt."""
        self.rally_config = self.rally_config.model_copy(update={"api_key": api_key})
        if self.halted:
            logger.info("Credentials updated, resuming polling")
        self.halted = False
        for runtime in self.runtime.values():
            if runtime.phase == TrackerPhase.AUTH_FAILED:
                runtime.phase = TrackerPhase.IDLE
                runtime.status_text = ""

    def is_due(self, tracker: TrackerConfig, now: datetime) -> bool:
        runtime = self.runtime_for(tracker.id)
        if runtime.last_success_at is None:
            return True
        elapsed = (now - runtime.last_success_at).total_seconds()
        return elapsed >= tracker.poll_interval_seconds

    def client_for(self, tracker: TrackerConfig) -> RallyClient:
        config = self.rally_config.model_copy(
            update={"base_url": tracker.base_url or self.rally_config.base_url}
        )
        return RallyClient(
            config,
            self.retry_config,
            executor=self.executor,
            sleep=self._request_sleep,
        )

    def engine_for(self, tracker: TrackerConfig) -> NotificationEngine:
        if not tracker.teams_webhook_url:
            return self.notification_engine
        return NotificationEngine(
            [*self.notification_engine.sinks, TeamsWebhookSink(tracker.teams_webhook_url)],
            self.notification_engine.summary_threshold,
        )

    async def start_polling(self) -> None:
        """Start the polling process."""
        if self.is_running_flag:
            logger.warning("Polling already running")
            return

        self.is_running_flag = True
        logger.info(
            "Starting polling orchestrator",
            trackers=len(self.registry),
            tick_seconds=self.config.tick_seconds,
        )

        try:
            await self._polling_loop()
        except asyncio.CancelledError:
            logger.info("Polling cancelled")
        except Exception as e:
            logger.error("Polling failed with unexpected error", error=str(e))
        finally:
            self.is_running_flag = False

    async def stop_polling(self) -> None:
        """Stop the polling process."""
        if not self.is_running_flag:
            return

        logger.info("Stopping polling orchestrator")
        self.is_running_flag = False

        if self.polling_task and not self.polling_task.done():
            self.polling_task.cancel()
            try:
                await self.polling_task
            except asyncio.CancelledError:
                pass

    async def _polling_loop(self) -> None:
        """Main polling loop; the first pass is forced."""
        force = True
        while self.is_running_flag:
            try:
                await self.poll_due_trackers(force=force)
            except Exception as e:
                logger.error("Polling pass failed", error=str(e))
            force = False
            await asyncio.sleep(self.config.tick_seconds)

    async def poll_due_trackers(self, force: bool = False) -> bool:
        """
        Run one pass over every due tracker.

        Args:
            force: Poll every tracker regardless of its interval

        Returns:
            False if the pass was skipped (another pass in flight, polling
            halted, no credentials or no trackers)
        """
        if self.pass_in_flight:
            logger.debug("Skipping polling pass, previous pass still running")
            return False
        if self.halted:
            logger.debug("Skipping polling pass, halted on authentication failure")
            return False
        if not self.api_key:
            logger.debug("Skipping polling pass, no API key configured")
            return False

        trackers = self.registry.list_trackers()
        if not trackers:
            return False

        self.pass_in_flight = True
        cycle_id = uuid.uuid4().hex[:8]
        self.metrics.start_cycle(cycle_id)
        try:
            now = self.now()
            due = [t for t in trackers if force or self.is_due(t, now)]
            if not due:
                return True

            logger.info(
                "Polling pass started", cycle_id=cycle_id, due=len(due), forced=force
            )
            await asyncio.gather(*(self.poll_tracker(tracker) for tracker in due))

            try:
                await self.store.persist()
            except StateError as e:
                logger.error("Failed to persist state", cycle_id=cycle_id, error=str(e))

            logger.info("Polling pass finished", cycle_id=cycle_id, halted=self.halted)
            return True
        finally:
            self.pass_in_flight = False
            self.metrics.end_cycle()

    async def poll_tracker(self, tracker: TrackerConfig) -> TrackerPhase:
        """
        Poll a single tracker and fold the result into its state.

        Returns:
            The outcome of the poll. A transient failure is reported as
            ``TRANSIENT_ERROR`` while the tracker itself returns to ``IDLE``
            with the failure in its status text.
        """
        runtime = self.runtime_for(tracker.id)
        if runtime.in_flight:
            logger.debug("Tracker poll already in flight", tracker_id=tracker.id)
            return runtime.phase

        runtime.in_flight = True
        runtime.phase = TrackerPhase.POLLING
        started = time.perf_counter()
        try:
            return await self._poll_tracker(tracker, runtime)
        except AuthenticationError as e:
            runtime.phase = TrackerPhase.AUTH_FAILED
            runtime.status_text = AUTH_FAILED_STATUS
            self.metrics.record_tracker_error(tracker.id, str(e))
            self.halted = True
            logger.error(
                "Authentication failed, halting polling for all trackers",
                tracker_id=tracker.id,
            )
            return runtime.phase
        except Exception as e:
            runtime.phase = TrackerPhase.IDLE
            runtime.status_text = f"{POLL_FAILED_PREFIX} {e}".strip()
            self.metrics.record_tracker_error(tracker.id, str(e))
            logger.warning(
                "Tracker poll failed",
                tracker_id=tracker.id,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - started) * 1000),
            )
            return TrackerPhase.TRANSIENT_ERROR
        finally:
            runtime.in_flight = False
            runtime.last_poll_at = self.now()

    async def _poll_tracker(
        self, tracker: TrackerConfig, runtime: TrackerRuntime
    ) -> TrackerPhase:
        if tracker.id not in self.registry:
            return TrackerPhase.IDLE

        scope = tracker.scope
        working = self.store.begin_poll(tracker.id, scope)
        since = self.store.query_since(working, scope)
        observed_at = self.now()

        fetcher = StoryChangeFetcher(self.client_for(tracker))
        result = await fetcher.fetch(
            scope, since, set(working.seen_change_ids), observed_at
        )

        if result.errors:
            runtime.phase = TrackerPhase.IDLE
            runtime.status_text = result.errors[0]
            runtime.current_stories = []
            return runtime.phase

        diff = diff_classification(working.classified_stories, result.current_stories)
        notified_at = None
        if diff.should_notify and self.store.has_tracker(tracker.id):
            sent = await self.engine_for(tracker).notify_testing_required_change(
                diff.added, diff.removed, tracker_name=tracker.name
            )
            self.metrics.record_notification(len(sent))
            notified_at = isoformat_utc(self.now())

        applied = self.store.apply_poll(
            tracker.id, scope, working, result, diff.current, notified_at
        )
        if not applied:
            return TrackerPhase.IDLE

        runtime.phase = TrackerPhase.SUCCESS
        runtime.current_stories = result.current_stories
        runtime.last_success_at = observed_at
        runtime.status_text = (
            f"Stories: {len(result.current_stories)}. "
            f"Last poll {round(result.api_latency_ms)}ms."
        )
        self.metrics.record_tracker_poll(
            tracker.id,
            result.api_latency_ms,
            len(result.current_stories),
            len(result.new_changes),
        )
        logger.info(
            "Tracker polled",
            tracker_id=tracker.id,
            stories=len(result.current_stories),
            new_changes=len(result.new_changes),
            since=since,
            latency_ms=round(result.api_latency_ms),
        )
        return runtime.phase

    async def aclose(self) -> None:
        await self.stop_polling()
        await self.executor.aclose()
