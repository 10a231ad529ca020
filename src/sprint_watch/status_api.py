"""
Status and control routes for Sprint Watch.

This module exposes read-only JSON views of every tracker's live stories,
change history and testing-required set, plus tracker management, a forced
refresh and credential replacement.
"""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from .exceptions import ConfigurationIncompleteError
from .models import TrackerConfig, isoformat_utc
from .polling.orchestrator import PollingOrchestrator
from .trackers import DEFAULT_POLL_INTERVAL, DEFAULT_TIMEZONE, generate_tracker_id

logger = structlog.get_logger(__name__)


class TrackerCreateRequest(BaseModel):
    """Body of a tracker creation request."""

    name: str = ""
    workspace_id: str
    project_ids: list[str] = Field(min_length=1)
    iteration_id: str = ""
    iteration_name: str = ""
    iteration_start_date: str = ""
    project_names: list[str] = Field(default_factory=list)
    base_url: str = ""
    poll_interval_minutes: int = DEFAULT_POLL_INTERVAL
    timezone: str = DEFAULT_TIMEZONE
    teams_webhook_url: str | None = None


class CredentialsRequest(BaseModel):
    """Body of a credential replacement request."""

    api_key: str = Field(min_length=1)


class StatusAPI:
    """
    Status and control routes.

    Every route reads the orchestrator from ``request.app.state``, which the
    application lifespan populates.
    """

    def __init__(self) -> None:
        self.router = APIRouter()
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.router.get("/trackers")(self.list_trackers)
        self.router.post("/trackers", status_code=201)(self.create_tracker)
        self.router.delete("/trackers/{tracker_id}")(self.delete_tracker)
        self.router.get("/trackers/{tracker_id}/stories")(self.tracker_stories)
        self.router.get("/trackers/{tracker_id}/changes")(self.tracker_changes)
        self.router.get("/trackers/{tracker_id}/testing-required")(
            self.tracker_testing_required
        )
        self.router.post("/trackers/{tracker_id}/refresh")(self.refresh)
        self.router.post("/credentials")(self.update_credentials)
        self.router.get("/metrics")(self.metrics)

    def _orchestrator(self, request: Request) -> PollingOrchestrator:
        orchestrator = getattr(request.app.state, "orchestrator", None)
        if orchestrator is None:
            raise HTTPException(status_code=503, detail="Polling is not initialized")
        return orchestrator

    def _tracker(self, orchestrator: PollingOrchestrator, tracker_id: str) -> TrackerConfig:
        tracker = orchestrator.registry.get(tracker_id)
        if tracker is None:
            raise HTTPException(status_code=404, detail=f"Unknown tracker: {tracker_id}")
        return tracker

    async def list_trackers(self, request: Request) -> dict[str, Any]:
        orchestrator = self._orchestrator(request)
        trackers = []
        for tracker in orchestrator.registry.list_trackers():
            state = orchestrator.store.get(tracker.id)
            trackers.append(
                {
                    **tracker.to_dict(),
                    **orchestrator.runtime_for(tracker.id).to_dict(),
                    "lastCheckedAt": state.last_checked_at if state else None,
                }
            )
        return {
            "activeTrackerId": orchestrator.store.active_tracker_id,
            "running": orchestrator.is_running(),
            "halted": orchestrator.halted,
            "trackers": trackers,
        }

    async def create_tracker(
        self, request: Request, body: TrackerCreateRequest
    ) -> dict[str, Any]:
        orchestrator = self._orchestrator(request)
        tracker = TrackerConfig(
            id=generate_tracker_id(),
            name=body.name.strip() or body.iteration_name or "Sprint Tracker",
            workspace_id=body.workspace_id,
            project_ids=body.project_ids,
            iteration_id=body.iteration_id,
            base_url=body.base_url or orchestrator.rally_config.base_url,
            created_at=isoformat_utc(orchestrator.now()),
            project_names=body.project_names,
            iteration_name=body.iteration_name,
            iteration_start_date=body.iteration_start_date,
            poll_interval_minutes=body.poll_interval_minutes,
            timezone=body.timezone,
            teams_webhook_url=body.teams_webhook_url or None,
        )
        try:
            orchestrator.add_tracker(tracker)
        except ConfigurationIncompleteError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return tracker.to_dict()

    async def delete_tracker(self, request: Request, tracker_id: str) -> dict[str, str]:
        orchestrator = self._orchestrator(request)
        if not orchestrator.remove_tracker(tracker_id):
            raise HTTPException(status_code=404, detail=f"Unknown tracker: {tracker_id}")
        return {"status": "deleted", "id": tracker_id}

    async def tracker_stories(self, request: Request, tracker_id: str) -> dict[str, Any]:
        orchestrator = self._orchestrator(request)
        self._tracker(orchestrator, tracker_id)
        runtime = orchestrator.runtime_for(tracker_id)
        return {
            "trackerId": tracker_id,
            "statusText": runtime.status_text,
            "stories": [story.to_dict() for story in runtime.current_stories],
        }

    async def tracker_changes(self, request: Request, tracker_id: str) -> dict[str, Any]:
        orchestrator = self._orchestrator(request)
        self._tracker(orchestrator, tracker_id)
        state = orchestrator.store.get(tracker_id)
        history = state.history if state else []
        return {
            "trackerId": tracker_id,
            "changes": [change.to_dict() for change in history],
        }

    async def tracker_testing_required(
        self, request: Request, tracker_id: str
    ) -> dict[str, Any]:
        orchestrator = self._orchestrator(request)
        self._tracker(orchestrator, tracker_id)
        state = orchestrator.store.get(tracker_id)
        return {
            "trackerId": tracker_id,
            "lastNotificationAt": state.last_notification_at if state else None,
            "stories": (
                [ref.to_dict() for ref in state.classified_stories] if state else []
            ),
        }

    async def refresh(self, request: Request, tracker_id: str) -> dict[str, Any]:
        """Force a polling pass over every tracker."""
        orchestrator = self._orchestrator(request)
        self._tracker(orchestrator, tracker_id)

        if orchestrator.pass_in_flight:
            raise HTTPException(status_code=409, detail="A polling pass is in flight")
        if orchestrator.halted or not orchestrator.api_key:
            raise HTTPException(
                status_code=409, detail="Polling is halted. Update API key."
            )

        ran = await orchestrator.poll_due_trackers(force=True)
        if not ran:
            raise HTTPException(status_code=409, detail="A polling pass is in flight")
        return {
            "trackerId": tracker_id,
            **orchestrator.runtime_for(tracker_id).to_dict(),
        }

    async def update_credentials(
        self, request: Request, body: CredentialsRequest
    ) -> dict[str, str]:
        orchestrator = self._orchestrator(request)
        orchestrator.update_credentials(body.api_key.strip())
        logger.info("API key replaced")
        return {"status": "updated"}

    async def metrics(self, request: Request) -> dict[str, Any]:
        orchestrator = self._orchestrator(request)
        return {
            "global": orchestrator.metrics.get_global_summary(),
            "health": orchestrator.metrics.get_health_indicators(),
            "trackers": orchestrator.metrics.get_tracker_summary(),
        }
