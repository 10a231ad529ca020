"""
Notification delivery for Sprint Watch.

The ``NotificationEngine`` turns "testing required" membership changes into
messages and hands them to every configured sink. Sinks never raise: a failed
delivery is logged and polling carries on.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
import structlog

from .models import StoryRef

logger = structlog.get_logger(__name__)

SUMMARY_TITLE = "Testing required updated"
SUMMARY_TAG = "testing-required-summary"
SUMMARY_PREVIEW_COUNT = 5


@dataclass(frozen=True)
class Notification:
    """A single message to deliver."""

    title: str
    body: str
    tag: str


class NotificationSink(ABC):
    """Destination for notifications."""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver one notification."""
        pass


class LogNotificationSink(NotificationSink):
    """Writes notifications to the application log."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notification",
            title=notification.title,
            body=notification.body,
            tag=notification.tag,
        )


class TeamsWebhookSink(NotificationSink):
    """Posts notifications to a Microsoft Teams incoming webhook as MessageCards."""

    def __init__(self, webhook_url: str, timeout_seconds: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds

    def build_payload(self, notification: Notification) -> dict[str, str]:
        return {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "summary": notification.title,
            "title": notification.title,
            "text": notification.body,
        }

    async def send(self, notification: Notification) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.webhook_url, json=self.build_payload(notification)
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "Failed to post Teams notification", tag=notification.tag, error=str(e)
            )


def build_change_notifications(
    added: list[StoryRef], removed: list[StoryRef]
) -> list[Notification]:
    notifications = [
        Notification(
            title=story.formatted_id,
            body=f"{story.formatted_id} is ready for validation.",
            tag=f"testing-required-added-{story.story_id}",
        )
        for story in added
    ]
    notifications.extend(
        Notification(
            title=story.formatted_id,
            body=f"{story.formatted_id} is no longer ready for validation.",
            tag=f"testing-required-removed-{story.story_id}",
        )
        for story in removed
    )
    return notifications


def build_summary(notifications: list[Notification]) -> Notification:
    ids = ", ".join(n.title for n in notifications[:SUMMARY_PREVIEW_COUNT])
    suffix = ", ..." if len(notifications) > SUMMARY_PREVIEW_COUNT else ""
    return Notification(
        title=SUMMARY_TITLE, body=f"Stories changed: {ids}{suffix}", tag=SUMMARY_TAG
    )


class NotificationEngine:
    """Builds "testing required" messages and dispatches them to sinks."""

    def __init__(
        self, sinks: list[NotificationSink] | None = None, summary_threshold: int = 5
    ) -> None:
        self.sinks = sinks if sinks is not None else [LogNotificationSink()]
        self.summary_threshold = summary_threshold

    async def notify_testing_required_change(
        self,
        added: list[StoryRef],
        removed: list[StoryRef],
        tracker_name: str | None = None,
    ) -> list[Notification]:
        """
        Notify about stories entering or leaving the testing-required set.

        Args:
            added: Stories that became testing-required
            removed: Stories that are no longer testing-required
            tracker_name: Tracker the change belongs to, for log context

        Returns:
            The notifications dispatched (empty if there was nothing to say)
        """
        if not added and not removed:
            return []

        notifications = build_change_notifications(added, removed)
        if len(notifications) > self.summary_threshold:
            notifications = [build_summary(notifications)]

        logger.info(
            "Dispatching testing required notifications",
            tracker=tracker_name,
            added=len(added),
            removed=len(removed),
            messages=len(notifications),
        )

        for notification in notifications:
            await self.dispatch(notification)
        return notifications

    async def dispatch(self, notification: Notification) -> None:
        for sink in self.sinks:
            try:
                await sink.send(notification)
            except Exception as e:
                logger.error(
                    "Notification sink failed",
                    sink=type(sink).__name__,
                    tag=notification.tag,
                    error=str(e),
                )


def create_notification_engine(
    teams_webhook_url: str = "", summary_threshold: int = 5
) -> NotificationEngine:
    """Engine with the log sink plus a Teams sink when a webhook is configured."""
    sinks: list[NotificationSink] = [LogNotificationSink()]
    if teams_webhook_url:
        sinks.append(TeamsWebhookSink(teams_webhook_url))
    return NotificationEngine(sinks, summary_threshold)
