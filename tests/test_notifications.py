"""
Tests for the notification engine and sinks.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import RecordingSink

from sprint_watch.models import StoryRef
from sprint_watch.notifications import (
    SUMMARY_TAG,
    LogNotificationSink,
    Notification,
    NotificationEngine,
    NotificationSink,
    TeamsWebhookSink,
    create_notification_engine,
)

WEBHOOK_URL = "https://teams.example.com/webhook/abc"


def refs(*ids: int) -> list[StoryRef]:
    return [StoryRef(story_id, f"US{story_id}") for story_id in ids]


class FailingSink(NotificationSink):
    async def send(self, notification: Notification) -> None:
        raise RuntimeError("sink down")


class TestNotificationEngine:
    """Test notification building and dispatch."""

    @pytest.mark.asyncio
    async def test_one_message_per_change(self):
        """Test added and removed stories get their own messages."""
        sink = RecordingSink()
        engine = NotificationEngine([sink])

        sent = await engine.notify_testing_required_change(refs(1), refs(2))

        assert sent == sink.sent
        assert [(n.title, n.body, n.tag) for n in sent] == [
            ("US1", "US1 is ready for validation.", "testing-required-added-1"),
            (
                "US2",
                "US2 is no longer ready for validation.",
                "testing-required-removed-2",
            ),
        ]

    @pytest.mark.asyncio
    async def test_nothing_to_say(self):
        sink = RecordingSink()

        sent = await NotificationEngine([sink]).notify_testing_required_change([], [])

        assert sent == []
        assert sink.sent == []

    @pytest.mark.asyncio
    async def test_summary_above_threshold(self):
        """Test more than five messages collapse into one summary."""
        sink = RecordingSink()
        engine = NotificationEngine([sink], summary_threshold=5)

        sent = await engine.notify_testing_required_change(refs(1, 2, 3, 4), refs(5, 6))

        assert len(sent) == 1
        assert sent[0].title == "Testing required updated"
        assert sent[0].tag == SUMMARY_TAG
        assert sent[0].body == "Stories changed: US1, US2, US3, US4, US5, ..."

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self):
        """Test exactly five messages are still sent individually."""
        sink = RecordingSink()

        sent = await NotificationEngine([sink]).notify_testing_required_change(
            refs(1, 2, 3, 4, 5), []
        )

        assert len(sent) == 5

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_delivery(self):
        """Test a failing sink is logged and other sinks still receive messages."""
        sink = RecordingSink()
        engine = NotificationEngine([FailingSink(), sink])

        await engine.notify_testing_required_change(refs(1), [])

        assert len(sink.sent) == 1

    def test_default_engine_sinks(self):
        engine = create_notification_engine()
        assert [type(s) for s in engine.sinks] == [LogNotificationSink]

        engine = create_notification_engine(WEBHOOK_URL, summary_threshold=3)
        assert [type(s) for s in engine.sinks] == [LogNotificationSink, TeamsWebhookSink]
        assert engine.summary_threshold == 3


class TestTeamsWebhookSink:
    """Test Teams webhook delivery."""

    def test_payload(self):
        sink = TeamsWebhookSink(WEBHOOK_URL)
        payload = sink.build_payload(Notification("US1", "US1 is ready.", "tag"))

        assert payload["@type"] == "MessageCard"
        assert payload["title"] == "US1"
        assert payload["text"] == "US1 is ready."

    @pytest.mark.asyncio
    async def test_posts_message_card(self):
        sink = TeamsWebhookSink(WEBHOOK_URL)
        notification = Notification("US1", "US1 is ready.", "tag")
        response = httpx.Response(200, request=httpx.Request("POST", WEBHOOK_URL))

        with patch.object(
            httpx.AsyncClient, "post", new=AsyncMock(return_value=response)
        ) as mock_post:
            await sink.send(notification)

        mock_post.assert_awaited_once_with(
            WEBHOOK_URL, json=sink.build_payload(notification)
        )

    @pytest.mark.asyncio
    async def test_http_errors_are_logged_not_raised(self):
        sink = TeamsWebhookSink(WEBHOOK_URL)

        with patch.object(
            httpx.AsyncClient,
            "post",
            new=AsyncMock(side_effect=httpx.ConnectError("connection refused")),
        ):
            await sink.send(Notification("US1", "US1 is ready.", "tag"))

    @pytest.mark.asyncio
    async def test_error_status_is_logged_not_raised(self):
        sink = TeamsWebhookSink(WEBHOOK_URL)
        response = httpx.Response(500, request=httpx.Request("POST", WEBHOOK_URL))

        with patch.object(
            httpx.AsyncClient, "post", new=AsyncMock(return_value=response)
        ):
            await sink.send(Notification("US1", "US1 is ready.", "tag"))
