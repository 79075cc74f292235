"""
Tests for notification sinks
"""

import pytest
import requests
from unittest.mock import Mock

from investment_core.storage import InMemoryStorage
from investment_core.notifications import (
    NotificationCategory, LogNotificationSink, InAppNotificationSink,
    WebhookNotificationSink, CompositeNotificationSink, notify_safely
)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def in_app(storage):
    return InAppNotificationSink(storage)


class TestInAppNotificationSink:

    def test_notify_and_read(self, in_app):
        in_app.notify("alice", "Payout received", "USD 50.00 was paid.",
                      NotificationCategory.PAYOUT, {"investment_id": "I1"})

        notifications = in_app.get_notifications("alice")
        assert len(notifications) == 1
        assert notifications[0]["title"] == "Payout received"
        assert notifications[0]["category"] == "payout"
        assert notifications[0]["metadata"] == {"investment_id": "I1"}
        assert in_app.get_notifications("bob") == []

    def test_mark_as_read(self, in_app):
        in_app.notify("alice", "Hello", "World", NotificationCategory.SYSTEM)
        notification_id = in_app.get_notifications("alice")[0]["id"]

        assert in_app.mark_as_read(notification_id) is True
        assert in_app.get_notifications("alice", unread_only=True) == []
        assert in_app.mark_as_read("missing") is False


class TestWebhookNotificationSink:

    def test_posts_payload(self):
        session = Mock(spec=requests.Session)
        sink = WebhookNotificationSink("https://hooks.example.com/invest", timeout=2.0, session=session)

        sink.notify("alice", "Investment active", "Your investment is active.",
                    NotificationCategory.INVESTMENT)

        args, kwargs = session.post.call_args
        assert args[0] == "https://hooks.example.com/invest"
        assert kwargs["timeout"] == 2.0
        assert kwargs["json"]["recipient_id"] == "alice"
        assert kwargs["json"]["category"] == "investment"
        session.post.return_value.raise_for_status.assert_called_once()

    def test_http_error_propagates(self):
        session = Mock(spec=requests.Session)
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("502")
        sink = WebhookNotificationSink("https://hooks.example.com/invest", session=session)

        with pytest.raises(requests.HTTPError):
            sink.notify("alice", "t", "m", NotificationCategory.SYSTEM)


class TestNotifySafely:

    def test_failure_is_logged_not_raised(self, caplog):
        sink = Mock()
        sink.notify.side_effect = requests.ConnectionError("unreachable")

        with caplog.at_level("WARNING", logger="investment_core.notifications"):
            assert notify_safely(sink, "alice", "t", "m", NotificationCategory.PAYOUT) is False
        assert "Notification delivery failed" in caplog.text

    def test_no_sink(self):
        assert notify_safely(None, "alice", "t", "m", NotificationCategory.PAYOUT) is False

    def test_composite_continues_after_failure(self, in_app):
        broken = Mock()
        broken.notify.side_effect = RuntimeError("down")
        composite = CompositeNotificationSink([broken, LogNotificationSink(), in_app])

        assert notify_safely(composite, "alice", "Matured", "Done", NotificationCategory.MATURITY)
        assert len(in_app.get_notifications("alice")) == 1
