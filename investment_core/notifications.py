"""
Notification Sink Module

Investor-facing notifications for lifecycle events (placement, approval,
payout, withdrawal, maturity). Delivery is fire-and-forget: ``notify_safely``
logs and swallows sink failures so a notification problem never rolls back
or blocks a financial transition.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any
import uuid

import requests

from .storage import StorageInterface
from .logging_config import get_logger, log_action

logger = get_logger("investment_core.notifications")


class NotificationCategory(Enum):
    INVESTMENT = "investment"
    PAYOUT = "payout"
    WITHDRAWAL = "withdrawal"
    MATURITY = "maturity"
    SYSTEM = "system"


class NotificationSink(ABC):
    """Abstract destination for investor notifications"""

    @abstractmethod
    def notify(self, user_id: str, title: str, message: str,
               category: NotificationCategory,
               metadata: Optional[Dict[str, Any]] = None) -> None:
        """Deliver a notification; raise on delivery failure"""
        pass


class LogNotificationSink(NotificationSink):
    """Writes notifications to the structured log"""

    def notify(self, user_id, title, message, category, metadata=None):
        log_action(logger, "info", f"{title}: {message}",
                   user_id=user_id, action="notify", resource=category.value,
                   extra=metadata)


class InAppNotificationSink(NotificationSink):
    """Stores notifications for in-app display"""

    def __init__(self, storage: StorageInterface, table: str = "in_app_notifications"):
        self.storage = storage
        self.table = table

    def notify(self, user_id, title, message, category, metadata=None):
        now = datetime.now(timezone.utc).isoformat()
        record = {
            "id": str(uuid.uuid4()),
            "created_at": now,
            "updated_at": now,
            "recipient_id": user_id,
            "category": category.value,
            "title": title,
            "message": message,
            "read": False,
            "metadata": metadata or {}
        }
        self.storage.save(self.table, record["id"], record)

    def get_notifications(self, user_id: str, unread_only: bool = False) -> List[Dict[str, Any]]:
        filters = {"recipient_id": user_id}
        if unread_only:
            filters["read"] = False
        records = self.storage.find(self.table, filters)
        return sorted(records, key=lambda r: r["created_at"], reverse=True)

    def mark_as_read(self, notification_id: str) -> bool:
        record = self.storage.load(self.table, notification_id)
        if not record:
            return False
        record["read"] = True
        record["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table, notification_id, record)
        return True


class WebhookNotificationSink(NotificationSink):
    """Posts notifications to an external webhook endpoint"""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, user_id, title, message, category, metadata=None):
        payload = {
            "notification_id": str(uuid.uuid4()),
            "recipient_id": user_id,
            "category": category.value,
            "title": title,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metadata": metadata or {}
        }
        response = self.session.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()


class CompositeNotificationSink(NotificationSink):
    """Fans a notification out to several sinks; one failing sink does not stop the rest"""

    def __init__(self, sinks: List[NotificationSink]):
        self.sinks = list(sinks)

    def notify(self, user_id, title, message, category, metadata=None):
        for sink in self.sinks:
            notify_safely(sink, user_id, title, message, category, metadata)


def notify_safely(sink: Optional[NotificationSink], user_id: str, title: str, message: str,
                  category: NotificationCategory,
                  metadata: Optional[Dict[str, Any]] = None) -> bool:
    """
    Deliver a notification without letting failures escape.

    Returns:
        True if the sink accepted the notification
    """
    if sink is None:
        return False
    try:
        sink.notify(user_id, title, message, category, metadata)
        return True
    except Exception as e:
        log_action(logger, "warning", f"Notification delivery failed: {e}",
                   user_id=user_id, action="notify_failed", resource=category.value,
                   extra={"sink": type(sink).__name__, "title": title})
        return False
