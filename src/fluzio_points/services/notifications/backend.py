"""Delivery backends for the notification collaborator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Protocol

from loguru import logger

from fluzio_points.core.timeutils import utcnow


class NotificationBackend(Protocol):
    """Fire-and-forget delivery of a notification to a recipient."""

    async def notify(self, recipient_id: str, kind: str, payload: Mapping[str, Any]) -> None:
        ...


@dataclass(slots=True)
class DeliveredNotification:
    """Notification captured by the in-memory backend."""

    recipient_id: str
    kind: str
    payload: dict[str, Any]
    delivered_at: datetime = field(default_factory=utcnow)


class LoggingNotificationBackend:
    """Backend that records notifications in the structured log only."""

    async def notify(self, recipient_id: str, kind: str, payload: Mapping[str, Any]) -> None:
        logger.bind(payload=dict(payload)).info("Notification dispatched", recipient_id=recipient_id, kind=kind)


@dataclass
class InMemoryNotificationBackend:
    """Test backend storing outbound notifications in memory."""

    sent: List[DeliveredNotification]

    def __init__(self) -> None:
        self.sent = []

    async def notify(self, recipient_id: str, kind: str, payload: Mapping[str, Any]) -> None:
        self.sent.append(DeliveredNotification(recipient_id=recipient_id, kind=kind, payload=dict(payload)))

    def for_recipient(self, recipient_id: str) -> list[DeliveredNotification]:
        return [item for item in self.sent if item.recipient_id == recipient_id]

    def kinds(self) -> list[str]:
        return [item.kind for item in self.sent]
