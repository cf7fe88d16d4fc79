"""Notification collaborator used after state transitions."""

from .backend import (
    DeliveredNotification,
    InMemoryNotificationBackend,
    LoggingNotificationBackend,
    NotificationBackend,
)
from .service import NotificationKind, NotificationService, build_notification_service

__all__ = [
    "DeliveredNotification",
    "InMemoryNotificationBackend",
    "LoggingNotificationBackend",
    "NotificationBackend",
    "NotificationKind",
    "NotificationService",
    "build_notification_service",
]
