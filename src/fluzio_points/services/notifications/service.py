"""Notification dispatch that never fails the transition it reports on."""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Mapping

from loguru import logger

from fluzio_points.core.settings import settings

from .backend import InMemoryNotificationBackend, LoggingNotificationBackend, NotificationBackend


class NotificationKind(str, Enum):
    """Events the engine reports to users and businesses."""

    MISSION_CANCELLED = "mission_cancelled"
    PARTICIPATION_APPROVED = "participation_approved"
    PARTICIPATION_REJECTED = "participation_rejected"
    COMMITMENT_CONFIRMED = "commitment_confirmed"
    COMMITMENT_JOINED = "commitment_joined"
    COMMITMENT_COMPLETED = "commitment_completed"
    COMMITMENT_CANCELLED = "commitment_cancelled"
    COMMITMENT_NO_SHOW = "commitment_no_show"
    REWARD_UNLOCKED = "reward_unlocked"


class NotificationService:
    """Wraps a backend; delivery errors are logged and swallowed."""

    def __init__(self, backend: NotificationBackend, *, muted_kinds: Iterable[str] = ()) -> None:
        self._backend = backend
        self._muted = frozenset(muted_kinds)

    @property
    def backend(self) -> NotificationBackend:
        return self._backend

    async def notify(self, recipient_id: str | None, kind: NotificationKind, payload: Mapping[str, Any]) -> bool:
        if not recipient_id:
            return False
        if kind.value in self._muted:
            logger.debug("Notification muted", recipient_id=recipient_id, kind=kind.value)
            return False
        try:
            await self._backend.notify(recipient_id, kind.value, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Notification delivery failed",
                recipient_id=recipient_id,
                kind=kind.value,
                error=str(exc),
            )
            return False
        return True

    async def notify_many(
        self,
        recipient_ids: Iterable[str],
        kind: NotificationKind,
        payload: Mapping[str, Any],
    ) -> int:
        delivered = 0
        for recipient_id in dict.fromkeys(recipient_ids):
            if await self.notify(recipient_id, kind, payload):
                delivered += 1
        return delivered


def build_notification_service() -> NotificationService:
    backend: NotificationBackend
    if settings.notification_backend == "memory":
        backend = InMemoryNotificationBackend()
    else:
        backend = LoggingNotificationBackend()
    return NotificationService(backend, muted_kinds=settings.notification_muted_kinds)
