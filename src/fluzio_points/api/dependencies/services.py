from functools import lru_cache

from fluzio_points.services.notifications import NotificationService, build_notification_service


@lru_cache
def get_notification_service() -> NotificationService:
    return build_notification_service()
