"""In-app notifications."""

from .service import (
    Notification,
    NotificationNotFoundError,
    NotificationPage,
    NotificationRepository,
    NotificationService,
    NotificationType,
)

__all__ = [
    "Notification",
    "NotificationNotFoundError",
    "NotificationPage",
    "NotificationRepository",
    "NotificationService",
    "NotificationType",
]
