from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence

from helpdesk.core.errors import NotFoundError

logger = logging.getLogger(__name__)


class NotificationNotFoundError(NotFoundError):
    default_message = "Notification not found"


class NotificationType(str, Enum):
    TICKET_ASSIGNED = "ticket_assigned"
    TICKET_STATUS_CHANGED = "ticket_status_changed"


@dataclass(slots=True)
class Notification:
    id: int
    user_id: int
    title: str
    message: str
    type: str
    link: str | None
    is_read: bool
    created_at: datetime


@dataclass(slots=True)
class NotificationPage:
    notifications: Sequence[Notification]
    unread_count: int


class NotificationRepository:
    """Persistence helper wrapping the ``notifications`` table."""

    _CREATE_NOTIFICATIONS_SQL = """
    CREATE TABLE IF NOT EXISTS notifications (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        type TEXT NOT NULL,
        link TEXT NULL,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _INSERT_SQL = """
    INSERT INTO notifications (user_id, title, message, type, link)
    VALUES ($1, $2, $3, $4, $5)
    """

    _SELECT_SQL = """
    SELECT id, user_id, title, message, type, link, is_read, created_at
    FROM notifications
    WHERE user_id = $1 AND ($2::boolean IS NULL OR is_read = $2)
    ORDER BY created_at DESC, id DESC
    LIMIT $3 OFFSET $4
    """

    _UNREAD_COUNT_SQL = """
    SELECT COUNT(*) FROM notifications WHERE user_id = $1 AND is_read = FALSE
    """

    _MARK_READ_SQL = """
    UPDATE notifications SET is_read = TRUE WHERE id = $1 AND user_id = $2 RETURNING id
    """

    _MARK_ALL_READ_SQL = """
    UPDATE notifications SET is_read = TRUE WHERE user_id = $1 AND is_read = FALSE
    """

    _DELETE_SQL = """
    DELETE FROM notifications WHERE id = $1 AND user_id = $2 RETURNING id
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_NOTIFICATIONS_SQL)

    async def insert(self, *, user_id: int, title: str, message: str, type: str, link: str | None) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._INSERT_SQL, user_id, title, message, type, link)

    async def list_for_user(
        self, user_id: int, *, is_read: bool | None, limit: int, offset: int
    ) -> tuple[list[Notification], int]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_SQL, user_id, is_read, limit, offset)
            unread = await connection.fetchval(self._UNREAD_COUNT_SQL, user_id)
        return [self._row_to_notification(row) for row in rows], int(unread or 0)

    async def mark_read(self, notification_id: int, user_id: int) -> bool:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._MARK_READ_SQL, notification_id, user_id)
        return row is not None

    async def mark_all_read(self, user_id: int) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._MARK_ALL_READ_SQL, user_id)

    async def delete(self, notification_id: int, user_id: int) -> bool:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._DELETE_SQL, notification_id, user_id)
        return row is not None

    @staticmethod
    def _row_to_notification(row: Mapping[str, Any]) -> Notification:
        return Notification(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            title=str(row["title"]),
            message=str(row["message"]),
            type=str(row["type"]),
            link=row["link"],
            is_read=bool(row["is_read"]),
            created_at=row["created_at"],
        )


class NotificationService:
    """In-app notifications for ticket participants."""

    def __init__(self, repository: NotificationRepository) -> None:
        self._repository = repository

    async def ensure_schema(self) -> None:
        await self._repository.ensure_schema()

    async def create_notification(
        self,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType | str,
        link: str | None = None,
    ) -> bool:
        """Store a notification; a failure is logged and reported as ``False``.

        Callers treat this as fire-and-forget, so it never raises.
        """

        kind = type.value if isinstance(type, NotificationType) else str(type)
        try:
            await self._repository.insert(user_id=user_id, title=title, message=message, type=kind, link=link)
        except Exception:
            logger.warning("Failed to create %s notification for user %s", kind, user_id, exc_info=True)
            return False
        return True

    async def list_notifications(
        self, user_id: int, *, is_read: bool | None = None, page: int = 1, limit: int = 20
    ) -> NotificationPage:
        offset = (page - 1) * limit
        notifications, unread = await self._repository.list_for_user(
            user_id, is_read=is_read, limit=limit, offset=offset
        )
        return NotificationPage(notifications=notifications, unread_count=unread)

    async def mark_as_read(self, notification_id: int, user_id: int) -> None:
        if not await self._repository.mark_read(notification_id, user_id):
            raise NotificationNotFoundError()

    async def mark_all_as_read(self, user_id: int) -> None:
        await self._repository.mark_all_read(user_id)

    async def delete_notification(self, notification_id: int, user_id: int) -> None:
        if not await self._repository.delete(notification_id, user_id):
            raise NotificationNotFoundError()
