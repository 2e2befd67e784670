from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, ConfigDict

from helpdesk.core.responses import envelope
from helpdesk.dependencies.auth import CurrentUser
from helpdesk.dependencies.services import NotificationServiceDep

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    title: str
    message: str
    type: str
    link: str | None
    is_read: bool
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    unread_count: int


@router.get("")
async def list_notifications(
    service: NotificationServiceDep,
    user: CurrentUser,
    is_read: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> dict[str, Any]:
    result = await service.list_notifications(user.id, is_read=is_read, page=page, limit=limit)
    body = NotificationListResponse(
        notifications=[NotificationResponse.model_validate(item) for item in result.notifications],
        unread_count=result.unread_count,
    )
    return envelope(True, "Notifications retrieved successfully", data=body)


@router.put("/read-all")
async def mark_all_as_read(service: NotificationServiceDep, user: CurrentUser) -> dict[str, Any]:
    await service.mark_all_as_read(user.id)
    return envelope(True, "All notifications marked as read")


@router.put("/{notification_id}/read")
async def mark_as_read(notification_id: int, service: NotificationServiceDep, user: CurrentUser) -> dict[str, Any]:
    await service.mark_as_read(notification_id, user.id)
    return envelope(True, "Notification marked as read")


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: int, service: NotificationServiceDep, user: CurrentUser
) -> dict[str, Any]:
    await service.delete_notification(notification_id, user.id)
    return envelope(True, "Notification deleted successfully")
