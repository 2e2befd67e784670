from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, Request

from helpdesk.core.errors import ServiceUnavailableError
from helpdesk.dependencies.auth import Role, User, role_required
from helpdesk.notifications.service import NotificationService
from helpdesk.tickets.comments import TicketCommentService
from helpdesk.tickets.followers import FollowerService
from helpdesk.tickets.service import TicketService

require_admin = role_required(Role.ADMIN)

AdminUser = Annotated[User, Depends(require_admin)]


def _from_state(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise ServiceUnavailableError("Database is not available")
    return service


async def get_ticket_service(request: Request) -> TicketService:
    return _from_state(request, "ticket_service")


async def get_comment_service(request: Request) -> TicketCommentService:
    return _from_state(request, "comment_service")


async def get_follower_service(request: Request) -> FollowerService:
    return _from_state(request, "follower_service")


async def get_notification_service(request: Request) -> NotificationService:
    return _from_state(request, "notification_service")


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
CommentServiceDep = Annotated[TicketCommentService, Depends(get_comment_service)]
FollowerServiceDep = Annotated[FollowerService, Depends(get_follower_service)]
NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]
