from __future__ import annotations

from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel

from helpdesk.core.responses import envelope
from helpdesk.dependencies.auth import CurrentUser
from helpdesk.dependencies.services import CommentServiceDep

from .tickets import to_comment_response

router = APIRouter(prefix="/api/tickets/{ticket_id}/comments", tags=["comments"])


class CommentCreateRequest(BaseModel):
    comment: str | None = None
    is_internal: bool = False


class CommentUpdateRequest(BaseModel):
    comment: str | None = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: int,
    payload: CommentCreateRequest,
    service: CommentServiceDep,
    user: CurrentUser,
) -> dict[str, Any]:
    comment = await service.add_comment(user, ticket_id, comment=payload.comment, is_internal=payload.is_internal)
    return envelope(True, "Comment added successfully", data=to_comment_response(comment))


@router.get("")
async def list_comments(ticket_id: int, service: CommentServiceDep, user: CurrentUser) -> dict[str, Any]:
    comments = await service.list_comments(user, ticket_id)
    return envelope(
        True,
        "Comments retrieved successfully",
        data=[to_comment_response(comment) for comment in comments],
    )


@router.put("/{comment_id}")
async def update_comment(
    ticket_id: int,
    comment_id: int,
    payload: CommentUpdateRequest,
    service: CommentServiceDep,
    user: CurrentUser,
) -> dict[str, Any]:
    comment = await service.update_comment(user, ticket_id, comment_id, comment=payload.comment)
    return envelope(True, "Comment updated successfully", data=to_comment_response(comment))


@router.delete("/{comment_id}")
async def delete_comment(
    ticket_id: int,
    comment_id: int,
    service: CommentServiceDep,
    user: CurrentUser,
) -> dict[str, Any]:
    await service.delete_comment(user, ticket_id, comment_id)
    return envelope(True, "Comment deleted successfully")
