from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field

from helpdesk.core.responses import envelope
from helpdesk.dependencies.auth import CurrentUser
from helpdesk.dependencies.services import FollowerServiceDep
from helpdesk.tickets.models import TicketFollower

router = APIRouter(prefix="/api/followers", tags=["followers"])


class FollowRequest(BaseModel):
    user_id: int | None = Field(default=None, gt=0)


class FollowerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str | None
    email: str | None
    role: str | None
    created_at: datetime


def _to_response(followers: list[TicketFollower]) -> list[FollowerResponse]:
    return [FollowerResponse.model_validate(follower) for follower in followers]


@router.get("/ticket/{ticket_id}")
async def list_followers(ticket_id: int, service: FollowerServiceDep, user: CurrentUser) -> dict[str, Any]:
    followers = await service.list_followers(ticket_id, user)
    return envelope(True, "Followers retrieved successfully", data=_to_response(followers))


@router.get("/ticket/{ticket_id}/check")
async def check_following(ticket_id: int, service: FollowerServiceDep, user: CurrentUser) -> dict[str, Any]:
    following = await service.is_following(ticket_id, user)
    return envelope(True, "Follow status retrieved successfully", data={"is_following": following})


@router.post("/ticket/{ticket_id}", status_code=status.HTTP_201_CREATED)
async def follow_ticket(
    ticket_id: int,
    service: FollowerServiceDep,
    user: CurrentUser,
    payload: FollowRequest | None = None,
) -> dict[str, Any]:
    followers = await service.follow(ticket_id, user, user_id=payload.user_id if payload else None)
    return envelope(True, "Ticket followed successfully", data=_to_response(followers))


@router.delete("/ticket/{ticket_id}")
async def unfollow_ticket(ticket_id: int, service: FollowerServiceDep, user: CurrentUser) -> dict[str, Any]:
    await service.unfollow(ticket_id, user)
    return envelope(True, "Ticket unfollowed successfully")


@router.delete("/ticket/{ticket_id}/user/{user_id}")
async def remove_follower(
    ticket_id: int,
    user_id: int,
    service: FollowerServiceDep,
    user: CurrentUser,
) -> dict[str, Any]:
    await service.unfollow(ticket_id, user, user_id=user_id)
    return envelope(True, "Follower removed successfully")
