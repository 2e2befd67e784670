from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field, field_validator

from helpdesk.core.config import get_settings
from helpdesk.core.responses import Pagination, envelope
from helpdesk.dependencies.auth import CurrentUser
from helpdesk.dependencies.services import AdminUser, TicketServiceDep
from helpdesk.tickets.models import TicketComment, TicketDetail, TicketHistoryEntry, TicketView
from helpdesk.tickets.state import TicketPriority, TicketStatus

router = APIRouter(prefix="/api/tickets", tags=["tickets"])


def parse_reference_id(value: Any) -> int | None:
    """Lenient id parsing for form data: ``"12"`` -> 12, junk or blanks -> None."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    text = str(value).strip()
    if not text.isdecimal():
        return None
    parsed = int(text)
    return parsed if parsed > 0 else None


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class TicketCreateRequest(BaseModel):
    subject: str | None = None
    description: str | None = None
    category_id: int | None = None
    subcategory_id: int | None = None
    assignment_group_id: int | None = None
    priority: TicketPriority | None = None
    assigned_to: int | None = None
    requester_id: int | None = None
    additional_comments: str | None = None
    work_notes: str | None = None

    @field_validator(
        "category_id", "subcategory_id", "assignment_group_id", "assigned_to", "requester_id", mode="before"
    )
    @classmethod
    def _parse_reference(cls, value: Any) -> int | None:
        return parse_reference_id(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _empty_priority(cls, value: Any) -> Any:
        return _blank_to_none(value)


class TicketUpdateRequest(BaseModel):
    subject: str | None = None
    description: str | None = None
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    assigned_to: int | None = Field(default=None, gt=0)
    resolution: str | None = None

    @field_validator("subject", "description", "status", "priority", "assigned_to", "resolution", mode="before")
    @classmethod
    def _blank_is_absent(cls, value: Any) -> Any:
        return _blank_to_none(value)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_number: str
    customer_id: int
    assigned_to: int | None
    category_id: int | None
    subcategory_id: int | None
    assignment_group_id: int | None
    subject: str
    description: str
    status: TicketStatus
    priority: TicketPriority
    resolution: str | None
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None
    customer_name: str | None = None
    customer_email: str | None = None
    category_name: str | None = None
    subcategory_name: str | None = None
    assignment_group_name: str | None = None
    assigned_to_name: str | None = None
    assigned_to_email: str | None = None


class TicketCommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_id: int
    user_id: int | None
    comment: str
    is_internal: bool
    created_at: datetime
    updated_at: datetime | None = None
    user_name: str | None = None
    user_role: str | None = None


class TicketHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_id: int
    user_id: int | None
    action: str
    old_value: str | None
    new_value: str | None
    created_at: datetime
    user_name: str | None = None
    user_role: str | None = None


class TicketDetailResponse(TicketResponse):
    comments: list[TicketCommentResponse] = Field(default_factory=list)
    history: list[TicketHistoryResponse] = Field(default_factory=list)


class TicketListResponse(BaseModel):
    tickets: list[TicketResponse]
    pagination: Pagination


def to_ticket_response(ticket: TicketView) -> TicketResponse:
    return TicketResponse.model_validate(ticket)


def to_comment_response(comment: TicketComment) -> TicketCommentResponse:
    return TicketCommentResponse.model_validate(comment)


def _to_history_response(entry: TicketHistoryEntry) -> TicketHistoryResponse:
    return TicketHistoryResponse.model_validate(entry)


def _to_detail_response(detail: TicketDetail) -> TicketDetailResponse:
    base = to_ticket_response(detail.ticket).model_dump()
    return TicketDetailResponse(
        **base,
        comments=[to_comment_response(comment) for comment in detail.comments],
        history=[_to_history_response(entry) for entry in detail.history],
    )


def parse_ticket_ids(raw: str | None) -> list[int]:
    if not raw:
        return []
    ids: list[int] = []
    for part in raw.split(","):
        parsed = parse_reference_id(part)
        if parsed is not None:
            ids.append(parsed)
    return ids


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, service: TicketServiceDep, user: CurrentUser) -> dict[str, Any]:
    ticket = await service.create_ticket(
        user,
        subject=payload.subject,
        description=payload.description,
        category_id=payload.category_id,
        subcategory_id=payload.subcategory_id,
        assignment_group_id=payload.assignment_group_id,
        priority=payload.priority,
        assigned_to=payload.assigned_to,
        requester_id=payload.requester_id,
        additional_comments=payload.additional_comments,
        work_notes=payload.work_notes,
    )
    return envelope(True, "Ticket created successfully", data=to_ticket_response(ticket))


@router.get("")
async def list_tickets(
    service: TicketServiceDep,
    user: CurrentUser,
    status_filter: TicketStatus | None = Query(default=None, alias="status"),
    priority: TicketPriority | None = Query(default=None),
    category_id: int | None = Query(default=None),
    assigned_to: int | None = Query(default=None),
    unassigned: bool = Query(default=False),
    followed: bool = Query(default=False),
    ticket_ids: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
) -> dict[str, Any]:
    settings = get_settings()
    limit = min(limit or settings.default_page_size, settings.max_page_size)
    result = await service.list_tickets(
        user,
        status=status_filter,
        priority=priority,
        category_id=category_id,
        assigned_to=assigned_to,
        unassigned=unassigned,
        followed=followed,
        ticket_ids=parse_ticket_ids(ticket_ids),
        page=page,
        limit=limit,
    )
    body = TicketListResponse(
        tickets=[to_ticket_response(ticket) for ticket in result.tickets],
        pagination=Pagination.from_query(total=result.total, page=result.page, limit=result.limit),
    )
    return envelope(True, "Tickets retrieved successfully", data=body)


@router.get("/next-number")
async def next_ticket_number(service: TicketServiceDep, _: CurrentUser) -> dict[str, Any]:
    ticket_number = await service.next_ticket_number()
    return envelope(True, "Next ticket number generated", data={"ticket_number": ticket_number})


@router.get("/{ticket_id}")
async def get_ticket(ticket_id: int, service: TicketServiceDep, user: CurrentUser) -> dict[str, Any]:
    detail = await service.get_ticket(user, ticket_id)
    return envelope(True, "Ticket retrieved successfully", data=_to_detail_response(detail))


@router.put("/{ticket_id}")
async def update_ticket(
    ticket_id: int,
    payload: TicketUpdateRequest,
    request: Request,
    service: TicketServiceDep,
    user: CurrentUser,
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_none=True)
    # The audit entry keeps the body exactly as sent, unknown keys and blanks included.
    ticket = await service.update_ticket(user, ticket_id, changes, request_body=await request.json())
    return envelope(True, "Ticket updated successfully", data=to_ticket_response(ticket))


@router.delete("/{ticket_id}")
async def delete_ticket(ticket_id: int, service: TicketServiceDep, _: AdminUser) -> dict[str, Any]:
    await service.delete_ticket(ticket_id)
    return envelope(True, "Ticket deleted successfully")
