from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Sequence

from .state import TicketPriority, TicketStatus


class HistoryAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    COMMENT_ADDED = "comment_added"
    WORK_NOTE_ADDED = "work_note_added"


@dataclass(slots=True)
class Ticket:
    """A ticket row as stored, without any joined lookup names."""

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

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe copy of the row, used as the ``old_value`` of audit entries."""

        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
        return data


@dataclass(slots=True)
class TicketView(Ticket):
    """Denormalized ticket joined with the names of everything it references."""

    customer_name: str | None = None
    customer_email: str | None = None
    category_name: str | None = None
    subcategory_name: str | None = None
    assignment_group_name: str | None = None
    assigned_to_name: str | None = None
    assigned_to_email: str | None = None


@dataclass(slots=True)
class TicketComment:
    id: int
    ticket_id: int
    user_id: int | None
    comment: str
    is_internal: bool
    created_at: datetime
    updated_at: datetime | None = None
    user_name: str | None = None
    user_role: str | None = None


@dataclass(slots=True)
class TicketHistoryEntry:
    """Immutable audit record of a single mutation event on a ticket."""

    id: int
    ticket_id: int
    user_id: int | None
    action: str
    old_value: str | None
    new_value: str | None
    created_at: datetime
    user_name: str | None = None
    user_role: str | None = None


@dataclass(slots=True)
class TicketDetail:
    """Container bundling the ticket view with its comments and history."""

    ticket: TicketView
    comments: Sequence[TicketComment]
    history: Sequence[TicketHistoryEntry]


@dataclass(slots=True)
class TicketFollower:
    id: int
    name: str | None
    email: str | None
    role: str | None
    created_at: datetime


@dataclass(slots=True)
class TicketListFilters:
    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    category_id: int | None = None
    customer_id: int | None = None
    assigned_to: int | None = None
    unassigned: bool = False
    followed_by: int | None = None
    ticket_ids: Sequence[int] = field(default_factory=tuple)


@dataclass(slots=True)
class TicketPage:
    tickets: Sequence[TicketView]
    total: int
    page: int
    limit: int
