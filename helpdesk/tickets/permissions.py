"""Role based, field level write rules for tickets.

Staff (``employee``/``admin``) may write every updatable field. Customers may
only touch ``subject`` and ``description`` of their own tickets; an update
that carries any workflow field is rejected as a whole rather than applied
partially.

At creation time the staff-only inputs (``requester_id``, ``assigned_to``,
``assignment_group_id``, ``work_notes``) are dropped for customers instead of
rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from helpdesk.dependencies.auth import User

from .errors import NoFieldsToUpdateError, TicketAccessDeniedError, TicketFieldPermissionError
from .models import Ticket

CONTENT_FIELDS: frozenset[str] = frozenset({"subject", "description"})
WORKFLOW_FIELDS: frozenset[str] = frozenset({"status", "priority", "assigned_to", "resolution"})
UPDATABLE_FIELDS: frozenset[str] = CONTENT_FIELDS | WORKFLOW_FIELDS


@dataclass(slots=True, frozen=True)
class CreationOverrides:
    """Staff-only creation inputs that survived the role check."""

    requester_id: int | None = None
    assigned_to: int | None = None
    assignment_group_id: int | None = None
    work_notes: str | None = None


class TicketPermissionPolicy:
    def ensure_can_access(self, actor: User, ticket: Ticket) -> None:
        if not actor.is_staff and ticket.customer_id != actor.id:
            raise TicketAccessDeniedError("Access denied")

    def filter_update(self, actor: User, ticket: Ticket, requested: Mapping[str, Any]) -> dict[str, Any]:
        """Return the fields ``actor`` may write, or raise for the whole request.

        ``requested`` holds only the fields present in the request; unknown
        keys are ignored.
        """

        self.ensure_can_access(actor, ticket)

        fields = {name: value for name, value in requested.items() if name in UPDATABLE_FIELDS}
        if not actor.is_staff and WORKFLOW_FIELDS.intersection(fields):
            raise TicketFieldPermissionError()

        if not fields:
            raise NoFieldsToUpdateError()
        return fields

    def creation_overrides(
        self,
        actor: User,
        *,
        requester_id: int | None = None,
        assigned_to: int | None = None,
        assignment_group_id: int | None = None,
        work_notes: str | None = None,
    ) -> CreationOverrides:
        if not actor.is_staff:
            return CreationOverrides()
        return CreationOverrides(
            requester_id=requester_id,
            assigned_to=assigned_to,
            assignment_group_id=assignment_group_id,
            work_notes=work_notes,
        )
