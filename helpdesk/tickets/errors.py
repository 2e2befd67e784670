from __future__ import annotations

from helpdesk.core.errors import (
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)


class TicketNotFoundError(NotFoundError):
    default_message = "Ticket not found"


class CommentNotFoundError(NotFoundError):
    default_message = "Comment not found"


class TicketAccessDeniedError(AccessDeniedError):
    """Customer acting on a ticket they do not own."""


class TicketFieldPermissionError(PermissionDeniedError):
    """Customer attempting to write a staff-only workflow field."""

    default_message = "You can only update subject and description"


class NoFieldsToUpdateError(ValidationError):
    default_message = "No fields to update"


class TicketValidationError(ValidationError):
    pass


class TicketNumberConflictError(ConflictError):
    default_message = "Could not allocate a unique ticket number"


class TicketTransitionConflictError(ConflictError):
    pass
