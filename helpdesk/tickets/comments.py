from __future__ import annotations

import logging

from helpdesk.dependencies.auth import Role, User

from .errors import CommentNotFoundError, TicketAccessDeniedError, TicketNotFoundError, TicketValidationError
from .history import TicketHistoryRecorder
from .models import HistoryAction, TicketComment
from .permissions import TicketPermissionPolicy
from .repository import TicketRepository

logger = logging.getLogger(__name__)


class TicketCommentService:
    """Comments on a ticket.

    Every mutation bumps the parent ticket's ``updated_at`` in the same
    transaction; additions are also written to the ticket history.
    """

    def __init__(
        self,
        repository: TicketRepository,
        *,
        history: TicketHistoryRecorder,
        policy: TicketPermissionPolicy | None = None,
    ) -> None:
        self._repository = repository
        self._history = history
        self._policy = policy or TicketPermissionPolicy()

    async def add_comment(self, actor: User, ticket_id: int, *, comment: str | None, is_internal: bool = False) -> TicketComment:
        text = (comment or "").strip()
        if not text:
            raise TicketValidationError("Comment is required")

        # Customers cannot write internal comments.
        internal = bool(is_internal) and actor.is_staff
        async with self._repository.transaction() as connection:
            ticket = await self._repository.get_ticket(ticket_id, connection=connection)
            if ticket is None:
                raise TicketNotFoundError()
            self._policy.ensure_can_access(actor, ticket)

            comment_id = await self._repository.insert_comment(
                ticket_id=ticket_id,
                user_id=actor.id,
                comment=text,
                is_internal=internal,
                connection=connection,
            )
            await self._history.record(
                ticket_id=ticket_id,
                user_id=actor.id,
                action=HistoryAction.WORK_NOTE_ADDED if internal else HistoryAction.COMMENT_ADDED,
                new_value={"type": "work_note" if internal else "comment", "text": text},
                connection=connection,
            )
            await self._repository.touch_ticket(ticket_id, connection=connection)
            created = await self._repository.get_comment(comment_id, connection=connection)

        if created is None:
            raise CommentNotFoundError()
        logger.info("Comment %s added to ticket %s by user %s", created.id, ticket_id, actor.id)
        return created

    async def list_comments(self, actor: User, ticket_id: int) -> list[TicketComment]:
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError()
        self._policy.ensure_can_access(actor, ticket)
        return await self._repository.list_comments(ticket_id, include_internal=actor.is_staff)

    async def update_comment(self, actor: User, ticket_id: int, comment_id: int, *, comment: str | None) -> TicketComment:
        text = (comment or "").strip()
        if not text:
            raise TicketValidationError("Comment is required")

        async with self._repository.transaction() as connection:
            existing = await self._load_comment(ticket_id, comment_id, connection)
            if existing.user_id != actor.id:
                raise TicketAccessDeniedError("You can only update your own comments")
            await self._repository.update_comment(comment_id, text, connection=connection)
            await self._repository.touch_ticket(ticket_id, connection=connection)
            updated = await self._repository.get_comment(comment_id, connection=connection)

        if updated is None:
            raise CommentNotFoundError()
        return updated

    async def delete_comment(self, actor: User, ticket_id: int, comment_id: int) -> None:
        async with self._repository.transaction() as connection:
            existing = await self._load_comment(ticket_id, comment_id, connection)
            if existing.user_id != actor.id and actor.role is not Role.ADMIN:
                raise TicketAccessDeniedError("Access denied")
            await self._repository.delete_comment(comment_id, connection=connection)
            await self._repository.touch_ticket(ticket_id, connection=connection)
        logger.info("Comment %s deleted from ticket %s by user %s", comment_id, ticket_id, actor.id)

    async def _load_comment(self, ticket_id: int, comment_id: int, connection) -> TicketComment:
        existing = await self._repository.get_comment(comment_id, connection=connection)
        if existing is None or existing.ticket_id != ticket_id:
            raise CommentNotFoundError()
        return existing
