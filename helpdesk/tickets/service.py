from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from asyncpg.exceptions import ForeignKeyViolationError, UniqueViolationError

from helpdesk.dependencies.auth import User
from helpdesk.notifications.service import NotificationService, NotificationType

from .errors import (
    TicketNotFoundError,
    TicketNumberConflictError,
    TicketTransitionConflictError,
    TicketValidationError,
)
from .followers import FollowerService
from .history import TicketHistoryRecorder
from .models import HistoryAction, Ticket, TicketDetail, TicketListFilters, TicketPage, TicketView
from .numbering import TicketNumberGenerator
from .permissions import TicketPermissionPolicy
from .repository import TicketRepository
from .state import InvalidTicketTransitionError, TicketPriority, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)


class TicketService:
    """High level orchestration for the ticket lifecycle.

    Create and update each run in a single transaction: the ticket row, its
    inline comments and its history entries are committed together or not
    at all. Notifications are sent after commit and never undo a change.
    """

    def __init__(
        self,
        repository: TicketRepository,
        *,
        history: TicketHistoryRecorder,
        numbers: TicketNumberGenerator,
        policy: TicketPermissionPolicy | None = None,
        state_machine: TicketStateMachine | None = None,
        notifications: NotificationService | None = None,
        followers: FollowerService | None = None,
        max_number_attempts: int = 3,
    ) -> None:
        self._repository = repository
        self._history = history
        self._numbers = numbers
        self._policy = policy or TicketPermissionPolicy()
        self._state_machine = state_machine or TicketStateMachine()
        self._notifications = notifications
        self._followers = followers
        self._max_number_attempts = max(1, max_number_attempts)

    async def ensure_schema(self) -> None:
        await self._repository.ensure_schema()

    async def next_ticket_number(self) -> str:
        """Preview of the number the next ticket would get; nothing is reserved."""

        return await self._numbers.next_ticket_number()

    async def create_ticket(
        self,
        actor: User,
        *,
        subject: str | None,
        description: str | None,
        category_id: int | None = None,
        subcategory_id: int | None = None,
        assignment_group_id: int | None = None,
        priority: TicketPriority | None = None,
        assigned_to: int | None = None,
        requester_id: int | None = None,
        additional_comments: str | None = None,
        work_notes: str | None = None,
    ) -> TicketView:
        subject = (subject or "").strip()
        description = (description or "").strip()
        if not subject or not description:
            raise TicketValidationError("Subject and description are required")

        overrides = self._policy.creation_overrides(
            actor,
            requester_id=requester_id,
            assigned_to=assigned_to,
            assignment_group_id=assignment_group_id,
            work_notes=work_notes,
        )
        public_comment = (additional_comments or "").strip()
        work_note = (overrides.work_notes or "").strip()

        for attempt in range(1, self._max_number_attempts + 1):
            try:
                async with self._repository.transaction() as connection:
                    customer_id = await self._resolve_customer(actor, overrides.requester_id, connection)
                    valid_subcategory = await self._resolve_subcategory(subcategory_id, connection)

                    await self._numbers.lock_allocation(connection)
                    ticket_number = await self._numbers.next_ticket_number(connection)
                    ticket_id = await self._repository.insert_ticket(
                        ticket_number=ticket_number,
                        customer_id=customer_id,
                        assigned_to=overrides.assigned_to,
                        category_id=category_id,
                        subcategory_id=valid_subcategory,
                        assignment_group_id=overrides.assignment_group_id,
                        subject=subject,
                        description=description,
                        status=self._state_machine.initial_state(),
                        priority=priority or TicketPriority.MEDIUM,
                        connection=connection,
                    )

                    if public_comment:
                        await self._repository.insert_comment(
                            ticket_id=ticket_id,
                            user_id=customer_id,
                            comment=public_comment,
                            is_internal=False,
                            connection=connection,
                        )
                        await self._history.record(
                            ticket_id=ticket_id,
                            user_id=actor.id,
                            action=HistoryAction.COMMENT_ADDED,
                            new_value={"type": "customer_comment", "text": public_comment},
                            connection=connection,
                        )

                    if work_note:
                        await self._repository.insert_comment(
                            ticket_id=ticket_id,
                            user_id=actor.id,
                            comment=work_note,
                            is_internal=True,
                            connection=connection,
                        )
                        await self._history.record(
                            ticket_id=ticket_id,
                            user_id=actor.id,
                            action=HistoryAction.WORK_NOTE_ADDED,
                            new_value={"type": "work_note", "text": work_note},
                            connection=connection,
                        )

                    await self._history.record(
                        ticket_id=ticket_id,
                        user_id=actor.id,
                        action=HistoryAction.CREATED,
                        new_value=f"Ticket created: {subject}",
                        connection=connection,
                    )
                    view = await self._repository.get_ticket_view(ticket_id, connection=connection)
            except UniqueViolationError as exc:
                if attempt >= self._max_number_attempts:
                    raise TicketNumberConflictError() from exc
                logger.warning("Ticket number collision on attempt %d, retrying", attempt)
                continue
            except ForeignKeyViolationError as exc:
                raise TicketValidationError("Referenced record does not exist", error=exc.detail) from exc
            break

        if view is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")

        logger.info("Ticket %s created by user %s for customer %s", view.ticket_number, actor.id, customer_id)
        if view.assigned_to is not None and view.assigned_to != actor.id:
            await self._notify(
                [view.assigned_to],
                title="Ticket assigned",
                message=f"Ticket {view.ticket_number} has been assigned to you: {view.subject}",
                kind=NotificationType.TICKET_ASSIGNED,
                ticket_id=view.id,
            )
        return view

    async def get_ticket(self, actor: User, ticket_id: int) -> TicketDetail:
        view = await self._repository.get_ticket_view(ticket_id)
        if view is None:
            raise TicketNotFoundError()
        self._policy.ensure_can_access(actor, view)

        comments = await self._repository.list_comments(ticket_id, include_internal=actor.is_staff)
        history = await self._history.list_for_ticket(ticket_id)
        return TicketDetail(ticket=view, comments=comments, history=history)

    async def list_tickets(
        self,
        actor: User,
        *,
        status: TicketStatus | None = None,
        priority: TicketPriority | None = None,
        category_id: int | None = None,
        assigned_to: int | None = None,
        unassigned: bool = False,
        followed: bool = False,
        ticket_ids: Sequence[int] = (),
        page: int = 1,
        limit: int = 10,
    ) -> TicketPage:
        """List tickets visible to ``actor``; customers only ever see their own.

        Assignment filters are a staff feature and are ignored for customers.
        """

        filters = TicketListFilters(
            status=status,
            priority=priority,
            category_id=category_id,
            customer_id=None if actor.is_staff else actor.id,
            assigned_to=assigned_to if actor.is_staff else None,
            unassigned=unassigned and actor.is_staff,
            followed_by=actor.id if followed else None,
            ticket_ids=tuple(ticket_ids),
        )
        tickets, total = await self._repository.list_tickets(filters, limit=limit, offset=(page - 1) * limit)
        return TicketPage(tickets=tickets, total=total, page=page, limit=limit)

    async def update_ticket(
        self,
        actor: User,
        ticket_id: int,
        changes: Mapping[str, Any],
        *,
        request_body: Mapping[str, Any] | None = None,
    ) -> TicketView:
        """Apply ``changes`` (only the fields present in the request).

        ``request_body`` is stored verbatim as the audit entry's new value;
        it defaults to ``changes``.
        """

        requested = {name: value for name, value in changes.items() if value is not None}
        try:
            async with self._repository.transaction() as connection:
                current = await self._repository.get_ticket(ticket_id, for_update=True, connection=connection)
                if current is None:
                    raise TicketNotFoundError()

                fields = self._policy.filter_update(actor, current, requested)
                new_status = fields.get("status")
                if new_status is not None:
                    try:
                        self._state_machine.assert_transition(current.status, TicketStatus(new_status))
                    except InvalidTicketTransitionError as exc:
                        raise TicketTransitionConflictError(str(exc)) from exc

                await self._repository.update_ticket(
                    ticket_id,
                    fields,
                    mark_resolved=new_status == TicketStatus.RESOLVED,
                    connection=connection,
                )
                await self._history.record(
                    ticket_id=ticket_id,
                    user_id=actor.id,
                    action=HistoryAction.UPDATED,
                    old_value=current.snapshot(),
                    new_value=dict(request_body if request_body is not None else requested),
                    connection=connection,
                )
                view = await self._repository.get_ticket_view(ticket_id, connection=connection)
        except ForeignKeyViolationError as exc:
            raise TicketValidationError("Referenced record does not exist", error=exc.detail) from exc

        if view is None:
            raise TicketNotFoundError()
        logger.info("Ticket %s updated by user %s: %s", view.ticket_number, actor.id, sorted(fields))
        await self._notify_update(actor, current, view)
        return view

    async def delete_ticket(self, ticket_id: int) -> None:
        deleted = await self._repository.delete_ticket(ticket_id)
        if not deleted:
            raise TicketNotFoundError()
        logger.info("Ticket %s deleted", ticket_id)

    async def _resolve_customer(self, actor: User, requester_id: int | None, connection: Any) -> int:
        if requester_id is None or requester_id == actor.id:
            return actor.id
        if not await self._repository.user_exists(requester_id, connection=connection):
            raise TicketValidationError("Requester not found")
        return requester_id

    async def _resolve_subcategory(self, subcategory_id: int | None, connection: Any) -> int | None:
        if subcategory_id is None:
            return None
        if await self._repository.subcategory_exists(subcategory_id, connection=connection):
            return subcategory_id
        logger.warning("Subcategory %s does not exist, storing ticket without one", subcategory_id)
        return None

    async def _notify_update(self, actor: User, before: Ticket, after: TicketView) -> None:
        if after.assigned_to is not None and after.assigned_to != before.assigned_to and after.assigned_to != actor.id:
            await self._notify(
                [after.assigned_to],
                title="Ticket assigned",
                message=f"Ticket {after.ticket_number} has been assigned to you: {after.subject}",
                kind=NotificationType.TICKET_ASSIGNED,
                ticket_id=after.id,
            )

        if after.status == before.status:
            return
        recipients = [after.customer_id]
        if self._followers is not None:
            try:
                recipients.extend(await self._followers.follower_ids(after.id))
            except Exception:
                logger.warning("Could not load followers of ticket %s", after.id, exc_info=True)
        await self._notify(
            (user_id for user_id in recipients if user_id != actor.id),
            title="Ticket status changed",
            message=f"Ticket {after.ticket_number} is now {after.status.value.replace('_', ' ')}",
            kind=NotificationType.TICKET_STATUS_CHANGED,
            ticket_id=after.id,
        )

    async def _notify(
        self,
        user_ids: Iterable[int],
        *,
        title: str,
        message: str,
        kind: NotificationType,
        ticket_id: int,
    ) -> None:
        if self._notifications is None:
            return
        for user_id in dict.fromkeys(user_ids):
            await self._notifications.create_notification(
                user_id, title, message, kind, link=f"/tickets/{ticket_id}"
            )
