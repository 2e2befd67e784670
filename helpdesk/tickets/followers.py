from __future__ import annotations

import logging
from typing import Any, Mapping

from asyncpg.exceptions import ForeignKeyViolationError

from helpdesk.core.errors import NotFoundError, ValidationError
from helpdesk.dependencies.auth import Role, User
from helpdesk.services.postgres import connection_scope

from .errors import TicketAccessDeniedError, TicketNotFoundError
from .models import Ticket, TicketFollower
from .permissions import TicketPermissionPolicy
from .repository import TicketRepository

logger = logging.getLogger(__name__)


class FollowerRepository:
    """Persistence helper for ``ticket_followers``."""

    _CREATE_FOLLOWERS_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_followers (
        id SERIAL PRIMARY KEY,
        ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (ticket_id, user_id)
    )
    """

    _SELECT_FOLLOWERS_SQL = """
    SELECT u.id, u.name, u.email, u.role, tf.created_at
    FROM ticket_followers tf
    JOIN users u ON tf.user_id = u.id
    WHERE tf.ticket_id = $1
    ORDER BY tf.created_at ASC, tf.id ASC
    """

    _SELECT_FOLLOWER_IDS_SQL = """
    SELECT user_id FROM ticket_followers WHERE ticket_id = $1
    """

    _IS_FOLLOWING_SQL = """
    SELECT EXISTS (SELECT 1 FROM ticket_followers WHERE ticket_id = $1 AND user_id = $2)
    """

    _INSERT_SQL = """
    INSERT INTO ticket_followers (ticket_id, user_id)
    VALUES ($1, $2)
    ON CONFLICT (ticket_id, user_id) DO NOTHING
    RETURNING id
    """

    _DELETE_SQL = """
    DELETE FROM ticket_followers WHERE ticket_id = $1 AND user_id = $2 RETURNING id
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_FOLLOWERS_SQL)

    async def list_followers(self, ticket_id: int, *, connection: Any = None) -> list[TicketFollower]:
        async with connection_scope(self._pool, connection) as conn:
            rows = await conn.fetch(self._SELECT_FOLLOWERS_SQL, ticket_id)
        return [self._row_to_follower(row) for row in rows]

    async def list_follower_ids(self, ticket_id: int) -> list[int]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_FOLLOWER_IDS_SQL, ticket_id)
        return [int(row["user_id"]) for row in rows]

    async def is_following(self, ticket_id: int, user_id: int) -> bool:
        async with self._pool.acquire() as connection:
            return bool(await connection.fetchval(self._IS_FOLLOWING_SQL, ticket_id, user_id))

    async def add(self, ticket_id: int, user_id: int, *, connection: Any = None) -> bool:
        """Insert the pair; ``False`` when it already existed."""

        async with connection_scope(self._pool, connection) as conn:
            row = await conn.fetchrow(self._INSERT_SQL, ticket_id, user_id)
        return row is not None

    async def remove(self, ticket_id: int, user_id: int, *, connection: Any = None) -> bool:
        async with connection_scope(self._pool, connection) as conn:
            row = await conn.fetchrow(self._DELETE_SQL, ticket_id, user_id)
        return row is not None

    @staticmethod
    def _row_to_follower(row: Mapping[str, Any]) -> TicketFollower:
        return TicketFollower(
            id=int(row["id"]),
            name=row["name"],
            email=row["email"],
            role=row["role"],
            created_at=row["created_at"],
        )


class FollowerService:
    """Follow / unfollow tickets. Changes bump the ticket's ``updated_at``.

    Every operation is subject to the ticket ownership rule: customers may
    only see or change the followers of their own tickets, and only staff
    may subscribe someone other than themselves.
    """

    def __init__(
        self,
        repository: FollowerRepository,
        tickets: TicketRepository,
        *,
        policy: TicketPermissionPolicy | None = None,
    ) -> None:
        self._repository = repository
        self._tickets = tickets
        self._policy = policy or TicketPermissionPolicy()

    async def ensure_schema(self) -> None:
        await self._repository.ensure_schema()

    async def _load_ticket(self, ticket_id: int, actor: User, *, connection: Any = None) -> Ticket:
        ticket = await self._tickets.get_ticket(ticket_id, connection=connection)
        if ticket is None:
            raise TicketNotFoundError()
        self._policy.ensure_can_access(actor, ticket)
        return ticket

    async def list_followers(self, ticket_id: int, actor: User) -> list[TicketFollower]:
        await self._load_ticket(ticket_id, actor)
        return await self._repository.list_followers(ticket_id)

    async def is_following(self, ticket_id: int, actor: User) -> bool:
        await self._load_ticket(ticket_id, actor)
        return await self._repository.is_following(ticket_id, actor.id)

    async def follower_ids(self, ticket_id: int) -> list[int]:
        return await self._repository.list_follower_ids(ticket_id)

    async def follow(self, ticket_id: int, actor: User, *, user_id: int | None = None) -> list[TicketFollower]:
        follower_id = user_id or actor.id
        if follower_id != actor.id and not actor.is_staff:
            raise TicketAccessDeniedError("You can only follow tickets yourself")
        try:
            async with self._tickets.transaction() as connection:
                await self._load_ticket(ticket_id, actor, connection=connection)
                if not await self._repository.add(ticket_id, follower_id, connection=connection):
                    raise ValidationError("User is already following this ticket")
                await self._tickets.touch_ticket(ticket_id, connection=connection)
                followers = await self._repository.list_followers(ticket_id, connection=connection)
        except ForeignKeyViolationError as exc:
            raise NotFoundError("User not found", error=exc.detail) from exc
        logger.info("User %s now follows ticket %s", follower_id, ticket_id)
        return followers

    async def unfollow(self, ticket_id: int, actor: User, *, user_id: int | None = None) -> None:
        target_id = user_id or actor.id
        if target_id != actor.id and actor.role is not Role.ADMIN:
            raise TicketAccessDeniedError("You can only remove yourself as a follower")
        async with self._tickets.transaction() as connection:
            await self._load_ticket(ticket_id, actor, connection=connection)
            if await self._repository.remove(ticket_id, target_id, connection=connection):
                await self._tickets.touch_ticket(ticket_id, connection=connection)
