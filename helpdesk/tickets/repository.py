from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Mapping

from helpdesk.services.postgres import connection_scope, transaction_scope

from .models import Ticket, TicketComment, TicketListFilters, TicketView
from .state import TicketPriority, TicketStatus

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in TicketStatus)
_PRIORITY_VALUES = ", ".join(f"'{priority.value}'" for priority in TicketPriority)

# Columns an UPDATE may assign from request data; anything else is rejected.
_ASSIGNABLE_COLUMNS = ("subject", "description", "status", "priority", "assigned_to", "resolution")


class TicketRepository:
    """Data access layer for tickets, their comments and read-only lookups."""

    _CREATE_LOOKUP_SQL = (
        """
        CREATE TABLE IF NOT EXISTS users (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            role TEXT NOT NULL DEFAULT 'customer' CHECK (role IN ('customer', 'employee', 'admin')),
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS categories (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL UNIQUE
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS subcategories (
            id SERIAL PRIMARY KEY,
            category_id INTEGER NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
            name TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS assignment_groups (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL UNIQUE
        )
        """,
    )

    _CREATE_TICKETS_SQL = f"""
    CREATE TABLE IF NOT EXISTS tickets (
        id SERIAL PRIMARY KEY,
        ticket_number TEXT NOT NULL UNIQUE,
        customer_id INTEGER NOT NULL REFERENCES users(id),
        assigned_to INTEGER NULL REFERENCES users(id) ON DELETE SET NULL,
        category_id INTEGER NULL REFERENCES categories(id) ON DELETE SET NULL,
        subcategory_id INTEGER NULL REFERENCES subcategories(id) ON DELETE SET NULL,
        assignment_group_id INTEGER NULL REFERENCES assignment_groups(id) ON DELETE SET NULL,
        subject TEXT NOT NULL,
        description TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ({_STATUS_VALUES})),
        priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ({_PRIORITY_VALUES})),
        resolution TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        resolved_at TIMESTAMPTZ NULL
    )
    """

    _CREATE_COMMENTS_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_comments (
        id SERIAL PRIMARY KEY,
        ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        user_id INTEGER NULL REFERENCES users(id) ON DELETE SET NULL,
        comment TEXT NOT NULL,
        is_internal BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NULL
    )
    """

    _CREATE_HISTORY_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_history (
        id SERIAL PRIMARY KEY,
        ticket_id INTEGER NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        user_id INTEGER NULL REFERENCES users(id) ON DELETE SET NULL,
        action TEXT NOT NULL,
        old_value TEXT NULL,
        new_value TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _TICKET_COLUMNS = """
    t.id, t.ticket_number, t.customer_id, t.assigned_to, t.category_id, t.subcategory_id,
    t.assignment_group_id, t.subject, t.description, t.status, t.priority, t.resolution,
    t.created_at, t.updated_at, t.resolved_at
    """

    _VIEW_SELECT = f"""
    SELECT {_TICKET_COLUMNS},
           u.name AS customer_name,
           u.email AS customer_email,
           c.name AS category_name,
           s.name AS subcategory_name,
           ag.name AS assignment_group_name,
           a.name AS assigned_to_name,
           a.email AS assigned_to_email
    FROM tickets t
    LEFT JOIN users u ON t.customer_id = u.id
    LEFT JOIN categories c ON t.category_id = c.id
    LEFT JOIN subcategories s ON t.subcategory_id = s.id
    LEFT JOIN assignment_groups ag ON t.assignment_group_id = ag.id
    LEFT JOIN users a ON t.assigned_to = a.id
    """

    _SELECT_TICKET_SQL = f"SELECT {_TICKET_COLUMNS} FROM tickets t WHERE t.id = $1"

    _SELECT_TICKET_FOR_UPDATE_SQL = _SELECT_TICKET_SQL + " FOR UPDATE"

    _SELECT_VIEW_SQL = _VIEW_SELECT + " WHERE t.id = $1"

    _INSERT_TICKET_SQL = """
    INSERT INTO tickets
        (ticket_number, customer_id, assigned_to, category_id, subcategory_id, assignment_group_id,
         subject, description, status, priority)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
    RETURNING id
    """

    _TOUCH_TICKET_SQL = """
    UPDATE tickets SET updated_at = CURRENT_TIMESTAMP WHERE id = $1
    """

    _DELETE_TICKET_SQL = """
    DELETE FROM tickets WHERE id = $1 RETURNING id
    """

    _SUBCATEGORY_EXISTS_SQL = "SELECT EXISTS (SELECT 1 FROM subcategories WHERE id = $1)"

    _USER_EXISTS_SQL = "SELECT EXISTS (SELECT 1 FROM users WHERE id = $1)"

    _COMMENT_COLUMNS = """
    tc.id, tc.ticket_id, tc.user_id, tc.comment, tc.is_internal, tc.created_at, tc.updated_at,
    u.name AS user_name, u.role AS user_role
    """

    _INSERT_COMMENT_SQL = """
    INSERT INTO ticket_comments (ticket_id, user_id, comment, is_internal)
    VALUES ($1, $2, $3, $4)
    RETURNING id
    """

    _SELECT_COMMENT_SQL = f"""
    SELECT {_COMMENT_COLUMNS}
    FROM ticket_comments tc
    LEFT JOIN users u ON tc.user_id = u.id
    WHERE tc.id = $1
    """

    _SELECT_COMMENTS_SQL = f"""
    SELECT {_COMMENT_COLUMNS}
    FROM ticket_comments tc
    LEFT JOIN users u ON tc.user_id = u.id
    WHERE tc.ticket_id = $1 AND ($2::boolean OR tc.is_internal = FALSE)
    ORDER BY tc.created_at ASC, tc.id ASC
    """

    _UPDATE_COMMENT_SQL = """
    UPDATE ticket_comments SET comment = $2, updated_at = CURRENT_TIMESTAMP WHERE id = $1
    """

    _DELETE_COMMENT_SQL = """
    DELETE FROM ticket_comments WHERE id = $1 RETURNING id
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        async with transaction_scope(self._pool) as connection:
            yield connection

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            for statement in self._CREATE_LOOKUP_SQL:
                await connection.execute(statement)
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_COMMENTS_SQL)
            await connection.execute(self._CREATE_HISTORY_SQL)

    async def subcategory_exists(self, subcategory_id: int, *, connection: Any = None) -> bool:
        async with connection_scope(self._pool, connection) as conn:
            return bool(await conn.fetchval(self._SUBCATEGORY_EXISTS_SQL, subcategory_id))

    async def user_exists(self, user_id: int, *, connection: Any = None) -> bool:
        async with connection_scope(self._pool, connection) as conn:
            return bool(await conn.fetchval(self._USER_EXISTS_SQL, user_id))

    async def insert_ticket(
        self,
        *,
        ticket_number: str,
        customer_id: int,
        assigned_to: int | None,
        category_id: int | None,
        subcategory_id: int | None,
        assignment_group_id: int | None,
        subject: str,
        description: str,
        status: TicketStatus,
        priority: TicketPriority,
        connection: Any = None,
    ) -> int:
        async with connection_scope(self._pool, connection) as conn:
            ticket_id = await conn.fetchval(
                self._INSERT_TICKET_SQL,
                ticket_number,
                customer_id,
                assigned_to,
                category_id,
                subcategory_id,
                assignment_group_id,
                subject,
                description,
                status.value,
                priority.value,
            )
        if ticket_id is None:
            raise RuntimeError("Failed to insert ticket")
        return int(ticket_id)

    async def get_ticket(
        self, ticket_id: int, *, for_update: bool = False, connection: Any = None
    ) -> Ticket | None:
        sql = self._SELECT_TICKET_FOR_UPDATE_SQL if for_update else self._SELECT_TICKET_SQL
        async with connection_scope(self._pool, connection) as conn:
            row = await conn.fetchrow(sql, ticket_id)
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def get_ticket_view(self, ticket_id: int, *, connection: Any = None) -> TicketView | None:
        async with connection_scope(self._pool, connection) as conn:
            row = await conn.fetchrow(self._SELECT_VIEW_SQL, ticket_id)
        if row is None:
            return None
        return self._row_to_view(row)

    async def update_ticket(
        self,
        ticket_id: int,
        assignments: Mapping[str, Any],
        *,
        mark_resolved: bool = False,
        connection: Any = None,
    ) -> bool:
        """Apply ``assignments`` in one statement and bump ``updated_at``.

        ``mark_resolved`` stamps ``resolved_at`` with the current time.
        """

        unknown = set(assignments).difference(_ASSIGNABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Columns not assignable: {sorted(unknown)}")

        clauses: list[str] = []
        params: list[Any] = []
        for column in _ASSIGNABLE_COLUMNS:
            if column not in assignments:
                continue
            value = assignments[column]
            params.append(value.value if isinstance(value, (TicketStatus, TicketPriority)) else value)
            clauses.append(f"{column} = ${len(params)}")
        if mark_resolved:
            clauses.append("resolved_at = CURRENT_TIMESTAMP")
        clauses.append("updated_at = CURRENT_TIMESTAMP")

        params.append(ticket_id)
        sql = f"UPDATE tickets SET {', '.join(clauses)} WHERE id = ${len(params)} RETURNING id"
        async with connection_scope(self._pool, connection) as conn:
            row = await conn.fetchrow(sql, *params)
        return row is not None

    async def touch_ticket(self, ticket_id: int, *, connection: Any = None) -> None:
        async with connection_scope(self._pool, connection) as conn:
            await conn.execute(self._TOUCH_TICKET_SQL, ticket_id)

    async def delete_ticket(self, ticket_id: int) -> bool:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._DELETE_TICKET_SQL, ticket_id)
        return row is not None

    async def list_tickets(
        self, filters: TicketListFilters, *, limit: int, offset: int
    ) -> tuple[list[TicketView], int]:
        where, params = self._build_filters(filters)
        page_params = [*params, limit, offset]
        page_sql = (
            f"{self._VIEW_SELECT} WHERE {where} "
            f"ORDER BY t.created_at DESC, t.id DESC LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}"
        )
        count_sql = f"SELECT COUNT(*) FROM tickets t WHERE {where}"

        async with self._pool.acquire() as connection:
            rows = await connection.fetch(page_sql, *page_params)
            total = await connection.fetchval(count_sql, *params)
        return [self._row_to_view(row) for row in rows], int(total or 0)

    @staticmethod
    def _build_filters(filters: TicketListFilters) -> tuple[str, list[Any]]:
        """Translate ``filters`` into a WHERE clause shared by page and count queries."""

        clauses = ["1=1"]
        params: list[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if filters.customer_id is not None:
            clauses.append(f"t.customer_id = {bind(filters.customer_id)}")
        if filters.status is not None:
            clauses.append(f"t.status = {bind(filters.status.value)}")
        if filters.priority is not None:
            clauses.append(f"t.priority = {bind(filters.priority.value)}")
        if filters.category_id is not None:
            clauses.append(f"t.category_id = {bind(filters.category_id)}")
        if filters.unassigned:
            clauses.append("t.assigned_to IS NULL")
        elif filters.assigned_to is not None:
            clauses.append(f"t.assigned_to = {bind(filters.assigned_to)}")
        if filters.followed_by is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM ticket_followers tf "
                f"WHERE tf.ticket_id = t.id AND tf.user_id = {bind(filters.followed_by)})"
            )
        if filters.ticket_ids:
            clauses.append(f"t.id = ANY({bind(list(filters.ticket_ids))}::int[])")
        return " AND ".join(clauses), params

    async def insert_comment(
        self,
        *,
        ticket_id: int,
        user_id: int,
        comment: str,
        is_internal: bool,
        connection: Any = None,
    ) -> int:
        async with connection_scope(self._pool, connection) as conn:
            comment_id = await conn.fetchval(self._INSERT_COMMENT_SQL, ticket_id, user_id, comment, is_internal)
        if comment_id is None:
            raise RuntimeError("Failed to insert comment")
        return int(comment_id)

    async def get_comment(self, comment_id: int, *, connection: Any = None) -> TicketComment | None:
        async with connection_scope(self._pool, connection) as conn:
            row = await conn.fetchrow(self._SELECT_COMMENT_SQL, comment_id)
        if row is None:
            return None
        return self._row_to_comment(row)

    async def list_comments(
        self, ticket_id: int, *, include_internal: bool, connection: Any = None
    ) -> list[TicketComment]:
        async with connection_scope(self._pool, connection) as conn:
            rows = await conn.fetch(self._SELECT_COMMENTS_SQL, ticket_id, include_internal)
        return [self._row_to_comment(row) for row in rows]

    async def update_comment(self, comment_id: int, comment: str, *, connection: Any = None) -> None:
        async with connection_scope(self._pool, connection) as conn:
            await conn.execute(self._UPDATE_COMMENT_SQL, comment_id, comment)

    async def delete_comment(self, comment_id: int, *, connection: Any = None) -> bool:
        async with connection_scope(self._pool, connection) as conn:
            row = await conn.fetchrow(self._DELETE_COMMENT_SQL, comment_id)
        return row is not None

    @staticmethod
    def _ticket_fields(row: Mapping[str, Any]) -> dict[str, Any]:
        resolved_at = row["resolved_at"]
        return {
            "id": int(row["id"]),
            "ticket_number": str(row["ticket_number"]),
            "customer_id": int(row["customer_id"]),
            "assigned_to": row["assigned_to"],
            "category_id": row["category_id"],
            "subcategory_id": row["subcategory_id"],
            "assignment_group_id": row["assignment_group_id"],
            "subject": str(row["subject"]),
            "description": str(row["description"]),
            "status": TicketStatus(str(row["status"])),
            "priority": TicketPriority(str(row["priority"])),
            "resolution": row["resolution"],
            "created_at": _ensure_datetime(row["created_at"]),
            "updated_at": _ensure_datetime(row["updated_at"]),
            "resolved_at": _ensure_datetime(resolved_at) if resolved_at is not None else None,
        }

    @classmethod
    def _row_to_ticket(cls, row: Mapping[str, Any]) -> Ticket:
        return Ticket(**cls._ticket_fields(row))

    @classmethod
    def _row_to_view(cls, row: Mapping[str, Any]) -> TicketView:
        return TicketView(
            **cls._ticket_fields(row),
            customer_name=row.get("customer_name"),
            customer_email=row.get("customer_email"),
            category_name=row.get("category_name"),
            subcategory_name=row.get("subcategory_name"),
            assignment_group_name=row.get("assignment_group_name"),
            assigned_to_name=row.get("assigned_to_name"),
            assigned_to_email=row.get("assigned_to_email"),
        )

    @staticmethod
    def _row_to_comment(row: Mapping[str, Any]) -> TicketComment:
        updated_at = row.get("updated_at")
        return TicketComment(
            id=int(row["id"]),
            ticket_id=int(row["ticket_id"]),
            user_id=row["user_id"],
            comment=str(row["comment"]),
            is_internal=bool(row["is_internal"]),
            created_at=_ensure_datetime(row["created_at"]),
            updated_at=_ensure_datetime(updated_at) if updated_at is not None else None,
            user_name=row.get("user_name"),
            user_role=row.get("user_role"),
        )


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))
