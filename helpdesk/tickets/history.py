from __future__ import annotations

import json
from typing import Any, Mapping

from helpdesk.services.postgres import connection_scope

from .models import HistoryAction, TicketHistoryEntry


def _serialize(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class TicketHistoryRecorder:
    """Append-only writer for ``ticket_history``.

    Exposes inserts and reads only; rows go away solely through the
    cascading delete of their ticket.
    """

    _INSERT_SQL = """
    INSERT INTO ticket_history (ticket_id, user_id, action, old_value, new_value)
    VALUES ($1, $2, $3, $4, $5)
    """

    _SELECT_SQL = """
    SELECT th.id, th.ticket_id, th.user_id, th.action, th.old_value, th.new_value, th.created_at,
           u.name AS user_name, u.role AS user_role
    FROM ticket_history th
    LEFT JOIN users u ON th.user_id = u.id
    WHERE th.ticket_id = $1
    ORDER BY th.created_at DESC, th.id DESC
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def record(
        self,
        *,
        ticket_id: int,
        user_id: int,
        action: HistoryAction,
        old_value: Any = None,
        new_value: Any = None,
        connection: Any = None,
    ) -> None:
        """Append one entry; dicts and lists are stored as JSON text."""

        async with connection_scope(self._pool, connection) as conn:
            await conn.execute(
                self._INSERT_SQL,
                ticket_id,
                user_id,
                action.value,
                _serialize(old_value),
                _serialize(new_value),
            )

    async def list_for_ticket(self, ticket_id: int, *, connection: Any = None) -> list[TicketHistoryEntry]:
        async with connection_scope(self._pool, connection) as conn:
            rows = await conn.fetch(self._SELECT_SQL, ticket_id)
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: Mapping[str, Any]) -> TicketHistoryEntry:
        return TicketHistoryEntry(
            id=int(row["id"]),
            ticket_id=int(row["ticket_id"]),
            user_id=row["user_id"],
            action=str(row["action"]),
            old_value=row["old_value"],
            new_value=row["new_value"],
            created_at=row["created_at"],
            user_name=row.get("user_name"),
            user_role=row.get("user_role"),
        )
