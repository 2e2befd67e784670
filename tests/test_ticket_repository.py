from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from helpdesk.tickets import TicketRepository
from helpdesk.tickets.history import TicketHistoryRecorder
from helpdesk.tickets.models import HistoryAction, TicketListFilters
from helpdesk.tickets.state import TicketPriority, TicketStatus


def _ticket_row(**overrides) -> dict:
    now = datetime.now(timezone.utc)
    row = {
        "id": 1,
        "ticket_number": "TKT1",
        "customer_id": 3,
        "assigned_to": None,
        "category_id": 2,
        "subcategory_id": None,
        "assignment_group_id": None,
        "subject": "Printer broken",
        "description": "No ink",
        "status": "open",
        "priority": "medium",
        "resolution": None,
        "created_at": now,
        "updated_at": now,
        "resolved_at": None,
        "customer_name": "Carol",
        "customer_email": "carol@example.com",
        "category_name": "Hardware",
        "subcategory_name": None,
        "assignment_group_name": None,
        "assigned_to_name": None,
        "assigned_to_email": None,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_ensure_schema_creates_tables(connection, pool):
    repository = TicketRepository(pool)

    await repository.ensure_schema()

    executed = [call.args[0] for call in connection.execute.await_args_list]
    assert any("CREATE TABLE IF NOT EXISTS tickets" in stmt for stmt in executed)
    assert any("ticket_number TEXT NOT NULL UNIQUE" in stmt for stmt in executed)
    assert any("ticket_comments" in stmt for stmt in executed)
    assert any("ticket_history" in stmt for stmt in executed)
    tickets_ddl = next(stmt for stmt in executed if "CREATE TABLE IF NOT EXISTS tickets" in stmt)
    assert "'in_progress'" in tickets_ddl
    assert "'urgent'" in tickets_ddl


@pytest.mark.asyncio
async def test_insert_ticket_passes_enum_values(connection, pool):
    connection.fetchval = AsyncMock(return_value=17)
    repository = TicketRepository(pool)

    ticket_id = await repository.insert_ticket(
        ticket_number="TKT9",
        customer_id=3,
        assigned_to=None,
        category_id=None,
        subcategory_id=None,
        assignment_group_id=None,
        subject="s",
        description="d",
        status=TicketStatus.OPEN,
        priority=TicketPriority.HIGH,
    )

    assert ticket_id == 17
    args = connection.fetchval.await_args.args
    assert args[1] == "TKT9"
    assert args[-2:] == ("open", "high")


@pytest.mark.asyncio
async def test_get_ticket_view_maps_joined_names(connection, pool):
    connection.fetchrow = AsyncMock(return_value=_ticket_row(status="resolved"))
    repository = TicketRepository(pool)

    view = await repository.get_ticket_view(1)

    assert view is not None
    assert view.status == TicketStatus.RESOLVED
    assert view.customer_name == "Carol"
    assert view.category_name == "Hardware"
    assert "LEFT JOIN assignment_groups" in connection.fetchrow.await_args.args[0]


@pytest.mark.asyncio
async def test_get_ticket_for_update_locks_row(connection, pool):
    connection.fetchrow = AsyncMock(return_value=_ticket_row())
    repository = TicketRepository(pool)

    await repository.get_ticket(1, for_update=True)

    assert connection.fetchrow.await_args.args[0].rstrip().endswith("FOR UPDATE")


@pytest.mark.asyncio
async def test_get_missing_ticket_returns_none(connection, pool):
    connection.fetchrow = AsyncMock(return_value=None)
    repository = TicketRepository(pool)

    assert await repository.get_ticket(5) is None
    assert await repository.get_ticket_view(5) is None


@pytest.mark.asyncio
async def test_update_ticket_builds_set_clause(connection, pool):
    connection.fetchrow = AsyncMock(return_value={"id": 1})
    repository = TicketRepository(pool)

    updated = await repository.update_ticket(
        1, {"status": TicketStatus.RESOLVED, "resolution": "Replaced cartridge"}, mark_resolved=True
    )

    assert updated is True
    sql, *params = connection.fetchrow.await_args.args
    assert "status = $1" in sql
    assert "resolution = $2" in sql
    assert "resolved_at = CURRENT_TIMESTAMP" in sql
    assert "updated_at = CURRENT_TIMESTAMP" in sql
    assert "WHERE id = $3" in sql
    assert params == ["resolved", "Replaced cartridge", 1]


@pytest.mark.asyncio
async def test_update_ticket_rejects_unknown_columns(pool):
    repository = TicketRepository(pool)

    with pytest.raises(ValueError):
        await repository.update_ticket(1, {"customer_id": 9})


@pytest.mark.asyncio
async def test_list_tickets_count_uses_same_filters(connection, pool):
    connection.fetch = AsyncMock(return_value=[_ticket_row()])
    connection.fetchval = AsyncMock(return_value=31)
    repository = TicketRepository(pool)
    filters = TicketListFilters(
        status=TicketStatus.OPEN,
        priority=TicketPriority.HIGH,
        category_id=2,
        customer_id=3,
        ticket_ids=(1, 2),
    )

    tickets, total = await repository.list_tickets(filters, limit=10, offset=20)

    assert total == 31
    assert tickets[0].ticket_number == "TKT1"
    page_sql, *page_params = connection.fetch.await_args.args
    count_sql, *count_params = connection.fetchval.await_args.args
    assert page_params[:-2] == count_params
    assert page_params[-2:] == [10, 20]
    assert count_params == [3, "open", "high", 2, [1, 2]]
    assert "ORDER BY t.created_at DESC" in page_sql
    assert "t.priority = $3" in count_sql
    assert "t.category_id = $4" in count_sql
    assert "ANY($5::int[])" in count_sql


def test_unassigned_filter_wins_over_assignee():
    where, params = TicketRepository._build_filters(TicketListFilters(unassigned=True, assigned_to=2))

    assert "t.assigned_to IS NULL" in where
    assert params == []


def test_followed_filter_joins_followers():
    where, params = TicketRepository._build_filters(TicketListFilters(followed_by=7))

    assert "ticket_followers" in where
    assert params == [7]


@pytest.mark.asyncio
async def test_list_comments_passes_visibility_flag(connection, pool):
    connection.fetch = AsyncMock(return_value=[])
    repository = TicketRepository(pool)

    await repository.list_comments(1, include_internal=False)

    assert connection.fetch.await_args.args[1:] == (1, False)


@pytest.mark.asyncio
async def test_history_record_serializes_structured_values(connection, pool):
    recorder = TicketHistoryRecorder(pool)

    await recorder.record(
        ticket_id=1,
        user_id=2,
        action=HistoryAction.UPDATED,
        old_value={"status": "open"},
        new_value={"status": "resolved"},
    )

    sql, *params = connection.execute.await_args.args
    assert sql.strip().startswith("INSERT INTO ticket_history")
    assert params == [1, 2, "updated", '{"status": "open"}', '{"status": "resolved"}']


@pytest.mark.asyncio
async def test_history_record_keeps_plain_text(connection, pool):
    recorder = TicketHistoryRecorder(pool)

    await recorder.record(ticket_id=1, user_id=2, action=HistoryAction.CREATED, new_value="Ticket created: x")

    assert connection.execute.await_args.args[-2:] == (None, "Ticket created: x")
