from __future__ import annotations

import copy
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from asyncpg.exceptions import ForeignKeyViolationError, UniqueViolationError

from helpdesk.dependencies.auth import Role, User
from helpdesk.tickets import (
    Ticket,
    TicketComment,
    TicketHistoryRecorder,
    TicketNumberGenerator,
    TicketService,
    TicketView,
)
from helpdesk.tickets.comments import TicketCommentService
from helpdesk.tickets.state import TicketPriority, TicketStatus

BASE_TIME = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class DummyTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyAcquire:
    def __init__(self, connection):
        self._connection = connection

    async def __aenter__(self):
        return self._connection

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyPool:
    def __init__(self, connection):
        self._connection = connection

    def acquire(self):
        return DummyAcquire(self._connection)


def make_connection() -> AsyncMock:
    connection = AsyncMock()
    connection.transaction = MagicMock(side_effect=lambda: DummyTransaction())
    return connection


class InMemoryStore:
    """Table-shaped state shared by the in-memory doubles below."""

    def __init__(self) -> None:
        self.users: dict[int, dict[str, Any]] = {}
        self.subcategories: dict[int, str] = {}
        self.tickets: dict[int, dict[str, Any]] = {}
        self.comments: dict[int, dict[str, Any]] = {}
        self.history: list[dict[str, Any]] = []
        self.executed: list[str] = []
        self.fail_number_lookup = False
        self.duplicate_number_failures = 0
        self._ticket_ids = itertools.count(1)
        self._comment_ids = itertools.count(1)
        self._history_ids = itertools.count(1)
        self._ticks = itertools.count(0)

    def now(self) -> datetime:
        return BASE_TIME + timedelta(seconds=next(self._ticks))

    def add_user(self, user_id: int, name: str, role: Role) -> User:
        self.users[user_id] = {"name": name, "email": f"{name.lower()}@example.com", "role": role.value}
        return User(id=user_id, role=role)

    def history_for(self, ticket_id: int) -> list[dict[str, Any]]:
        return [entry for entry in self.history if entry["ticket_id"] == ticket_id]

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(
            {"tickets": self.tickets, "comments": self.comments, "history": self.history}
        )

    def restore(self, state: dict[str, Any]) -> None:
        self.tickets = state["tickets"]
        self.comments = state["comments"]
        self.history = state["history"]


class FakeConnection:
    """Answers the handful of statements the generator and history recorder issue."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def transaction(self) -> DummyTransaction:
        return DummyTransaction()

    async def execute(self, sql: str, *args: Any) -> str:
        self._store.executed.append(sql)
        if "INSERT INTO ticket_history" in sql:
            ticket_id, user_id, action, old_value, new_value = args
            self._store.history.append(
                {
                    "id": next(self._store._history_ids),
                    "ticket_id": ticket_id,
                    "user_id": user_id,
                    "action": action,
                    "old_value": old_value,
                    "new_value": new_value,
                    "created_at": self._store.now(),
                }
            )
        return "OK"

    async def fetchval(self, sql: str, *args: Any) -> Any:
        if "ticket_number LIKE" in sql:
            if self._store.fail_number_lookup:
                raise ConnectionError("lookup failed")
            prefix = args[0].rstrip("%")
            matching = [row for row in self._store.tickets.values() if row["ticket_number"].startswith(prefix)]
            if not matching:
                return None
            return max(matching, key=lambda row: row["id"])["ticket_number"]
        raise AssertionError(f"unexpected fetchval: {sql}")

    async def fetch(self, sql: str, *args: Any) -> list[dict[str, Any]]:
        if "FROM ticket_history" in sql:
            rows = []
            for entry in self._store.history_for(args[0]):
                user = self._store.users.get(entry["user_id"], {})
                rows.append({**entry, "user_name": user.get("name"), "user_role": user.get("role")})
            return sorted(rows, key=lambda row: (row["created_at"], row["id"]), reverse=True)
        raise AssertionError(f"unexpected fetch: {sql}")


class FakePool:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def acquire(self) -> DummyAcquire:
        return DummyAcquire(FakeConnection(self._store))


class InMemoryTicketRepository:
    """Dict-backed stand-in for ``TicketRepository`` with rollback on error."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    @asynccontextmanager
    async def transaction(self):
        saved = self._store.snapshot()
        try:
            yield FakeConnection(self._store)
        except BaseException:
            self._store.restore(saved)
            raise

    async def ensure_schema(self) -> None:
        return None

    async def subcategory_exists(self, subcategory_id: int, *, connection: Any = None) -> bool:
        return subcategory_id in self._store.subcategories

    async def user_exists(self, user_id: int, *, connection: Any = None) -> bool:
        return user_id in self._store.users

    async def insert_ticket(self, *, ticket_number: str, status: TicketStatus, priority: TicketPriority, connection: Any = None, **fields: Any) -> int:
        if self._store.duplicate_number_failures > 0:
            self._store.duplicate_number_failures -= 1
            raise UniqueViolationError("duplicate key value violates unique constraint")
        if any(row["ticket_number"] == ticket_number for row in self._store.tickets.values()):
            raise UniqueViolationError("duplicate key value violates unique constraint")
        ticket_id = next(self._store._ticket_ids)
        now = self._store.now()
        self._store.tickets[ticket_id] = {
            "id": ticket_id,
            "ticket_number": ticket_number,
            "status": status,
            "priority": priority,
            "resolution": None,
            "created_at": now,
            "updated_at": now,
            "resolved_at": None,
            **fields,
        }
        return ticket_id

    async def get_ticket(self, ticket_id: int, *, for_update: bool = False, connection: Any = None) -> Ticket | None:
        row = self._store.tickets.get(ticket_id)
        return Ticket(**row) if row is not None else None

    async def get_ticket_view(self, ticket_id: int, *, connection: Any = None) -> TicketView | None:
        row = self._store.tickets.get(ticket_id)
        if row is None:
            return None
        customer = self._store.users.get(row["customer_id"], {})
        assignee = self._store.users.get(row["assigned_to"], {}) if row["assigned_to"] else {}
        return TicketView(
            **row,
            customer_name=customer.get("name"),
            customer_email=customer.get("email"),
            subcategory_name=self._store.subcategories.get(row["subcategory_id"]),
            assigned_to_name=assignee.get("name"),
            assigned_to_email=assignee.get("email"),
        )

    async def update_ticket(self, ticket_id: int, assignments: dict[str, Any], *, mark_resolved: bool = False, connection: Any = None) -> bool:
        row = self._store.tickets.get(ticket_id)
        if row is None:
            return False
        assignee = assignments.get("assigned_to")
        if assignee is not None and assignee not in self._store.users:
            raise ForeignKeyViolationError(
                'insert or update on table "tickets" violates foreign key constraint "tickets_assigned_to_fkey"'
            )
        for column, value in assignments.items():
            if column == "status":
                value = TicketStatus(value)
            elif column == "priority":
                value = TicketPriority(value)
            row[column] = value
        now = self._store.now()
        if mark_resolved:
            row["resolved_at"] = now
        row["updated_at"] = now
        return True

    async def touch_ticket(self, ticket_id: int, *, connection: Any = None) -> None:
        if ticket_id in self._store.tickets:
            self._store.tickets[ticket_id]["updated_at"] = self._store.now()

    async def delete_ticket(self, ticket_id: int) -> bool:
        if self._store.tickets.pop(ticket_id, None) is None:
            return False
        self._store.comments = {
            key: value for key, value in self._store.comments.items() if value["ticket_id"] != ticket_id
        }
        self._store.history = [entry for entry in self._store.history if entry["ticket_id"] != ticket_id]
        return True

    async def list_tickets(self, filters, *, limit: int, offset: int):
        rows = list(self._store.tickets.values())
        if filters.customer_id is not None:
            rows = [row for row in rows if row["customer_id"] == filters.customer_id]
        if filters.status is not None:
            rows = [row for row in rows if row["status"] == filters.status]
        if filters.priority is not None:
            rows = [row for row in rows if row["priority"] == filters.priority]
        if filters.unassigned:
            rows = [row for row in rows if row["assigned_to"] is None]
        elif filters.assigned_to is not None:
            rows = [row for row in rows if row["assigned_to"] == filters.assigned_to]
        if filters.ticket_ids:
            rows = [row for row in rows if row["id"] in filters.ticket_ids]
        rows.sort(key=lambda row: (row["created_at"], row["id"]), reverse=True)
        views = [await self.get_ticket_view(row["id"]) for row in rows[offset : offset + limit]]
        return views, len(rows)

    async def insert_comment(self, *, ticket_id: int, user_id: int, comment: str, is_internal: bool, connection: Any = None) -> int:
        comment_id = next(self._store._comment_ids)
        self._store.comments[comment_id] = {
            "id": comment_id,
            "ticket_id": ticket_id,
            "user_id": user_id,
            "comment": comment,
            "is_internal": is_internal,
            "created_at": self._store.now(),
            "updated_at": None,
        }
        return comment_id

    async def get_comment(self, comment_id: int, *, connection: Any = None) -> TicketComment | None:
        row = self._store.comments.get(comment_id)
        return TicketComment(**row) if row is not None else None

    async def list_comments(self, ticket_id: int, *, include_internal: bool, connection: Any = None) -> list[TicketComment]:
        rows = [
            row
            for row in self._store.comments.values()
            if row["ticket_id"] == ticket_id and (include_internal or not row["is_internal"])
        ]
        rows.sort(key=lambda row: (row["created_at"], row["id"]))
        return [TicketComment(**row) for row in rows]

    async def update_comment(self, comment_id: int, comment: str, *, connection: Any = None) -> None:
        row = self._store.comments[comment_id]
        row["comment"] = comment
        row["updated_at"] = self._store.now()

    async def delete_comment(self, comment_id: int, *, connection: Any = None) -> bool:
        return self._store.comments.pop(comment_id, None) is not None


@pytest.fixture
def connection():
    return make_connection()


@pytest.fixture
def pool(connection):
    return DummyPool(connection)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def admin(store) -> User:
    return store.add_user(1, "Admin", Role.ADMIN)


@pytest.fixture
def agent(store) -> User:
    return store.add_user(2, "Agent", Role.EMPLOYEE)


@pytest.fixture
def customer(store) -> User:
    return store.add_user(3, "Carol", Role.CUSTOMER)


@pytest.fixture
def other_customer(store) -> User:
    return store.add_user(4, "Dave", Role.CUSTOMER)


@pytest.fixture
def ticket_repository(store) -> InMemoryTicketRepository:
    return InMemoryTicketRepository(store)


@pytest.fixture
def history(store) -> TicketHistoryRecorder:
    return TicketHistoryRecorder(FakePool(store))


@pytest.fixture
def notifications() -> AsyncMock:
    service = AsyncMock()
    service.create_notification = AsyncMock(return_value=True)
    return service


@pytest.fixture
def ticket_service(store, ticket_repository, history, notifications) -> TicketService:
    return TicketService(
        ticket_repository,
        history=history,
        numbers=TicketNumberGenerator(FakePool(store), clock=lambda: 1_700_000_123.5),
        notifications=notifications,
    )


@pytest.fixture
def comment_service(ticket_repository, history) -> TicketCommentService:
    return TicketCommentService(ticket_repository, history=history)
