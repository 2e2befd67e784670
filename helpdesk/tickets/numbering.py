"""Human readable ticket numbers: ``TKT1``, ``TKT2`` ... ``TKT10000``.

Older tickets were numbered ``TKT-<year>-<zero padded n>`` (``TKT-2025-00042``);
the sequence continues from whichever format the latest ticket uses.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable

from helpdesk.services.postgres import connection_scope

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "TKT"


class TicketNumberParseError(ValueError):
    """Raised when a stored ticket number matches neither known format."""


def parse_sequence(ticket_number: str, prefix: str = DEFAULT_PREFIX) -> int:
    """Recover the trailing sequence integer from a stored ticket number."""

    escaped = re.escape(prefix)
    legacy = re.fullmatch(rf"{escaped}-\d{{4}}-(\d+)", ticket_number)
    if legacy:
        return int(legacy.group(1))
    current = re.fullmatch(rf"{escaped}(\d+)", ticket_number)
    if current:
        return int(current.group(1))
    raise TicketNumberParseError(f"Unrecognised ticket number {ticket_number!r}")


def format_ticket_number(sequence: int, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}{sequence}"


def fallback_ticket_number(prefix: str = DEFAULT_PREFIX, *, clock: Callable[[], float] = time.time) -> str:
    """Time derived number used when the sequence cannot be read.

    Only the last six digits of the millisecond timestamp are kept, so
    uniqueness is probabilistic; the unique constraint on
    ``tickets.ticket_number`` catches collisions.
    """

    millis = str(int(clock() * 1000))
    return f"{prefix}{millis[-6:]}"


class TicketNumberGenerator:
    """Produce the next ticket number from the latest persisted one."""

    _LAST_NUMBER_SQL = """
    SELECT ticket_number
    FROM tickets
    WHERE ticket_number LIKE $1
    ORDER BY id DESC
    LIMIT 1
    """

    # Arbitrary application-wide key for pg_advisory_xact_lock.
    _ALLOCATION_LOCK_KEY = 7_236_451

    def __init__(
        self,
        pool: Any,
        *,
        prefix: str = DEFAULT_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pool = pool
        self._prefix = prefix
        self._clock = clock

    @property
    def prefix(self) -> str:
        return self._prefix

    async def lock_allocation(self, connection: Any) -> None:
        """Serialize allocations until the caller's transaction ends."""

        await connection.execute("SELECT pg_advisory_xact_lock($1)", self._ALLOCATION_LOCK_KEY)

    async def next_ticket_number(self, connection: Any = None) -> str:
        try:
            async with connection_scope(self._pool, connection) as conn:
                # Savepoint when joined to a transaction: a failed lookup must not abort the caller's work.
                async with conn.transaction():
                    last_number = await conn.fetchval(self._LAST_NUMBER_SQL, f"{self._prefix}%")
            sequence = 1 if last_number is None else parse_sequence(str(last_number), self._prefix) + 1
        except Exception:
            fallback = fallback_ticket_number(self._prefix, clock=self._clock)
            logger.warning("Ticket number lookup failed, using fallback %s", fallback, exc_info=True)
            return fallback
        return format_ticket_number(sequence, self._prefix)
