from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class InvalidTicketTransitionError(ValueError):
    """Raised when a configured transition table forbids a status change."""


class TicketStateMachine:
    """Validate ticket status transitions.

    Without a transition table every status may follow every other one, so
    staff can move a ticket anywhere (``closed -> open`` included). Passing
    ``transitions`` restricts the allowed targets per current status.
    """

    def __init__(self, transitions: Mapping[TicketStatus, Sequence[TicketStatus]] | None = None) -> None:
        self._transitions = transitions

    @staticmethod
    def initial_state() -> TicketStatus:
        return TicketStatus.OPEN

    @property
    def is_permissive(self) -> bool:
        return self._transitions is None

    def can_transition(self, current: TicketStatus, target: TicketStatus) -> bool:
        if current == target or self._transitions is None:
            return True
        return target in self._transitions.get(current, ())

    def assert_transition(self, current: TicketStatus, target: TicketStatus) -> None:
        if not self.can_transition(current, target):
            raise InvalidTicketTransitionError(f"Invalid ticket status transition: {current.value} -> {target.value}")
