"""Ticket lifecycle: numbering, permissions, history, comments and followers."""

from .comments import TicketCommentService
from .followers import FollowerRepository, FollowerService
from .history import TicketHistoryRecorder
from .models import (
    HistoryAction,
    Ticket,
    TicketComment,
    TicketDetail,
    TicketFollower,
    TicketHistoryEntry,
    TicketPage,
    TicketView,
)
from .numbering import TicketNumberGenerator
from .permissions import TicketPermissionPolicy
from .repository import TicketRepository
from .service import TicketService
from .state import TicketPriority, TicketStateMachine, TicketStatus

__all__ = [
    "FollowerRepository",
    "FollowerService",
    "HistoryAction",
    "Ticket",
    "TicketComment",
    "TicketCommentService",
    "TicketDetail",
    "TicketFollower",
    "TicketHistoryEntry",
    "TicketHistoryRecorder",
    "TicketNumberGenerator",
    "TicketPage",
    "TicketPermissionPolicy",
    "TicketPriority",
    "TicketRepository",
    "TicketService",
    "TicketStateMachine",
    "TicketStatus",
    "TicketView",
]
