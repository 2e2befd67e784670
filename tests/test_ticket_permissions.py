from datetime import datetime, timezone

import pytest

from helpdesk.dependencies.auth import Role, User
from helpdesk.tickets import Ticket, TicketPermissionPolicy, TicketStateMachine
from helpdesk.tickets.errors import NoFieldsToUpdateError, TicketAccessDeniedError, TicketFieldPermissionError
from helpdesk.tickets.state import InvalidTicketTransitionError, TicketPriority, TicketStatus

CUSTOMER = User(3, Role.CUSTOMER)
EMPLOYEE = User(2, Role.EMPLOYEE)
ADMIN = User(1, Role.ADMIN)


def _ticket(*, customer_id: int = 3) -> Ticket:
    now = datetime.now(timezone.utc)
    return Ticket(
        id=1,
        ticket_number="TKT1",
        customer_id=customer_id,
        assigned_to=None,
        category_id=None,
        subcategory_id=None,
        assignment_group_id=None,
        subject="Subject",
        description="Body",
        status=TicketStatus.OPEN,
        priority=TicketPriority.MEDIUM,
        resolution=None,
        created_at=now,
        updated_at=now,
        resolved_at=None,
    )


def test_owner_may_edit_content_fields():
    policy = TicketPermissionPolicy()

    fields = policy.filter_update(CUSTOMER, _ticket(), {"subject": "New", "description": "Text"})

    assert fields == {"subject": "New", "description": "Text"}


@pytest.mark.parametrize("field", ["status", "priority", "assigned_to", "resolution"])
def test_customer_workflow_field_rejects_whole_request(field):
    policy = TicketPermissionPolicy()

    with pytest.raises(TicketFieldPermissionError) as exc:
        policy.filter_update(CUSTOMER, _ticket(), {"subject": "New", field: "x"})

    assert exc.value.status_code == 403
    assert exc.value.message == "You can only update subject and description"


def test_ownership_is_checked_before_fields():
    policy = TicketPermissionPolicy()

    with pytest.raises(TicketAccessDeniedError):
        policy.filter_update(CUSTOMER, _ticket(customer_id=99), {"status": "closed"})


@pytest.mark.parametrize("actor", [EMPLOYEE, ADMIN])
def test_staff_may_write_every_field_on_any_ticket(actor):
    policy = TicketPermissionPolicy()
    requested = {"subject": "s", "status": "closed", "priority": "low", "assigned_to": 2, "resolution": "r"}

    assert policy.filter_update(actor, _ticket(customer_id=99), requested) == requested


def test_unknown_fields_are_dropped_and_empty_result_rejected():
    policy = TicketPermissionPolicy()

    assert policy.filter_update(EMPLOYEE, _ticket(), {"subject": "s", "customer_id": 5}) == {"subject": "s"}
    with pytest.raises(NoFieldsToUpdateError):
        policy.filter_update(EMPLOYEE, _ticket(), {"ticket_number": "TKT9"})


def test_creation_overrides_dropped_for_customers():
    policy = TicketPermissionPolicy()

    overrides = policy.creation_overrides(
        CUSTOMER, requester_id=1, assigned_to=2, assignment_group_id=3, work_notes="note"
    )
    staff = policy.creation_overrides(EMPLOYEE, requester_id=1, assigned_to=2, assignment_group_id=3, work_notes="note")

    assert (overrides.requester_id, overrides.assigned_to, overrides.assignment_group_id, overrides.work_notes) == (
        None,
        None,
        None,
        None,
    )
    assert staff.assigned_to == 2
    assert staff.work_notes == "note"


def test_default_state_machine_is_permissive():
    machine = TicketStateMachine()

    assert machine.is_permissive
    assert machine.initial_state() == TicketStatus.OPEN
    for current in TicketStatus:
        for target in TicketStatus:
            assert machine.can_transition(current, target)


def test_transition_table_restricts_targets():
    machine = TicketStateMachine({TicketStatus.OPEN: [TicketStatus.IN_PROGRESS]})

    assert not machine.is_permissive
    assert machine.can_transition(TicketStatus.OPEN, TicketStatus.IN_PROGRESS)
    assert machine.can_transition(TicketStatus.CLOSED, TicketStatus.CLOSED)
    with pytest.raises(InvalidTicketTransitionError):
        machine.assert_transition(TicketStatus.OPEN, TicketStatus.RESOLVED)
