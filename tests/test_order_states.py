from decimal import Decimal
from types import SimpleNamespace

import pytest

from haulhub.errors import InvalidTransition
from haulhub.services.order_states import (
    ASSIGNED,
    CANCELLABLE,
    PAYABLE,
    TERMINAL,
    TRANSITIONS,
    OrderStatus,
    can_transition,
    check_invariants,
    transition,
)


def test_table_is_closed_over_known_statuses():
    assert set(TRANSITIONS) == set(OrderStatus)
    for targets in TRANSITIONS.values():
        assert targets <= set(OrderStatus)


def test_terminal_and_derived_sets():
    assert TERMINAL == {OrderStatus.PAID, OrderStatus.CANCELLED}
    assert CANCELLABLE == {OrderStatus.PENDING, OrderStatus.ACCEPTED, OrderStatus.IN_PROGRESS}
    assert PAYABLE == {OrderStatus.AWAITING_PAYMENT, OrderStatus.COMPLETED}
    assert OrderStatus.PENDING not in ASSIGNED


@pytest.mark.parametrize(
    "current,target",
    [
        ("pending", "accepted"),
        ("accepted", "in_progress"),
        ("in_progress", "awaiting_payment"),
        ("awaiting_payment", "paid"),
        ("awaiting_payment", "completed"),
        ("completed", "paid"),
        ("accepted", "cancelled"),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        ("pending", "in_progress"),
        ("accepted", "awaiting_payment"),
        ("awaiting_payment", "cancelled"),
        ("paid", "cancelled"),
        ("cancelled", "pending"),
        ("pending", "bogus"),
    ],
)
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)


def test_transition_applies_status_and_stamp():
    order = SimpleNamespace(status="pending", accepted_at=None)
    transition(order, OrderStatus.ACCEPTED, now="t0")
    assert order.status == "accepted"
    assert order.accepted_at == "t0"


def test_invalid_transition_reports_state():
    order = SimpleNamespace(status="paid")
    with pytest.raises(InvalidTransition) as exc:
        transition(order, "cancelled")
    assert exc.value.code == "INVALID_ORDER_STATE"
    assert exc.value.details == {"status": "paid", "target": "cancelled"}
    assert order.status == "paid"


def test_check_invariants():
    ok = SimpleNamespace(status="accepted", executor_id="e1", price=Decimal("1800"))
    assert check_invariants(ok) is None
    assert check_invariants(SimpleNamespace(status="pending", executor_id="e1", price=Decimal("1"))) is not None
    assert check_invariants(SimpleNamespace(status="paid", executor_id=None, price=Decimal("1"))) is not None
    cancelled = SimpleNamespace(status="cancelled", executor_id=None, price=Decimal("1"))
    assert check_invariants(cancelled) is None
