"""
Order status table.

The only place that knows which status may follow which. Services call
``transition`` before mutating an order; the conditional UPDATEs in
``orders`` / ``ledger`` use the same sets to build their WHERE clauses.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional

from ..errors import InvalidTransition


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETED = "completed"
    PAID = "paid"
    CANCELLED = "cancelled"


TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED}),
    OrderStatus.IN_PROGRESS: frozenset({OrderStatus.AWAITING_PAYMENT, OrderStatus.CANCELLED}),
    OrderStatus.AWAITING_PAYMENT: frozenset({OrderStatus.PAID, OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.PAID}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# executor_id must be set in these
ASSIGNED = frozenset({
    OrderStatus.ACCEPTED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.AWAITING_PAYMENT,
    OrderStatus.COMPLETED,
    OrderStatus.PAID,
})
TERMINAL = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
CANCELLABLE = frozenset(s for s, targets in TRANSITIONS.items() if OrderStatus.CANCELLED in targets)
PAYABLE = frozenset(s for s, targets in TRANSITIONS.items() if OrderStatus.PAID in targets)
# An executor holds at most one order in these
EXECUTOR_ACTIVE = frozenset({OrderStatus.ACCEPTED, OrderStatus.IN_PROGRESS})

# Timestamp column stamped on entering a status
STAMPS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.IN_PROGRESS: "started_at",
    OrderStatus.AWAITING_PAYMENT: "completed_at",
    OrderStatus.COMPLETED: "closed_at",
    OrderStatus.PAID: "paid_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def values(statuses) -> list:
    return sorted(s.value for s in statuses)


def _raw(status) -> str:
    return str(getattr(status, "value", status))


def can_transition(current, target) -> bool:
    try:
        return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]
    except ValueError:
        return False


def check_transition(current, target) -> OrderStatus:
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move order from '{_raw(current)}' to '{_raw(target)}'",
            details={"status": _raw(current), "target": _raw(target)},
        )
    return OrderStatus(target)


def transition(order, target, now=None) -> OrderStatus:
    """Validate and apply ``order.status -> target``; stamps the matching timestamp."""
    new_status = check_transition(order.status, target)
    order.status = new_status.value
    stamp = STAMPS.get(new_status)
    if stamp and now is not None:
        setattr(order, stamp, now)
    return new_status


def check_invariants(order) -> Optional[str]:
    """Return a description of the first violated invariant, or None."""
    try:
        status = OrderStatus(order.status)
    except ValueError:
        return f"unknown status {order.status!r}"
    if status == OrderStatus.PENDING and order.executor_id is not None:
        return "pending order has an executor"
    if status in ASSIGNED and order.executor_id is None:
        return f"{status.value} order has no executor"
    if order.price is None or order.price < 0:
        return "price must be non-negative"
    return None
