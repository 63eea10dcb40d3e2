"""
Order lifecycle: creation, dispatch to on-duty executors, progress,
cancellation and admin close.

State changes are conditional UPDATEs (``WHERE status = <expected>``), so two
requests racing on the same order cannot both succeed.
"""
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from ..config import settings
from ..errors import (
    ActiveOrderExists,
    Forbidden,
    InvalidOrderState,
    InvalidTransition,
    NotAssignedExecutor,
    NotFound,
    OrderAlreadyTaken,
    ValidationError,
)
from ..logging import get_logger
from ..models.models import ExecutorProfile, Order, User
from . import availability
from .audit import create_audit_log
from .notifications import notify_order_event
from .order_states import (
    CANCELLABLE,
    EXECUTOR_ACTIVE,
    STAMPS,
    TERMINAL,
    OrderStatus,
    check_transition,
    transition,
    values,
)
from .time_rules import combine_date_time, parse_hhmm, utcnow


log = get_logger(__name__)

CENTS = Decimal("0.01")
MAX_COMMENT = 1000
MAX_REASON = 500


def price_for(vehicle_capacity: int) -> Decimal:
    return (Decimal(vehicle_capacity) * settings.rate_per_cubic_meter).quantize(CENTS, rounding=ROUND_HALF_UP)


def get_order(db: Session, order_id) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise NotFound("Order not found")
    return order


def _apply_transition(db: Session, order: Order, target: OrderStatus, now: datetime, **extra) -> Order:
    """Validate against the table, then compare-and-swap on the current status."""
    current = order.status
    new_status = check_transition(current, target)
    stamp = STAMPS.get(new_status)
    changes = dict(extra, status=new_status.value)
    if stamp:
        changes[stamp] = now
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(order)
        raise InvalidTransition(
            f"Order changed concurrently, now '{order.status}'",
            details={"status": order.status, "target": new_status.value},
        )
    db.refresh(order)
    return order


# Creation

def create_order(
    db: Session,
    client: User,
    vehicle_capacity: Optional[int],
    city: Optional[str],
    street: Optional[str],
    house_number: Optional[str],
    scheduled_date: Optional[date] = None,
    scheduled_time: Optional[str] = None,
    comment: Optional[str] = None,
    is_urgent: bool = False,
    now: Optional[datetime] = None,
) -> Order:
    now = now or utcnow()
    errors: Dict[str, str] = {}
    if vehicle_capacity not in settings.vehicle_capacities:
        errors["vehicle_capacity"] = f"must be one of {settings.vehicle_capacities}"
    for field, value in (("city", city), ("street", street), ("house_number", house_number)):
        if not (value or "").strip():
            errors[field] = "required"
    if comment and len(comment) > MAX_COMMENT:
        errors["comment"] = f"at most {MAX_COMMENT} characters"

    scheduled_at = now
    if not is_urgent:
        parsed_time = None
        if scheduled_date is None:
            errors["scheduled_date"] = "required unless urgent"
        if not scheduled_time:
            errors["scheduled_time"] = "required unless urgent"
        else:
            try:
                parsed_time = parse_hhmm(scheduled_time)
            except ValueError:
                errors["scheduled_time"] = "expected HH:MM"
        if scheduled_date is not None and parsed_time is not None:
            scheduled_at = combine_date_time(scheduled_date, parsed_time)
            if scheduled_at < now.replace(second=0, microsecond=0):
                errors["scheduled_at"] = "must not be in the past"
    if errors:
        raise ValidationError.for_fields(errors)

    order = Order(
        client_id=client.id,
        city=city.strip(),
        street=street.strip(),
        house_number=house_number.strip(),
        vehicle_capacity=vehicle_capacity,
        scheduled_at=scheduled_at,
        comment=(comment or "").strip() or None,
        is_urgent=bool(is_urgent),
        price=price_for(vehicle_capacity),
        status=OrderStatus.PENDING.value,
        created_at=now,
    )
    db.add(order)
    db.flush()
    create_audit_log(db, "order", order.id, "CREATE", actor_id=client.id, actor_role="client", source="api",
                     context={"price": order.price, "vehicle_capacity": vehicle_capacity, "is_urgent": order.is_urgent})
    db.commit()
    db.refresh(order)
    log.info("order_created", order_id=str(order.id), client_id=str(client.id), price=str(order.price))
    return order


# Dispatch

def _capacity_fits(order: Order, profile: ExecutorProfile) -> bool:
    if settings.order_capacity_match == "any":
        return True
    return order.vehicle_capacity <= profile.vehicle_capacity


def list_available_orders(db: Session, executor_id, now: Optional[datetime] = None) -> List[Order]:
    now = now or utcnow()
    profile = availability.get_executor_profile(db, executor_id)
    availability.require_on_duty(db, profile, now)
    query = db.query(Order).filter(Order.status == OrderStatus.PENDING.value, Order.executor_id.is_(None))
    if settings.order_capacity_match != "any":
        query = query.filter(Order.vehicle_capacity <= profile.vehicle_capacity)
    orders = query.order_by(Order.is_urgent.desc(), Order.scheduled_at.asc(), Order.created_at.asc()).all()
    availability.touch(profile, now)
    db.commit()
    return orders


def get_active_order(db: Session, executor_id) -> Optional[Order]:
    return (
        db.query(Order)
        .filter(Order.executor_id == executor_id, Order.status.in_(values(EXECUTOR_ACTIVE)))
        .order_by(Order.accepted_at.desc())
        .first()
    )


def accept_order(db: Session, executor_id, order_id, now: Optional[datetime] = None) -> Order:
    now = now or utcnow()
    profile = availability.get_executor_profile(db, executor_id)
    availability.require_on_duty(db, profile, now)
    order = get_order(db, order_id)

    if order.status != OrderStatus.PENDING.value:
        if order.status == OrderStatus.CANCELLED.value:
            raise InvalidOrderState("Order was cancelled", details={"status": order.status})
        raise OrderAlreadyTaken()
    active = get_active_order(db, executor_id)
    if active is not None:
        raise ActiveOrderExists(details={"order_id": str(active.id)})
    if not _capacity_fits(order, profile):
        raise ValidationError.for_fields(
            {"vehicle_capacity": f"order needs {order.vehicle_capacity} m3, vehicle carries {profile.vehicle_capacity} m3"}
        )
    check_transition(order.status, OrderStatus.ACCEPTED)

    busy = aliased(Order)
    holds_active = (
        select(busy.id)
        .where(busy.executor_id == executor_id, busy.status.in_(values(EXECUTOR_ACTIVE)))
        .exists()
    )
    try:
        result = db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == OrderStatus.PENDING.value,
                Order.executor_id.is_(None),
                ~holds_active,
            )
            .values(status=OrderStatus.ACCEPTED.value, executor_id=executor_id, accepted_at=now)
            .execution_options(synchronize_session=False)
        )
    except IntegrityError:
        # Partial unique index caught a concurrent accept by the same executor
        result = None
    if result is None or result.rowcount != 1:
        db.rollback()
        log.info("order_accept_lost", order_id=str(order_id), executor_id=str(executor_id))
        active = get_active_order(db, executor_id)
        if active is not None:
            raise ActiveOrderExists(details={"order_id": str(active.id)})
        raise OrderAlreadyTaken()

    db.refresh(order)
    availability.touch(profile, now)
    create_audit_log(db, "order", order.id, "ACCEPT", actor_id=executor_id, actor_role="executor", source="api")
    notify_order_event(db, order.client_id, "accepted", order)
    db.commit()
    log.info("order_accepted", order_id=str(order.id), executor_id=str(executor_id))
    return order


def _assigned_order(db: Session, executor_id, order_id) -> Order:
    order = get_order(db, order_id)
    if order.executor_id != executor_id:
        raise NotAssignedExecutor()
    return order


def start_order(db: Session, executor_id, order_id, now: Optional[datetime] = None) -> Order:
    now = now or utcnow()
    order = _assigned_order(db, executor_id, order_id)
    _apply_transition(db, order, OrderStatus.IN_PROGRESS, now)
    availability.touch(availability.get_executor_profile(db, executor_id), now)
    create_audit_log(db, "order", order.id, "START", actor_id=executor_id, actor_role="executor", source="api")
    notify_order_event(db, order.client_id, "started", order)
    db.commit()
    log.info("order_started", order_id=str(order.id))
    return order


def complete_order(db: Session, executor_id, order_id, now: Optional[datetime] = None) -> Order:
    now = now or utcnow()
    order = _assigned_order(db, executor_id, order_id)
    _apply_transition(db, order, OrderStatus.AWAITING_PAYMENT, now)
    db.execute(
        update(ExecutorProfile)
        .where(ExecutorProfile.user_id == executor_id)
        .values(completed_orders_count=ExecutorProfile.completed_orders_count + 1)
        .execution_options(synchronize_session=False)
    )
    profile = availability.get_executor_profile(db, executor_id)
    db.refresh(profile)
    availability.touch(profile, now)
    create_audit_log(db, "order", order.id, "COMPLETE", actor_id=executor_id, actor_role="executor", source="api")
    notify_order_event(db, order.client_id, "completed", order)
    db.commit()
    log.info("order_completed", order_id=str(order.id))
    return order


def cancel_order(
    db: Session,
    actor: User,
    order_id,
    actor_role: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    """actor_role: client|executor|admin|system"""
    now = now or utcnow()
    order = get_order(db, order_id)
    if actor_role == "client" and order.client_id != actor.id:
        raise Forbidden("Only the order's client may cancel it")
    if actor_role == "executor" and order.executor_id != actor.id:
        raise Forbidden("Only the assigned executor may cancel it")
    if actor_role == "admin" and "admin" not in actor.role_names:
        raise Forbidden()
    if reason and len(reason) > MAX_REASON:
        raise ValidationError.for_fields({"reason": f"at most {MAX_REASON} characters"})
    if order.status not in values(CANCELLABLE):
        raise InvalidTransition(
            f"Cannot cancel an order in '{order.status}'",
            details={"status": order.status, "target": OrderStatus.CANCELLED.value},
        )

    _apply_transition(
        db, order, OrderStatus.CANCELLED, now,
        cancel_reason=(reason or "").strip() or None,
        cancelled_by_id=actor.id,
        cancelled_by_role=actor_role,
    )
    create_audit_log(db, "order", order.id, "CANCEL", actor_id=actor.id, actor_role=actor_role, source="api",
                     context={"reason": order.cancel_reason})
    if actor_role != "client":
        notify_order_event(db, order.client_id, "cancelled", order)
    if order.executor_id is not None and actor_role != "executor":
        notify_order_event(db, order.executor_id, "cancelled", order)
    db.commit()
    log.info("order_cancelled", order_id=str(order.id), by=actor_role)
    return order


def close_order(db: Session, admin: User, order_id, now: Optional[datetime] = None) -> Order:
    """Admin-only: work accepted, payment still to collect."""
    now = now or utcnow()
    if "admin" not in admin.role_names:
        raise Forbidden()
    order = get_order(db, order_id)
    _apply_transition(db, order, OrderStatus.COMPLETED, now)
    create_audit_log(db, "order", order.id, "CLOSE", actor_id=admin.id, actor_role="admin", source="api")
    db.commit()
    return order


def cancel_open_orders_for_account(db: Session, user: User, now: Optional[datetime] = None) -> int:
    """Cancel what the user still has open; the caller commits."""
    now = now or utcnow()
    open_as_client = values({OrderStatus.PENDING, OrderStatus.ACCEPTED, OrderStatus.IN_PROGRESS})
    orders = (
        db.query(Order)
        .filter(
            ((Order.client_id == user.id) & Order.status.in_(open_as_client))
            | ((Order.executor_id == user.id) & Order.status.in_(values(EXECUTOR_ACTIVE)))
        )
        .all()
    )
    for order in orders:
        role = "client" if order.client_id == user.id else "executor"
        transition(order, OrderStatus.CANCELLED, now)
        order.cancel_reason = "account_deleted"
        order.cancelled_by_id = user.id
        order.cancelled_by_role = role
        create_audit_log(db, "order", order.id, "CANCEL", actor_id=user.id, actor_role=role, source="api",
                         context={"reason": "account_deleted"})
        counterparty = order.executor_id if role == "client" else order.client_id
        if counterparty is not None:
            notify_order_event(db, counterparty, "cancelled", order)
    return len(orders)


# Reads

def can_view(db: Session, viewer: User, order: Order, now: Optional[datetime] = None) -> bool:
    if order.client_id == viewer.id or order.executor_id == viewer.id:
        return True
    if "admin" in viewer.role_names:
        return True
    if order.status == OrderStatus.PENDING.value and viewer.executor_profile is not None:
        return availability.is_on_duty(viewer.executor_profile, now)
    return False


def get_order_for_viewer(db: Session, viewer: User, order_id, now: Optional[datetime] = None) -> Order:
    order = get_order(db, order_id)
    if not can_view(db, viewer, order, now):
        raise Forbidden("Order is not visible to this user")
    return order


SCOPES = ("active", "history", "all")


def list_orders_for_user(db: Session, user: User, role: str, scope: str = "all", limit: int = 100, offset: int = 0) -> List[Order]:
    if scope not in SCOPES:
        raise ValidationError.for_fields({"scope": f"must be one of {list(SCOPES)}"})
    if role == "client":
        query = db.query(Order).filter(Order.client_id == user.id)
        if scope == "active":
            query = query.filter(Order.status.notin_(values(TERMINAL)))
        elif scope == "history":
            query = query.filter(Order.status.in_(values(TERMINAL)))
    elif role == "executor":
        query = db.query(Order).filter(Order.executor_id == user.id)
        if scope == "active":
            query = query.filter(Order.status.in_(values(EXECUTOR_ACTIVE)))
        elif scope == "history":
            query = query.filter(Order.status.notin_(values(EXECUTOR_ACTIVE)))
    else:
        raise ValidationError.for_fields({"role": "must be client or executor"})
    return query.order_by(Order.created_at.desc()).limit(limit).offset(offset).all()
