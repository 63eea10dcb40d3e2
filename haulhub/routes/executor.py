import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import require_active_role
from ..db import get_db
from ..models.models import User
from ..schemas.common import ok
from ..schemas.ledger import AmountRequest
from ..schemas.orders import CancelRequest
from ..services import availability, ledger, orders
from .serializers import serialize_deposit, serialize_order, serialize_transaction, serialize_withdrawal


router = APIRouter(prefix="/executor", tags=["executor"])

executor_only = require_active_role("executor")


# Duty

@router.post("/start-work")
def start_work(user: User = Depends(executor_only), db: Session = Depends(get_db)):
    availability.start_work(db, user.id)
    return ok(availability.status(db, user.id))


@router.post("/stop-work")
def stop_work(user: User = Depends(executor_only), db: Session = Depends(get_db)):
    availability.stop_work(db, user.id)
    return ok(availability.status(db, user.id))


@router.post("/heartbeat")
def heartbeat(user: User = Depends(executor_only), db: Session = Depends(get_db)):
    availability.heartbeat(db, user.id)
    return ok(availability.status(db, user.id))


@router.get("/status")
def work_status(user: User = Depends(executor_only), db: Session = Depends(get_db)):
    return ok(availability.status(db, user.id))


# Orders

@router.get("/orders")
def available_orders(user: User = Depends(executor_only), db: Session = Depends(get_db)):
    rows = orders.list_available_orders(db, user.id)
    return ok([serialize_order(o) for o in rows])


@router.get("/orders/active")
def active_order(user: User = Depends(executor_only), db: Session = Depends(get_db)):
    order = orders.get_active_order(db, user.id)
    return ok(serialize_order(order) if order else None)


@router.get("/orders/history")
def order_history(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(executor_only),
    db: Session = Depends(get_db),
):
    rows = orders.list_orders_for_user(db, user, "executor", scope="history", limit=limit, offset=offset)
    return ok([serialize_order(o) for o in rows])


@router.post("/orders/{order_id}/accept")
def accept_order(order_id: uuid.UUID, user: User = Depends(executor_only), db: Session = Depends(get_db)):
    return ok(serialize_order(orders.accept_order(db, user.id, order_id)))


@router.post("/orders/{order_id}/start")
def start_order(order_id: uuid.UUID, user: User = Depends(executor_only), db: Session = Depends(get_db)):
    return ok(serialize_order(orders.start_order(db, user.id, order_id)))


@router.post("/orders/{order_id}/complete")
def complete_order(order_id: uuid.UUID, user: User = Depends(executor_only), db: Session = Depends(get_db)):
    return ok(serialize_order(orders.complete_order(db, user.id, order_id)))


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: uuid.UUID,
    payload: Optional[CancelRequest] = None,
    user: User = Depends(executor_only),
    db: Session = Depends(get_db),
):
    reason = payload.reason if payload else None
    order = orders.cancel_order(db, user, order_id, actor_role="executor", reason=reason)
    return ok(serialize_order(order))


# Balance

@router.get("/balance")
def balance(user: User = Depends(executor_only), db: Session = Depends(get_db)):
    data = ledger.get_balance(db, user.id)
    return ok({k: str(v) for k, v in data.items()})


@router.get("/transactions")
def transactions(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(executor_only),
    db: Session = Depends(get_db),
):
    rows = ledger.list_transactions(db, user.id, limit=limit, offset=offset)
    return ok([serialize_transaction(t) for t in rows])


@router.post("/deposit")
def deposit(payload: AmountRequest, user: User = Depends(executor_only), db: Session = Depends(get_db)):
    return ok(serialize_deposit(ledger.deposit_to_executor(db, user.id, payload.amount)))


@router.post("/withdraw")
def withdraw(payload: AmountRequest, user: User = Depends(executor_only), db: Session = Depends(get_db)):
    return ok(serialize_withdrawal(ledger.withdraw_from_executor(db, user.id, payload.amount)))
