import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_active_role
from ..db import get_db
from ..models.models import User
from ..schemas.common import ok
from ..schemas.orders import CancelRequest, OrderCreate, PayRequest
from ..services import ledger, orders
from .serializers import serialize_order, serialize_payment


router = APIRouter(prefix="/orders", tags=["orders"])

client_only = require_active_role("client")


@router.post("")
def create_order(payload: OrderCreate, user: User = Depends(client_only), db: Session = Depends(get_db)):
    order = orders.create_order(db, user, **payload.model_dump())
    return ok(serialize_order(order))


@router.get("/my")
def my_orders(
    scope: str = Query("active"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(client_only),
    db: Session = Depends(get_db),
):
    rows = orders.list_orders_for_user(db, user, "client", scope=scope, limit=limit, offset=offset)
    return ok([serialize_order(o) for o in rows])


@router.get("/history")
def order_history(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(client_only),
    db: Session = Depends(get_db),
):
    rows = orders.list_orders_for_user(db, user, "client", scope="history", limit=limit, offset=offset)
    return ok([serialize_order(o) for o in rows])


@router.get("/{order_id}")
def get_order(order_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    order = orders.get_order_for_viewer(db, user, order_id)
    return ok(serialize_order(order))


@router.post("/{order_id}/cancel")
def cancel_order(
    order_id: uuid.UUID,
    payload: Optional[CancelRequest] = None,
    user: User = Depends(client_only),
    db: Session = Depends(get_db),
):
    reason = payload.reason if payload else None
    order = orders.cancel_order(db, user, order_id, actor_role="client", reason=reason)
    return ok(serialize_order(order))


@router.post("/{order_id}/pay")
def pay_order(order_id: uuid.UUID, payload: PayRequest, user: User = Depends(client_only), db: Session = Depends(get_db)):
    payment = ledger.pay_order(
        db,
        user,
        order_id,
        method=payload.method,
        card_token=payload.card_token,
        idempotency_key=payload.idempotency_key,
    )
    return ok({"payment": serialize_payment(payment), "order": serialize_order(payment.order)})

