import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..db import get_db
from ..models.models import AuditLog, User
from ..schemas.common import ok
from ..schemas.orders import CancelRequest
from ..schemas.support import MessageCreate, TicketStatusUpdate
from ..services import accounts, orders, support
from ..services.audit import get_audit_logs
from .serializers import serialize_executor_profile, serialize_message, serialize_order, serialize_ticket


router = APIRouter(prefix="/admin", tags=["admin"])

admin_only = require_roles("admin")


class VerifyRequest(BaseModel):
    verified: bool = True


def _serialize_audit(entry: AuditLog) -> dict:
    return {
        "id": str(entry.id),
        "entity_type": entry.entity_type,
        "entity_id": str(entry.entity_id),
        "action": entry.action,
        "actor_id": str(entry.actor_id) if entry.actor_id else None,
        "actor_role": entry.actor_role,
        "source": entry.source,
        "changes": entry.changes_json,
        "context": entry.context,
        "timestamp_utc": entry.timestamp_utc.isoformat() if entry.timestamp_utc else None,
        "integrity_hash": entry.integrity_hash,
    }


@router.post("/executors/{executor_id}/verify")
def verify_executor(
    executor_id: uuid.UUID,
    payload: Optional[VerifyRequest] = None,
    admin: User = Depends(admin_only),
    db: Session = Depends(get_db),
):
    verified = payload.verified if payload else True
    profile = accounts.verify_executor(db, admin, executor_id, verified=verified)
    return ok(serialize_executor_profile(profile))


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: uuid.UUID,
    payload: Optional[CancelRequest] = None,
    admin: User = Depends(admin_only),
    db: Session = Depends(get_db),
):
    reason = payload.reason if payload else None
    return ok(serialize_order(orders.cancel_order(db, admin, order_id, actor_role="admin", reason=reason)))


@router.post("/orders/{order_id}/close")
def close_order(order_id: uuid.UUID, admin: User = Depends(admin_only), db: Session = Depends(get_db)):
    return ok(serialize_order(orders.close_order(db, admin, order_id)))


@router.get("/tickets")
def list_tickets(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: User = Depends(admin_only),
    db: Session = Depends(get_db),
):
    rows = support.list_all_tickets(db, status=status, limit=limit, offset=offset)
    return ok([serialize_ticket(t) for t in rows])


@router.post("/tickets/{ticket_id}/messages")
def reply_ticket(
    ticket_id: uuid.UUID,
    payload: MessageCreate,
    admin: User = Depends(admin_only),
    db: Session = Depends(get_db),
):
    return ok(serialize_message(support.post_message(db, admin, ticket_id, payload.body, as_admin=True)))


@router.patch("/tickets/{ticket_id}")
def set_ticket_status(
    ticket_id: uuid.UUID,
    payload: TicketStatusUpdate,
    admin: User = Depends(admin_only),
    db: Session = Depends(get_db),
):
    return ok(serialize_ticket(support.set_ticket_status(db, admin, ticket_id, payload.status), with_messages=True))


@router.get("/audit")
def audit_log(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: User = Depends(admin_only),
    db: Session = Depends(get_db),
):
    rows = get_audit_logs(db, entity_type=entity_type, entity_id=entity_id, limit=limit, offset=offset)
    return ok([_serialize_audit(e) for e in rows])
