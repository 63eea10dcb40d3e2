import hmac
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from ..auth.security import require_active_role
from ..config import settings
from ..db import get_db
from ..errors import Unauthorized, ValidationError
from ..logging import get_logger
from ..models.models import User
from ..schemas.common import ok
from ..schemas.ledger import DepositWebhook, PaymentMethodCreate
from ..services import ledger
from .serializers import serialize_deposit, serialize_payment_method


router = APIRouter(prefix="/payments", tags=["payments"])
log = get_logger(__name__)

client_only = require_active_role("client")


@router.get("/methods")
def list_methods(user: User = Depends(client_only), db: Session = Depends(get_db)):
    return ok([serialize_payment_method(m) for m in ledger.list_payment_methods(db, user)])


@router.post("/methods")
def add_method(payload: PaymentMethodCreate, user: User = Depends(client_only), db: Session = Depends(get_db)):
    method = ledger.add_payment_method(db, user, payload.card_token, payload.card_last4, payload.card_type)
    return ok(serialize_payment_method(method))


@router.delete("/methods/{method_id}")
def remove_method(method_id: uuid.UUID, user: User = Depends(client_only), db: Session = Depends(get_db)):
    ledger.remove_payment_method(db, user, method_id)
    return ok({"deleted": True})


@router.post("/webhook")
def gateway_webhook(
    payload: DepositWebhook,
    x_webhook_secret: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    if not x_webhook_secret or not hmac.compare_digest(
        x_webhook_secret.encode("utf-8"), settings.payment_webhook_secret.encode("utf-8")
    ):
        log.warning("webhook_rejected")
        raise Unauthorized("Invalid webhook secret")
    if payload.status not in ("succeeded", "failed"):
        raise ValidationError.for_fields({"status": "must be succeeded or failed"})
    deposit = ledger.confirm_deposit(
        db,
        deposit_id=payload.deposit_id,
        external_id=payload.external_id,
        succeeded=payload.status == "succeeded",
    )
    return ok(serialize_deposit(deposit))
