import uuid
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class AmountRequest(BaseModel):
    amount: Decimal


class PaymentMethodCreate(BaseModel):
    card_token: str
    card_last4: str
    card_type: Optional[str] = None


class DepositWebhook(BaseModel):
    deposit_id: Optional[uuid.UUID] = None
    external_id: Optional[str] = None
    status: str  # succeeded|failed
