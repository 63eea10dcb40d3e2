from datetime import date
from typing import Optional

from pydantic import BaseModel, Field


class OrderCreate(BaseModel):
    vehicle_capacity: Optional[int] = None
    city: Optional[str] = None
    street: Optional[str] = None
    house_number: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None  # "HH:MM", local to TZ_DEFAULT
    comment: Optional[str] = None
    is_urgent: bool = False


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class PayRequest(BaseModel):
    method: str  # card|saved_card|cash
    card_token: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
