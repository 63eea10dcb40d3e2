from typing import Optional

from pydantic import BaseModel


class TicketCreate(BaseModel):
    subject: str
    description: str


class MessageCreate(BaseModel):
    body: str


class TicketStatusUpdate(BaseModel):
    status: str


class QuietHours(BaseModel):
    start: str
    end: str
    timezone: Optional[str] = None


class NotificationPreferencesUpdate(BaseModel):
    push: Optional[bool] = None
    quiet_hours: Optional[QuietHours] = None
