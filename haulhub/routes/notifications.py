import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import User
from ..schemas.common import ok
from ..schemas.support import NotificationPreferencesUpdate
from ..services import notifications
from .serializers import serialize_notification


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    unread: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rows = notifications.list_notifications(db, user.id, unread_only=unread, limit=limit)
    return ok([serialize_notification(n) for n in rows])


@router.post("/{notification_id}/read")
def mark_read(notification_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok(serialize_notification(notifications.mark_read(db, user.id, notification_id)))


@router.put("/preferences")
def update_preferences(
    payload: NotificationPreferencesUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    fields = payload.model_dump(exclude_unset=True)
    quiet_hours = None
    if "quiet_hours" in fields:
        # null clears the window
        quiet_hours = fields["quiet_hours"] or {}
    pref = notifications.update_preferences(db, user.id, push=fields.get("push"), quiet_hours=quiet_hours)
    return ok({"push": pref.push, "quiet_hours": pref.quiet_hours})
