"""
Notification service (push channel).
Respects user preferences and quiet hours.
"""
from datetime import datetime, time
from typing import Dict, List, Optional

import pytz
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFound, ValidationError
from ..logging import get_logger
from ..models.models import Notification, UserNotificationPreference
from .time_rules import parse_hhmm, utcnow


log = get_logger(__name__)

TEMPLATES = {
    "order_accepted",
    "order_started",
    "order_completed",
    "order_cancelled",
    "order_paid",
    "deposit_confirmed",
    "work_auto_stopped",
    "ticket_reply",
}


def is_quiet_hours(quiet_hours: Optional[Dict], now: Optional[datetime] = None) -> bool:
    """
    Check if ``now`` falls within the quiet-hours window.

    Args:
        quiet_hours: {"start": "HH:MM", "end": "HH:MM", "timezone": "..."}
        now: aware datetime (defaults to current time)
    """
    if not quiet_hours or not quiet_hours.get("start") or not quiet_hours.get("end"):
        return False
    try:
        tz = pytz.timezone(quiet_hours.get("timezone") or settings.tz_default)
        start_time = parse_hhmm(quiet_hours["start"])
        end_time = parse_hhmm(quiet_hours["end"])
    except (pytz.UnknownTimeZoneError, ValueError):
        return False

    current_time: time = (now or utcnow()).astimezone(tz).time()
    # Windows may span midnight
    if start_time <= end_time:
        return start_time <= current_time <= end_time
    return current_time >= start_time or current_time <= end_time


def should_send_notification(db: Session, user_id, channel: str = "push", now: Optional[datetime] = None) -> bool:
    if channel == "push" and not settings.enable_push:
        return False
    pref = db.query(UserNotificationPreference).filter(UserNotificationPreference.user_id == user_id).first()
    if pref:
        if channel == "push" and not pref.push:
            return False
        if is_quiet_hours(pref.quiet_hours, now):
            return False
    return True


def create_notification(
    db: Session,
    user_id,
    template_key: str,
    payload_json: Optional[Dict] = None,
    channel: str = "push",
) -> Optional[Notification]:
    """
    Record a notification in the current transaction.
    Returns None when the user's preferences suppress it.
    """
    if not should_send_notification(db, user_id, channel):
        log.info("notification_suppressed", user_id=str(user_id), template=template_key)
        return None
    notification = Notification(
        user_id=user_id,
        channel=channel,
        template_key=template_key,
        payload_json=payload_json,
        status="pending",
    )
    db.add(notification)
    return notification


def notify_order_event(db: Session, user_id, event: str, order) -> Optional[Notification]:
    """event: accepted|started|completed|cancelled|paid"""
    payload = {
        "order_id": str(order.id),
        "status": order.status,
        "price": str(order.price),
    }
    if event == "cancelled" and order.cancel_reason:
        payload["reason"] = order.cancel_reason
    return create_notification(db, user_id, f"order_{event}", payload)


def list_notifications(db: Session, user_id, unread_only: bool = False, limit: int = 50) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.read_at.is_(None))
    return query.order_by(Notification.created_at.desc()).limit(limit).all()


def mark_read(db: Session, user_id, notification_id) -> Notification:
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if not notification:
        raise NotFound("Notification not found")
    if notification.read_at is None:
        notification.read_at = utcnow()
        db.commit()
    return notification


def get_preferences(db: Session, user_id) -> UserNotificationPreference:
    pref = db.query(UserNotificationPreference).filter(UserNotificationPreference.user_id == user_id).first()
    if not pref:
        pref = UserNotificationPreference(user_id=user_id, push=True, quiet_hours=None)
        db.add(pref)
        db.flush()
    return pref


def update_preferences(db: Session, user_id, push: Optional[bool] = None, quiet_hours: Optional[Dict] = None) -> UserNotificationPreference:
    if quiet_hours:
        fields = {}
        for key in ("start", "end"):
            try:
                parse_hhmm(str(quiet_hours.get(key) or ""))
            except ValueError:
                fields[f"quiet_hours.{key}"] = "expected HH:MM"
        tz_name = quiet_hours.get("timezone")
        if tz_name and tz_name not in pytz.all_timezones_set:
            fields["quiet_hours.timezone"] = "unknown timezone"
        if fields:
            raise ValidationError.for_fields(fields)

    pref = get_preferences(db, user_id)
    if push is not None:
        pref.push = push
    if quiet_hours is not None:
        pref.quiet_hours = quiet_hours or None
    pref.updated_at = utcnow()
    db.commit()
    return pref
