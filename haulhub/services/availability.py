"""
Executor availability: the on-duty lease.

An executor is on duty while ``is_working`` is set and ``lease_expires_at``
lies in the future. Qualifying activity pushes the lease forward; lapsed
leases are cleared lazily on every check and by the watchdog sweep.
"""
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import InsufficientBalance, NotOnDuty, NotVerified, RoleNotGranted
from ..logging import get_logger
from ..models.models import ExecutorProfile
from .audit import create_audit_log
from .notifications import create_notification
from .time_rules import ensure_utc, is_expired, lease_deadline, utcnow


log = get_logger(__name__)


def get_executor_profile(db: Session, executor_id) -> ExecutorProfile:
    profile = db.query(ExecutorProfile).filter(ExecutorProfile.user_id == executor_id).first()
    if not profile:
        raise RoleNotGranted("Executor role is not granted")
    return profile


def is_on_duty(profile: ExecutorProfile, now: Optional[datetime] = None) -> bool:
    return bool(profile.is_working) and not is_expired(profile.lease_expires_at, now or utcnow())


def can_work(profile: ExecutorProfile) -> bool:
    return bool(profile.is_verified) and profile.balance >= settings.min_work_balance


def _auto_stop(db: Session, profile: ExecutorProfile, now: datetime, source: str) -> bool:
    """Clear a lapsed lease. Returns True if this call moved the executor off duty."""
    result = db.execute(
        update(ExecutorProfile)
        .where(
            ExecutorProfile.id == profile.id,
            ExecutorProfile.is_working.is_(True),
            or_(ExecutorProfile.lease_expires_at.is_(None), ExecutorProfile.lease_expires_at <= now),
        )
        .values(is_working=False, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.refresh(profile)
    create_notification(db, profile.user_id, "work_auto_stopped", {
        "reason": "inactivity",
        "timeout_min": settings.inactivity_timeout_min,
    })
    create_audit_log(db, "executor", profile.user_id, "AUTO_STOP_WORK", actor_role="system", source=source)
    log.info("work_auto_stopped", executor_id=str(profile.user_id), source=source)
    return True


def expire_if_lapsed(db: Session, profile: ExecutorProfile, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    if profile.is_working and is_expired(profile.lease_expires_at, now):
        stopped = _auto_stop(db, profile, now, source="api")
        if stopped:
            db.commit()
        return stopped
    return False


def start_work(db: Session, executor_id, now: Optional[datetime] = None) -> ExecutorProfile:
    now = now or utcnow()
    profile = get_executor_profile(db, executor_id)
    expire_if_lapsed(db, profile, now)
    if not profile.is_verified:
        raise NotVerified()
    if profile.balance < settings.min_work_balance:
        raise InsufficientBalance(details={
            "balance": str(profile.balance),
            "min_balance": str(settings.min_work_balance),
        })

    already = is_on_duty(profile, now)
    if not already:
        profile.is_working = True
        profile.work_started_at = now
        create_audit_log(db, "executor", executor_id, "START_WORK", actor_id=executor_id, actor_role="executor", source="api")
    profile.last_activity_at = now
    profile.lease_expires_at = lease_deadline(now)
    db.commit()
    if not already:
        log.info("work_started", executor_id=str(executor_id))
    return profile


def stop_work(db: Session, executor_id, now: Optional[datetime] = None) -> ExecutorProfile:
    """Always succeeds. Assigned orders are left as they are."""
    profile = get_executor_profile(db, executor_id)
    if profile.is_working:
        create_audit_log(db, "executor", executor_id, "STOP_WORK", actor_id=executor_id, actor_role="executor", source="api")
        log.info("work_stopped", executor_id=str(executor_id))
    profile.is_working = False
    profile.lease_expires_at = None
    db.commit()
    return profile


def touch(profile: ExecutorProfile, now: Optional[datetime] = None) -> None:
    """Record qualifying activity; the caller commits."""
    now = now or utcnow()
    profile.last_activity_at = now
    if is_on_duty(profile, now):
        profile.lease_expires_at = lease_deadline(now)


def require_on_duty(db: Session, profile: ExecutorProfile, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    expire_if_lapsed(db, profile, now)
    if not is_on_duty(profile, now):
        raise NotOnDuty()


def heartbeat(db: Session, executor_id, now: Optional[datetime] = None) -> ExecutorProfile:
    now = now or utcnow()
    profile = get_executor_profile(db, executor_id)
    require_on_duty(db, profile, now)
    touch(profile, now)
    db.commit()
    return profile


def expire_idle(db: Session, now: Optional[datetime] = None, source: str = "watchdog") -> int:
    """Move every executor whose lease lapsed off duty. Returns how many were stopped."""
    now = now or utcnow()
    candidates = (
        db.query(ExecutorProfile)
        .filter(
            ExecutorProfile.is_working.is_(True),
            or_(ExecutorProfile.lease_expires_at.is_(None), ExecutorProfile.lease_expires_at <= now),
        )
        .all()
    )
    stopped = 0
    for profile in candidates:
        if _auto_stop(db, profile, now, source=source):
            stopped += 1
    db.commit()
    if stopped:
        log.info("idle_executors_expired", count=stopped)
    return stopped


def status(db: Session, executor_id, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    profile = get_executor_profile(db, executor_id)
    expire_if_lapsed(db, profile, now)
    on_duty = is_on_duty(profile, now)
    return {
        "is_working": on_duty,
        "lease_expires_at": ensure_utc(profile.lease_expires_at) if on_duty else None,
        "work_started_at": ensure_utc(profile.work_started_at) if on_duty else None,
        "balance": profile.balance,
        "min_balance": settings.min_work_balance,
        "can_work": can_work(profile),
        "is_verified": profile.is_verified,
    }
