from datetime import timedelta

import pytest

from haulhub.errors import InsufficientBalance, NotOnDuty, NotVerified, RoleNotGranted
from haulhub.models.models import AuditLog, Notification
from haulhub.services import availability
from haulhub.services.time_rules import utcnow


def test_start_work_needs_minimum_balance(factory):
    poor = factory.executor(balance="199.99")
    with pytest.raises(InsufficientBalance) as exc:
        availability.start_work(factory.db, poor.id)
    assert exc.value.details == {"balance": "199.99", "min_balance": "200"}

    exact = factory.executor(balance="200")
    assert availability.start_work(factory.db, exact.id).is_working


def test_start_work_needs_verification(factory):
    executor = factory.executor(verified=False)
    with pytest.raises(NotVerified):
        availability.start_work(factory.db, executor.id)


def test_clients_have_no_duty(factory):
    client = factory.client()
    with pytest.raises(RoleNotGranted):
        availability.start_work(factory.db, client.id)


def test_start_work_twice_keeps_session(factory):
    executor = factory.executor()
    t0 = utcnow()
    first = availability.start_work(factory.db, executor.id, now=t0)
    started = first.work_started_at
    second = availability.start_work(factory.db, executor.id, now=t0 + timedelta(minutes=5))
    assert second.work_started_at == started
    actions = [a.action for a in factory.db.query(AuditLog).filter(AuditLog.entity_id == executor.id)]
    assert actions.count("START_WORK") == 1


def test_heartbeat_extends_lease(factory):
    executor = factory.executor()
    t0 = utcnow()
    availability.start_work(factory.db, executor.id, now=t0)
    availability.heartbeat(factory.db, executor.id, now=t0 + timedelta(minutes=20))
    # 45 minutes after start but only 25 after the heartbeat
    assert availability.status(factory.db, executor.id, now=t0 + timedelta(minutes=45))["is_working"]


def test_idle_executor_is_auto_stopped(factory):
    executor = factory.executor()
    t0 = utcnow()
    availability.start_work(factory.db, executor.id, now=t0)

    assert availability.expire_idle(factory.db, now=t0 + timedelta(minutes=29)) == 0
    assert availability.expire_idle(factory.db, now=t0 + timedelta(minutes=31)) == 1
    # Already stopped: the sweep does nothing the second time
    assert availability.expire_idle(factory.db, now=t0 + timedelta(minutes=32)) == 0

    profile = availability.get_executor_profile(factory.db, executor.id)
    factory.db.refresh(profile)
    assert profile.is_working is False
    notes = factory.db.query(Notification).filter(Notification.user_id == executor.id,
                                                  Notification.template_key == "work_auto_stopped").all()
    assert len(notes) == 1


def test_lapsed_lease_is_cleared_on_next_check(factory):
    executor = factory.executor()
    t0 = utcnow()
    availability.start_work(factory.db, executor.id, now=t0)
    with pytest.raises(NotOnDuty):
        availability.heartbeat(factory.db, executor.id, now=t0 + timedelta(minutes=40))
    assert factory.db.query(Notification).filter(Notification.template_key == "work_auto_stopped").count() == 1


def test_stop_work_always_succeeds(factory):
    executor = factory.executor()
    availability.stop_work(factory.db, executor.id)
    availability.start_work(factory.db, executor.id)
    profile = availability.stop_work(factory.db, executor.id)
    assert profile.is_working is False
    assert profile.lease_expires_at is None
    with pytest.raises(NotOnDuty):
        availability.heartbeat(factory.db, executor.id)


def test_watchdog_sweep_uses_its_own_session(factory, session_factory):
    from haulhub.services.watchdog import InactivityWatchdog

    executor = factory.executor()
    availability.start_work(factory.db, executor.id, now=utcnow() - timedelta(hours=1))
    watchdog = InactivityWatchdog(interval_s=60, session_factory=session_factory)
    assert watchdog.sweep() == 1
