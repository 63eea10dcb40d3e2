from datetime import date, datetime, time
from decimal import Decimal

import pytest
import pytz

from haulhub.models.models import AuditLog
from haulhub.services.audit import compute_diff, create_audit_log, get_audit_logs
from haulhub.services.time_rules import combine_date_time, is_expired, local_to_utc, parse_hhmm


def test_audit_entries_are_hashed_and_jsonable(factory):
    user = factory.client()
    entry = create_audit_log(factory.db, "user", user.id, "TEST", actor_id=user.id, actor_role="client",
                             context={"amount": Decimal("10.50")})
    factory.db.commit()
    assert len(entry.integrity_hash) == 64
    assert entry.context == {"amount": "10.50"}

    other = create_audit_log(factory.db, "user", user.id, "TEST", integrity_secret="")
    factory.db.commit()
    assert other.integrity_hash is None
    assert other.source == "system"


def test_get_audit_logs_filters(factory):
    user = factory.client()
    rows = get_audit_logs(factory.db, entity_type="user", entity_id=user.id)
    assert [r.action for r in rows] == ["REGISTER"]
    assert factory.db.query(AuditLog).count() >= 1


def test_compute_diff_keeps_changed_keys_only():
    diff = compute_diff({"name": "A", "phone": "1"}, {"name": "B", "phone": "1"})
    assert diff == {"name": {"before": "A", "after": "B"}}


def test_schedule_is_local_to_default_timezone():
    # Europe/Moscow is UTC+3 all year
    dt = combine_date_time(date(2030, 1, 15), time(10, 0))
    assert dt == datetime(2030, 1, 15, 7, 0, tzinfo=pytz.UTC)


def test_unknown_timezone_reads_as_utc():
    assert local_to_utc(datetime(2030, 1, 15, 10, 0), "Mars/Olympus") == datetime(2030, 1, 15, 10, 0, tzinfo=pytz.UTC)
    assert combine_date_time(date(2030, 7, 1), time(12, 0), "Europe/Moscow").hour == 9


def test_parse_hhmm():
    assert parse_hhmm("09:05") == time(9, 5)
    assert parse_hhmm("23:59:00") == time(23, 59)


@pytest.mark.parametrize("bad", ["9", "24:00", "ab:cd"])
def test_parse_hhmm_rejects(bad):
    with pytest.raises(ValueError):
        parse_hhmm(bad)


def test_naive_deadlines_are_treated_as_utc():
    now = datetime(2030, 1, 1, 12, 0, tzinfo=pytz.UTC)
    assert is_expired(datetime(2030, 1, 1, 11, 59), now)
    assert not is_expired(datetime(2030, 1, 1, 12, 1), now)
    assert is_expired(None, now)
