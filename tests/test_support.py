from datetime import datetime

import pytest
import pytz

from haulhub.errors import Forbidden, NotFound, TicketClosed, ValidationError
from haulhub.services import notifications, support


def test_ticket_conversation(factory):
    user = factory.client()
    admin = factory.admin()
    ticket = support.create_ticket(factory.db, user, "Driver late", "Still waiting")
    assert ticket.status == "open"

    support.post_message(factory.db, user, ticket.id, "Any news?")
    support.post_message(factory.db, admin, ticket.id, "Looking into it", as_admin=True)
    factory.db.refresh(ticket)
    assert ticket.status == "in_progress"
    assert [m.sender_role for m in ticket.messages] == ["user", "admin"]
    assert [n.template_key for n in notifications.list_notifications(factory.db, user.id)] == ["ticket_reply"]


def test_closed_ticket_rejects_messages(factory):
    user = factory.client()
    admin = factory.admin()
    ticket = support.create_ticket(factory.db, user, "Refund", "Please")
    support.set_ticket_status(factory.db, admin, ticket.id, "closed")
    with pytest.raises(TicketClosed):
        support.post_message(factory.db, user, ticket.id, "Hello?")


def test_tickets_are_private(factory):
    owner = factory.client()
    other = factory.client()
    ticket = support.create_ticket(factory.db, owner, "Help", "Details")
    with pytest.raises(NotFound):
        support.get_ticket(factory.db, other, ticket.id)
    with pytest.raises(Forbidden):
        support.post_message(factory.db, other, ticket.id, "hi", as_admin=True)


def test_ticket_validation(factory):
    user = factory.client()
    with pytest.raises(ValidationError) as exc:
        support.create_ticket(factory.db, user, " ", "")
    assert set(exc.value.details["fields"]) == {"subject", "description"}


@pytest.mark.parametrize("hour,quiet", [(23, True), (3, True), (7, False), (12, False)])
def test_quiet_hours_span_midnight(hour, quiet):
    window = {"start": "22:00", "end": "07:00", "timezone": "UTC"}
    now = datetime(2024, 5, 1, hour, 30, tzinfo=pytz.UTC)
    assert notifications.is_quiet_hours(window, now) is quiet


def test_push_opt_out_suppresses_notifications(factory):
    user = factory.client()
    notifications.update_preferences(factory.db, user.id, push=False)
    assert notifications.create_notification(factory.db, user.id, "ticket_reply", {}) is None


def test_preferences_validate_window(factory):
    user = factory.client()
    with pytest.raises(ValidationError):
        notifications.update_preferences(factory.db, user.id, quiet_hours={"start": "9pm", "end": "07:00"})
    pref = notifications.update_preferences(factory.db, user.id, quiet_hours={"start": "22:00", "end": "07:00"})
    assert pref.quiet_hours["start"] == "22:00"
    cleared = notifications.update_preferences(factory.db, user.id, quiet_hours={})
    assert cleared.quiet_hours is None


def test_mark_read(factory):
    user = factory.client()
    other = factory.client()
    note = notifications.create_notification(factory.db, user.id, "ticket_reply", {})
    factory.db.commit()
    assert notifications.mark_read(factory.db, user.id, note.id).read_at is not None
    assert notifications.list_notifications(factory.db, user.id, unread_only=True) == []
    with pytest.raises(NotFound):
        notifications.mark_read(factory.db, other.id, note.id)
