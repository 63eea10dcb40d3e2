from typing import List, Optional

from sqlalchemy.orm import Session

from ..errors import Forbidden, NotFound, TicketClosed, ValidationError
from ..logging import get_logger
from ..models.models import Ticket, TicketMessage, User
from .audit import create_audit_log
from .notifications import create_notification
from .time_rules import utcnow


log = get_logger(__name__)

TICKET_STATUSES = ("open", "in_progress", "closed")
MAX_SUBJECT = 255
MAX_BODY = 5000


def _is_admin(user: User) -> bool:
    return "admin" in user.role_names


def create_ticket(db: Session, user: User, subject: str, description: str) -> Ticket:
    errors = {}
    if not (subject or "").strip():
        errors["subject"] = "required"
    elif len(subject) > MAX_SUBJECT:
        errors["subject"] = f"at most {MAX_SUBJECT} characters"
    if not (description or "").strip():
        errors["description"] = "required"
    elif len(description) > MAX_BODY:
        errors["description"] = f"at most {MAX_BODY} characters"
    if errors:
        raise ValidationError.for_fields(errors)

    ticket = Ticket(user_id=user.id, subject=subject.strip(), description=description.strip(), status="open")
    db.add(ticket)
    db.commit()
    db.refresh(ticket)
    log.info("ticket_created", ticket_id=str(ticket.id), user_id=str(user.id))
    return ticket


def list_tickets(db: Session, user: User) -> List[Ticket]:
    return db.query(Ticket).filter(Ticket.user_id == user.id).order_by(Ticket.created_at.desc()).all()


def list_all_tickets(db: Session, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Ticket]:
    query = db.query(Ticket)
    if status:
        query = query.filter(Ticket.status == status)
    return query.order_by(Ticket.updated_at.desc()).limit(limit).offset(offset).all()


def get_ticket(db: Session, viewer: User, ticket_id, as_admin: bool = False) -> Ticket:
    ticket = db.query(Ticket).filter(Ticket.id == ticket_id).first()
    if not ticket:
        raise NotFound("Ticket not found")
    if ticket.user_id != viewer.id and not (as_admin and _is_admin(viewer)):
        raise NotFound("Ticket not found")
    return ticket


def post_message(db: Session, sender: User, ticket_id, body: str, as_admin: bool = False) -> TicketMessage:
    if as_admin and not _is_admin(sender):
        raise Forbidden()
    ticket = get_ticket(db, sender, ticket_id, as_admin=as_admin)
    if ticket.status == "closed":
        raise TicketClosed()
    if not (body or "").strip():
        raise ValidationError.for_fields({"body": "required"})
    if len(body) > MAX_BODY:
        raise ValidationError.for_fields({"body": f"at most {MAX_BODY} characters"})

    now = utcnow()
    message = TicketMessage(
        ticket_id=ticket.id,
        sender_id=sender.id,
        sender_role="admin" if as_admin else "user",
        body=body.strip(),
        created_at=now,
    )
    db.add(message)
    ticket.updated_at = now
    if as_admin:
        if ticket.status == "open":
            ticket.status = "in_progress"
        create_notification(db, ticket.user_id, "ticket_reply", {"ticket_id": str(ticket.id), "subject": ticket.subject})
    db.commit()
    db.refresh(message)
    return message


def set_ticket_status(db: Session, admin: User, ticket_id, status: str) -> Ticket:
    if not _is_admin(admin):
        raise Forbidden()
    if status not in TICKET_STATUSES:
        raise ValidationError.for_fields({"status": f"must be one of {list(TICKET_STATUSES)}"})
    ticket = get_ticket(db, admin, ticket_id, as_admin=True)
    before = ticket.status
    ticket.status = status
    ticket.updated_at = utcnow()
    create_audit_log(db, "ticket", ticket.id, "STATUS", actor_id=admin.id, actor_role="admin", source="api",
                     changes_json={"status": {"before": before, "after": status}})
    db.commit()
    db.refresh(ticket)
    return ticket
