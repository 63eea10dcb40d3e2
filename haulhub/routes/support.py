import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import User
from ..schemas.common import ok
from ..schemas.support import MessageCreate, TicketCreate
from ..services import support
from .serializers import serialize_message, serialize_ticket


router = APIRouter(prefix="/support", tags=["support"])


@router.post("/tickets")
def create_ticket(payload: TicketCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ticket = support.create_ticket(db, user, payload.subject, payload.description)
    return ok(serialize_ticket(ticket, with_messages=True))


@router.get("/tickets")
def list_tickets(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok([serialize_ticket(t) for t in support.list_tickets(db, user)])


@router.get("/tickets/{ticket_id}")
def get_ticket(ticket_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok(serialize_ticket(support.get_ticket(db, user, ticket_id), with_messages=True))


@router.post("/tickets/{ticket_id}/messages")
def post_message(
    ticket_id: uuid.UUID,
    payload: MessageCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(serialize_message(support.post_message(db, user, ticket_id, payload.body)))
