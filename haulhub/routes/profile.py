from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, get_token_payload
from ..db import get_db
from ..models.models import User
from ..schemas.auth import DocumentsRequest, PhotoRequest, ProfileUpdate
from ..schemas.common import ok
from ..services import accounts
from .serializers import serialize_executor_profile, serialize_user


router = APIRouter(prefix="/profile", tags=["profile"])


@router.put("")
def update_profile(payload: ProfileUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude_unset=True)
    if payload.address is not None:
        fields["address"] = payload.address.model_dump(exclude_unset=True)
    user = accounts.update_profile(db, user, **fields)
    return ok(serialize_user(user))


@router.post("/photo")
def set_photo(payload: PhotoRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    user = accounts.set_profile_photo(db, user, payload.uri)
    return ok({"photo_uri": user.photo_uri})


@router.post("/documents")
def set_documents(payload: DocumentsRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    profile = accounts.set_executor_documents(db, user, **payload.model_dump())
    return ok(serialize_executor_profile(profile))


@router.delete("")
def delete_profile(
    token: dict = Depends(get_token_payload),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    accounts.delete_account(db, user, token_payload=token)
    return ok({"deleted": True})
