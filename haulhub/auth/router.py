from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..routes.serializers import serialize_user
from ..schemas.auth import (
    AddRoleRequest,
    LoginRequest,
    RefreshRequest,
    RegisterClientRequest,
    RegisterExecutorRequest,
    SendSmsRequest,
    SwitchRoleRequest,
    VerifySmsRequest,
)
from ..schemas.common import ok
from ..services import accounts
from .security import (
    create_access_token,
    decode_token,
    get_current_user,
    get_token_payload,
    issue_session,
    load_user,
    revoke_token,
)


router = APIRouter(prefix="/auth", tags=["auth"])


def _session(user: User) -> dict:
    data = issue_session(user)
    data["user"] = serialize_user(user)
    return data


@router.post("/send-sms")
def send_sms(req: SendSmsRequest, db: Session = Depends(get_db)):
    return ok(accounts.send_sms_code(db, req.phone))


@router.post("/verify-sms")
def verify_sms(req: VerifySmsRequest, db: Session = Depends(get_db)):
    user = accounts.verify_sms_code(db, req.phone, req.code)
    if user is None:
        return ok({"is_new_user": True, "phone": accounts.normalize_phone(req.phone)})
    data = _session(user)
    data["is_new_user"] = False
    return ok(data)


@router.post("/login")
def login(req: LoginRequest, db: Session = Depends(get_db)):
    user = accounts.authenticate(db, req.email, req.password)
    return ok(_session(user))


@router.post("/register-client")
def register_client(req: RegisterClientRequest, db: Session = Depends(get_db)):
    user = accounts.register(
        db,
        role="client",
        phone=req.phone,
        email=req.email,
        name=req.name,
        password=req.password,
        address=req.address.model_dump() if req.address else None,
    )
    return ok(_session(user))


@router.post("/register-executor")
def register_executor(req: RegisterExecutorRequest, db: Session = Depends(get_db)):
    user = accounts.register(
        db,
        role="executor",
        phone=req.phone,
        email=req.email,
        name=req.name,
        password=req.password,
        vehicle_capacity=req.vehicle_capacity,
        vehicle_number=req.vehicle_number,
        passport_photo_uri=req.passport_photo_uri,
        driver_license_photo_uri=req.driver_license_photo_uri,
        vehicle_registration_photo_uri=req.vehicle_registration_photo_uri,
    )
    return ok(_session(user))


@router.post("/refresh")
def refresh(req: RefreshRequest, db: Session = Depends(get_db)):
    payload = decode_token(req.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    user = load_user(db, payload.get("sub"))
    return ok({
        "access_token": create_access_token(str(user.id), sorted(user.role_names), user.active_role),
        "token_type": "bearer",
        "active_role": user.active_role,
    })


@router.post("/logout")
def logout(payload: dict = Depends(get_token_payload), db: Session = Depends(get_db)):
    revoke_token(db, payload)
    db.commit()
    return ok({"logged_out": True})


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return ok(serialize_user(user))


@router.post("/add-role")
def add_role(req: AddRoleRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    fields = req.model_dump(exclude={"role", "address"})
    if req.address:
        fields["address"] = req.address.model_dump()
    user = accounts.add_role(db, user, req.role, **fields)
    return ok(serialize_user(user))


@router.post("/switch-role")
def switch_role(req: SwitchRoleRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    user = accounts.switch_active_role(db, user, req.role)
    return ok(_session(user))
