"""
Accounts and roles: registration, SMS/password login, profile upkeep,
account deletion and executor verification.
"""
import re
import secrets
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth.security import get_password_hash, pwd_context, revoke_token, verify_password
from ..config import settings
from ..errors import (
    AlreadyRegistered,
    DuplicateAccount,
    InvalidCode,
    NotFound,
    RoleNotGranted,
    Unauthorized,
    ValidationError,
)
from ..logging import get_logger
from ..models.models import (
    ClientProfile,
    ExecutorProfile,
    Notification,
    PhoneVerification,
    Role,
    SavedPaymentMethod,
    User,
)
from .audit import compute_diff, create_audit_log
from .time_rules import ensure_utc, utcnow


log = get_logger(__name__)

SELF_SERVICE_ROLES = ("client", "executor")
ALL_ROLES = ("client", "executor", "admin")
DOCUMENT_FIELDS = ("passport_photo_uri", "driver_license_photo_uri", "vehicle_registration_photo_uri")
_PHONE_RE = re.compile(r"^\+?\d{10,15}$")


class SmsSender:
    def send(self, phone: str, text: str) -> None:
        raise NotImplementedError


class LoggingSmsSender(SmsSender):
    """Development sender: the message only goes to the log."""

    def send(self, phone: str, text: str) -> None:
        log.info("sms_sent", phone=phone[-4:].rjust(len(phone), "*"), length=len(text))


def get_sms_sender() -> SmsSender:
    return LoggingSmsSender()


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    phone = re.sub(r"[\s\-()]", "", raw)
    if not _PHONE_RE.match(phone):
        raise ValidationError.for_fields({"phone": "expected 10-15 digits, optionally starting with +"})
    return phone


def normalize_email(raw: Optional[str]) -> Optional[str]:
    return raw.strip().lower() if raw else None


def ensure_role(db: Session, name: str) -> Role:
    role = db.query(Role).filter(Role.name == name).first()
    if not role:
        role = Role(name=name, description=f"{name.capitalize()} role")
        db.add(role)
        db.flush()
    return role


def get_user(db: Session, user_id) -> User:
    user = db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
    if not user:
        raise NotFound("User not found")
    return user


def _find_by_contact(db: Session, phone: Optional[str], email: Optional[str], exclude_id=None) -> Optional[User]:
    conditions = []
    if phone:
        conditions.append(User.phone == phone)
    if email:
        conditions.append(User.email == email)
    if not conditions:
        return None
    query = db.query(User).filter(or_(*conditions))
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    return query.first()


def _executor_field_errors(fields: Dict) -> Dict[str, str]:
    errors = {}
    capacity = fields.get("vehicle_capacity")
    if capacity not in settings.vehicle_capacities:
        errors["vehicle_capacity"] = f"must be one of {settings.vehicle_capacities}"
    if not (fields.get("vehicle_number") or "").strip():
        errors["vehicle_number"] = "required"
    for doc in DOCUMENT_FIELDS:
        if not (fields.get(doc) or "").strip():
            errors[doc] = "required"
    return errors


def _attach_role(db: Session, user: User, role: str, fields: Dict) -> None:
    if role == "executor":
        errors = _executor_field_errors(fields)
        if errors:
            raise ValidationError.for_fields(errors)
        user.executor_profile = ExecutorProfile(
            vehicle_capacity=fields["vehicle_capacity"],
            vehicle_number=fields["vehicle_number"].strip(),
            passport_photo_uri=fields["passport_photo_uri"],
            driver_license_photo_uri=fields["driver_license_photo_uri"],
            vehicle_registration_photo_uri=fields["vehicle_registration_photo_uri"],
            balance=settings.executor_starting_balance,
            is_verified=False,
            is_working=False,
        )
    elif role == "client":
        address = fields.get("address") or {}
        user.client_profile = ClientProfile(
            city=address.get("city"),
            street=address.get("street"),
            house_number=address.get("house_number"),
        )
    user.roles.append(ensure_role(db, role))


def register(
    db: Session,
    role: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    name: Optional[str] = None,
    password: Optional[str] = None,
    **role_fields,
) -> User:
    """
    Create an account for ``role`` (client|executor).

    One account per contact: a phone or email that is already registered
    fails with DUPLICATE_ACCOUNT; the other role is added via ``add_role``.
    """
    if role not in SELF_SERVICE_ROLES:
        raise ValidationError.for_fields({"role": "must be client or executor"})
    phone = normalize_phone(phone)
    email = normalize_email(email)
    if not phone and not email:
        raise ValidationError.for_fields({"phone": "phone or email required", "email": "phone or email required"})
    if not (name or "").strip():
        raise ValidationError.for_fields({"name": "required"})
    if _find_by_contact(db, phone, email):
        raise DuplicateAccount("An account with this phone or email already exists")

    user = User(
        phone=phone,
        email=email,
        name=name.strip(),
        password_hash=get_password_hash(password) if password else None,
        active_role=role,
        is_active=True,
    )
    _attach_role(db, user, role, role_fields)
    db.add(user)
    db.flush()
    create_audit_log(db, "user", user.id, "REGISTER", actor_id=user.id, actor_role=role, source="api")
    db.commit()
    db.refresh(user)
    log.info("user_registered", user_id=str(user.id), role=role)
    return user


def add_role(db: Session, user: User, role: str, **role_fields) -> User:
    if role not in SELF_SERVICE_ROLES:
        raise ValidationError.for_fields({"role": "must be client or executor"})
    if role in user.role_names:
        raise AlreadyRegistered(f"Role '{role}' is already granted")
    _attach_role(db, user, role, role_fields)
    create_audit_log(db, "user", user.id, "ADD_ROLE", actor_id=user.id, actor_role=user.active_role, context={"role": role})
    db.commit()
    db.refresh(user)
    log.info("role_added", user_id=str(user.id), role=role)
    return user


def grant_admin(db: Session, user: User) -> User:
    if "admin" not in user.role_names:
        user.roles.append(ensure_role(db, "admin"))
        db.commit()
    return user


def switch_active_role(db: Session, user: User, role: str) -> User:
    if role not in user.role_names:
        raise RoleNotGranted(f"Role '{role}' is not granted")
    user.active_role = role
    db.commit()
    db.refresh(user)
    return user


# SMS login

def _generate_code() -> str:
    if settings.environment != "production" and settings.sms_dev_code:
        return settings.sms_dev_code
    return f"{secrets.randbelow(10000):04d}"


def send_sms_code(db: Session, phone: str, sender: Optional[SmsSender] = None) -> Dict:
    phone = normalize_phone(phone)
    now = utcnow()
    # Supersede earlier codes for this phone
    db.query(PhoneVerification).filter(
        PhoneVerification.phone == phone, PhoneVerification.consumed_at.is_(None)
    ).update({PhoneVerification.consumed_at: now}, synchronize_session=False)
    code = _generate_code()
    db.add(PhoneVerification(
        phone=phone,
        code_hash=pwd_context.hash(code),
        attempts=0,
        expires_at=now + timedelta(seconds=settings.sms_code_ttl_seconds),
    ))
    db.commit()
    (sender or get_sms_sender()).send(phone, f"HaulHub code: {code}")
    return {"phone": phone, "expires_in": settings.sms_code_ttl_seconds}


def verify_sms_code(db: Session, phone: str, code: str) -> Optional[User]:
    """Returns the user for a known phone, None for a new one. Raises InvalidCode."""
    phone = normalize_phone(phone)
    now = utcnow()
    verification = (
        db.query(PhoneVerification)
        .filter(PhoneVerification.phone == phone, PhoneVerification.consumed_at.is_(None))
        .order_by(PhoneVerification.created_at.desc())
        .first()
    )
    if not verification or ensure_utc(verification.expires_at) <= now:
        raise InvalidCode("Code expired or not requested")
    if verification.attempts >= settings.sms_max_attempts:
        raise InvalidCode("Too many attempts, request a new code")

    if not pwd_context.verify(code or "", verification.code_hash):
        verification.attempts += 1
        if verification.attempts >= settings.sms_max_attempts:
            verification.consumed_at = now
        db.commit()
        raise InvalidCode(details={"attempts_left": max(settings.sms_max_attempts - verification.attempts, 0)})

    verification.consumed_at = now
    user = db.query(User).filter(User.phone == phone, User.deleted_at.is_(None)).first()
    if user:
        user.last_login_at = now
    db.commit()
    return user


def authenticate(db: Session, email: str, password: str) -> User:
    user = db.query(User).filter(User.email == normalize_email(email), User.deleted_at.is_(None)).first()
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    user.last_login_at = utcnow()
    db.commit()
    return user


# Profile

def update_profile(db: Session, user: User, **fields) -> User:
    before = {"name": user.name, "phone": user.phone, "email": user.email}
    if "phone" in fields and fields["phone"] is not None:
        fields["phone"] = normalize_phone(fields["phone"])
    if "email" in fields and fields["email"] is not None:
        fields["email"] = normalize_email(fields["email"])
    if _find_by_contact(db, fields.get("phone"), fields.get("email"), exclude_id=user.id):
        raise DuplicateAccount("Phone or email is used by another account")

    # Validate everything before touching the instance
    contact = {key: fields[key] if fields.get(key) is not None else getattr(user, key) for key in ("name", "phone", "email")}
    if not contact["phone"] and not contact["email"]:
        raise ValidationError.for_fields({"phone": "phone or email required"})
    profile = user.executor_profile
    capacity = fields.get("vehicle_capacity")
    if profile is not None and capacity is not None and capacity not in settings.vehicle_capacities:
        raise ValidationError.for_fields({"vehicle_capacity": f"must be one of {settings.vehicle_capacities}"})

    for key, value in contact.items():
        setattr(user, key, value)

    address = fields.get("address")
    if address is not None and user.client_profile is not None:
        for key in ("city", "street", "house_number"):
            if key in address:
                setattr(user.client_profile, key, address[key])

    if profile is not None:
        if capacity is not None:
            profile.vehicle_capacity = capacity
        if fields.get("vehicle_number"):
            profile.vehicle_number = fields["vehicle_number"].strip()

    after = {"name": user.name, "phone": user.phone, "email": user.email}
    create_audit_log(db, "user", user.id, "UPDATE_PROFILE", actor_id=user.id, actor_role=user.active_role,
                     changes_json=compute_diff(before, after))
    db.commit()
    db.refresh(user)
    return user


def set_profile_photo(db: Session, user: User, uri: str) -> User:
    if not (uri or "").strip():
        raise ValidationError.for_fields({"uri": "required"})
    user.photo_uri = uri
    db.commit()
    return user


def set_executor_documents(db: Session, user: User, **uris) -> ExecutorProfile:
    profile = user.executor_profile
    if profile is None:
        raise RoleNotGranted("Executor role is not granted")
    changed = {k: v for k, v in uris.items() if k in DOCUMENT_FIELDS and v}
    if not changed:
        raise ValidationError.for_fields({doc: "at least one document required" for doc in DOCUMENT_FIELDS})
    for key, value in changed.items():
        setattr(profile, key, value)
    # New documents need another review
    profile.is_verified = False
    profile.verified_at = None
    create_audit_log(db, "executor", user.id, "DOCUMENTS", actor_id=user.id, actor_role="executor",
                     context={"fields": sorted(changed)})
    db.commit()
    return profile


def verify_executor(db: Session, admin: User, executor_id, verified: bool = True) -> ExecutorProfile:
    profile = db.query(ExecutorProfile).filter(ExecutorProfile.user_id == executor_id).first()
    if not profile:
        raise NotFound("Executor not found")
    profile.is_verified = verified
    profile.verified_at = utcnow() if verified else None
    if not verified:
        profile.is_working = False
        profile.lease_expires_at = None
    create_audit_log(db, "executor", executor_id, "VERIFY" if verified else "UNVERIFY",
                     actor_id=admin.id, actor_role="admin", source="api")
    db.commit()
    log.info("executor_verification", executor_id=str(executor_id), verified=verified)
    return profile


def delete_account(db: Session, user: User, token_payload: Optional[Dict] = None) -> None:
    """
    Irreversibly delete the account: open orders are cancelled, personal
    data is removed and the row is anonymized so paid history still resolves.
    """
    from .orders import cancel_open_orders_for_account

    now = utcnow()
    cancelled = cancel_open_orders_for_account(db, user, now=now)

    profile = user.executor_profile
    if profile is not None:
        profile.is_working = False
        profile.lease_expires_at = None
        for doc in DOCUMENT_FIELDS:
            setattr(profile, doc, None)
    db.query(SavedPaymentMethod).filter(SavedPaymentMethod.user_id == user.id).delete(synchronize_session=False)
    db.query(Notification).filter(Notification.user_id == user.id).delete(synchronize_session=False)

    user.phone = None
    user.email = None
    user.name = None
    user.password_hash = None
    user.photo_uri = None
    user.is_active = False
    user.deleted_at = now
    if token_payload:
        revoke_token(db, token_payload)
    create_audit_log(db, "user", user.id, "DELETE", actor_id=user.id, actor_role=user.active_role,
                     context={"cancelled_orders": cancelled})
    db.commit()
    log.info("account_deleted", user_id=str(user.id), cancelled_orders=cancelled)
