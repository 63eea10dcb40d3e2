import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..errors import Forbidden, RoleNotGranted
from ..models.models import RevokedToken, User


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
http_bearer = HTTPBearer(auto_error=False)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        # Unknown or malformed hash
        return False


def _create_token(sub: str, ttl_seconds: int, extra: Optional[dict] = None) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: str, roles: Optional[List[str]] = None, active_role: Optional[str] = None) -> str:
    return _create_token(
        user_id,
        settings.jwt_ttl_seconds,
        extra={"type": "access", "roles": sorted(roles or []), "active_role": active_role},
    )


def create_refresh_token(user_id: str) -> str:
    return _create_token(user_id, settings.refresh_ttl_seconds, extra={"type": "refresh"})


def issue_session(user: User) -> dict:
    """Access + refresh token pair scoped to the user's active role."""
    roles = sorted(user.role_names)
    return {
        "access_token": create_access_token(str(user.id), roles, user.active_role),
        "refresh_token": create_refresh_token(str(user.id)),
        "token_type": "bearer",
        "active_role": user.active_role,
        "roles": roles,
    }


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def is_revoked(db: Session, jti: Optional[str]) -> bool:
    if not jti:
        return False
    return db.query(RevokedToken.id).filter(RevokedToken.jti == jti).first() is not None


def revoke_token(db: Session, payload: dict) -> None:
    jti = payload.get("jti")
    if not jti or is_revoked(db, jti):
        return
    expires_at = datetime.fromtimestamp(int(payload.get("exp", 0)), tz=timezone.utc)
    db.add(RevokedToken(jti=jti, expires_at=expires_at))


def load_user(db: Session, user_id_raw) -> User:
    try:
        user_uuid = uuid.UUID(str(user_id_raw))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    return user


def get_token_payload(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> dict:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    if payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
    if is_revoked(db, payload.get("jti")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token revoked")
    return payload


def get_current_user(
    payload: dict = Depends(get_token_payload),
    db: Session = Depends(get_db),
) -> User:
    return load_user(db, payload.get("sub"))


def require_roles(*required_roles: str):
    """User must hold every listed role (granted, not necessarily active)."""
    def _dep(user: User = Depends(get_current_user)):
        if not set(required_roles).issubset(user.role_names):
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return _dep


def require_active_role(role: str):
    """The token must be scoped to ``role`` (see /auth/switch-role)."""
    def _dep(payload: dict = Depends(get_token_payload), user: User = Depends(get_current_user)):
        if role not in user.role_names:
            raise RoleNotGranted(f"Role '{role}' is not granted")
        if payload.get("active_role") != role:
            raise Forbidden(f"Switch active role to '{role}' first", details={"active_role": payload.get("active_role")})
        return user

    return _dep
