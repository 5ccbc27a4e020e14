import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..errors import Forbidden
from ..models.models import User


ACCESS = "access"
REFRESH = "refresh"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
http_bearer = HTTPBearer(auto_error=False)


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        # unknown or malformed hash
        return False


def _issue(user_id: str, kind: str, ttl_seconds: int, **claims) -> str:
    issued = datetime.now(tz=timezone.utc)
    payload = {
        "sub": user_id,
        "type": kind,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": uuid.uuid4().hex,
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: str, role: Optional[str] = None) -> str:
    return _issue(user_id, ACCESS, settings.jwt_ttl_seconds, role=role)


def create_refresh_token(user_id: str) -> str:
    return _issue(user_id, REFRESH, settings.refresh_ttl_seconds)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")


def user_from_token(db: Session, token: str, kind: str = ACCESS) -> User:
    """Resolve an active user from a token of the given kind.

    Tokens without a ``type`` claim count as access tokens, so a refresh
    token is never accepted on a protected route and vice versa."""
    payload = decode_token(token)
    if payload.get("type", ACCESS) != kind:
        raise _unauthorized(f"Expected {kind} token")
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise _unauthorized("Invalid subject")
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise _unauthorized("User not active")
    return user


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> User:
    if creds is None:
        raise _unauthorized("Not authenticated")
    return user_from_token(db, creds.credentials)


def is_admin(user: User) -> bool:
    return (user.role_name or "").upper() == "ADMIN"


def require_roles(*allowed_roles: str):
    """Allow the request when the caller holds any of ``allowed_roles``.
    ADMIN always passes."""
    allowed = {r.upper() for r in allowed_roles}

    def _dep(user: User = Depends(get_current_user)) -> User:
        if not is_admin(user) and (user.role_name or "").upper() not in allowed:
            raise Forbidden("You do not have permission to perform this action")
        return user

    return _dep


require_admin = require_roles("ADMIN")
require_staff = require_roles("ADMIN", "TECHNICIAN")
