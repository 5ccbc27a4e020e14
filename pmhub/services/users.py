import uuid
from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..auth.security import get_password_hash, verify_password
from ..errors import ConflictOrDuplicate, NotFound, ValidationFailed, Unauthorized
from ..models.models import Role, User, Company
from ..schemas.common import RoleName
from .query import contains_any, paginate


log = structlog.get_logger(__name__)


def ensure_roles(db: Session) -> None:
    existing = {r.name for r in db.query(Role).all()}
    for role in RoleName:
        if role.value not in existing:
            db.add(Role(name=role.value, description=role.value.title()))
    db.flush()


def get_role(db: Session, name: str) -> Role:
    role = db.query(Role).filter(Role.name == name).first()
    if role is None:
        ensure_roles(db)
        role = db.query(Role).filter(Role.name == name).first()
    return role


def get_user(db: Session, user_id: uuid.UUID) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound("User not found")
    return user


def _ensure_unique_email(db: Session, email: str, exclude_id: Optional[uuid.UUID] = None) -> None:
    q = db.query(User).filter(func.lower(User.email) == email.lower())
    if exclude_id:
        q = q.filter(User.id != exclude_id)
    if q.first():
        raise ConflictOrDuplicate("Email already registered")


def _check_company(db: Session, company_id: Optional[uuid.UUID]) -> None:
    if company_id and not db.query(Company.id).filter(Company.id == company_id).first():
        raise NotFound("Company not found")


def create_user(
    db: Session,
    *,
    email: str,
    password: str,
    role: str = RoleName.CUSTOMER.value,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    phone: Optional[str] = None,
    company_id: Optional[uuid.UUID] = None,
    is_active: bool = True,
) -> User:
    _ensure_unique_email(db, email)
    _check_company(db, company_id)
    user = User(
        email=email.lower(),
        password_hash=get_password_hash(password),
        first_name=first_name,
        last_name=last_name,
        phone=phone,
        role_id=get_role(db, role).id,
        company_id=company_id,
        is_active=is_active,
    )
    db.add(user)
    db.flush()
    db.refresh(user)
    log.info("user_created", user_id=str(user.id), role=role)
    return user


def authenticate(db: Session, email: str, password: str) -> User:
    user = db.query(User).filter(func.lower(User.email) == email.lower()).first()
    if not user or not verify_password(password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    if not user.is_active:
        raise Unauthorized("Account is disabled")
    return user


def change_password(db: Session, user: User, current_password: str, new_password: str) -> None:
    if not verify_password(current_password, user.password_hash):
        raise ValidationFailed("Current password is incorrect")
    if current_password == new_password:
        raise ValidationFailed("New password must differ from the current one")
    user.password_hash = get_password_hash(new_password)
    db.flush()
    log.info("password_changed", user_id=str(user.id))


def list_users(
    db: Session,
    *,
    search: Optional[str],
    role: Optional[str],
    is_active: Optional[bool],
    company_id: Optional[uuid.UUID],
    page: int,
    limit: int,
):
    q = db.query(User)
    if search:
        q = q.filter(contains_any(search, User.email, User.first_name, User.last_name, User.phone))
    if role:
        q = q.join(Role, User.role_id == Role.id).filter(Role.name == role.upper())
    if is_active is not None:
        q = q.filter(User.is_active.is_(is_active))
    if company_id:
        q = q.filter(User.company_id == company_id)
    return paginate(q.order_by(User.created_at.desc()), page, limit)


def update_user(db: Session, user_id: uuid.UUID, changes: dict) -> User:
    user = get_user(db, user_id)
    if changes.get("email"):
        _ensure_unique_email(db, changes["email"], exclude_id=user.id)
        user.email = changes.pop("email").lower()
    if changes.get("password"):
        user.password_hash = get_password_hash(changes.pop("password"))
    changes.pop("password", None)
    if changes.get("role"):
        user.role_id = get_role(db, changes.pop("role")).id
    changes.pop("role", None)
    if "company_id" in changes:
        _check_company(db, changes["company_id"])
    for k, v in changes.items():
        setattr(user, k, v)
    db.flush()
    db.refresh(user)
    return user


def deactivate_user(db: Session, user_id: uuid.UUID, actor: User) -> User:
    if user_id == actor.id:
        raise ValidationFailed("You cannot deactivate your own account")
    user = get_user(db, user_id)
    user.is_active = False
    db.flush()
    log.info("user_deactivated", user_id=str(user_id))
    return user


def toggle_status(db: Session, user_id: uuid.UUID, actor: User) -> User:
    if user_id == actor.id:
        raise ValidationFailed("You cannot change your own status")
    user = get_user(db, user_id)
    user.is_active = not user.is_active
    db.flush()
    return user


def delete_user_permanently(db: Session, user_id: uuid.UUID, actor: User) -> None:
    if user_id == actor.id:
        raise ValidationFailed("You cannot delete your own account")
    user = get_user(db, user_id)
    db.delete(user)
    db.flush()
    log.info("user_deleted", user_id=str(user_id))
