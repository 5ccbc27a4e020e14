import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_admin
from ..db import get_db, unit_of_work
from ..models.models import User
from ..responses import clamp_paging, dump, ok, paged
from ..schemas.auth import ProfileUpdate, UserCreate, UserResponse, UserUpdate
from ..schemas.common import plain
from ..services import users as user_service


router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("")
def list_users(
    search: Optional[str] = None,
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    company_id: Optional[uuid.UUID] = None,
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    page, limit = clamp_paging(page, limit)
    rows, total = user_service.list_users(
        db, search=search, role=role, is_active=is_active, company_id=company_id, page=page, limit=limit
    )
    return paged(dump(UserResponse, rows), page, limit, total)


@router.put("/profile")
def update_profile(req: ProfileUpdate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    with unit_of_work(db):
        updated = user_service.update_user(db, user.id, req.model_dump(exclude_unset=True))
    db.refresh(updated)
    return ok(dump(UserResponse, updated), message="Profile updated")


@router.get("/{user_id}")
def get_user(user_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_admin)):
    return ok(dump(UserResponse, user_service.get_user(db, user_id)))


@router.post("", status_code=201)
def create_user(req: UserCreate, db: Session = Depends(get_db), _=Depends(require_admin)):
    data = plain(req.model_dump())
    with unit_of_work(db):
        user = user_service.create_user(db, **data)
    db.refresh(user)
    return ok(dump(UserResponse, user), message="User created")


@router.put("/{user_id}")
def update_user(user_id: uuid.UUID, req: UserUpdate, db: Session = Depends(get_db), _=Depends(require_admin)):
    with unit_of_work(db):
        user = user_service.update_user(db, user_id, plain(req.model_dump(exclude_unset=True)))
    db.refresh(user)
    return ok(dump(UserResponse, user), message="User updated")


@router.delete("/{user_id}")
def deactivate_user(user_id: uuid.UUID, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    with unit_of_work(db):
        user_service.deactivate_user(db, user_id, admin)
    return ok(message="User deactivated")


@router.delete("/{user_id}/permanent")
def delete_user(user_id: uuid.UUID, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    with unit_of_work(db):
        user_service.delete_user_permanently(db, user_id, admin)
    return ok(message="User deleted permanently")


@router.patch("/{user_id}/toggle-status")
def toggle_status(user_id: uuid.UUID, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    with unit_of_work(db):
        user = user_service.toggle_status(db, user_id, admin)
    db.refresh(user)
    return ok(dump(UserResponse, user), message="User activated" if user.is_active else "User deactivated")
