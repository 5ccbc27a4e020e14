from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db, unit_of_work, utcnow
from ..models.models import User
from ..responses import dump, ok
from ..schemas.auth import (
    ChangePasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from ..schemas.common import RoleName
from ..services import users as user_service
from .security import REFRESH, create_access_token, create_refresh_token, get_current_user, user_from_token
from ..logging import structlog


router = APIRouter(prefix="/api/auth", tags=["auth"])
log = structlog.get_logger(__name__)


def _tokens(user: User) -> dict:
    return TokenResponse(
        access_token=create_access_token(str(user.id), user.role_name),
        refresh_token=create_refresh_token(str(user.id)),
    ).model_dump()


@router.post("/register", status_code=201)
def register(req: RegisterRequest, db: Session = Depends(get_db)):
    with unit_of_work(db):
        user = user_service.create_user(
            db,
            email=req.email,
            password=req.password,
            role=RoleName.CUSTOMER.value,
            first_name=req.first_name,
            last_name=req.last_name,
            phone=req.phone,
            company_id=req.company_id,
        )
    db.refresh(user)
    return ok({"user": dump(UserResponse, user), **_tokens(user)}, message="Registered successfully")


@router.post("/login")
def login(req: LoginRequest, db: Session = Depends(get_db)):
    with unit_of_work(db):
        user = user_service.authenticate(db, req.email, req.password)
        user.last_login_at = utcnow()
    db.refresh(user)
    log.info("user_login", user_id=str(user.id))
    return ok({"user": dump(UserResponse, user), **_tokens(user)}, message="Login successful")


@router.post("/refresh")
def refresh(req: RefreshRequest, db: Session = Depends(get_db)):
    user = user_from_token(db, req.refresh_token, kind=REFRESH)
    return ok(_tokens(user))


@router.get("/profile")
def profile(user: User = Depends(get_current_user)):
    return ok(dump(UserResponse, user))


@router.post("/change-password")
def change_password(req: ChangePasswordRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    with unit_of_work(db):
        user_service.change_password(db, user, req.current_password, req.new_password)
    return ok(message="Password changed successfully")


@router.post("/logout")
def logout(user: User = Depends(get_current_user)):
    # Tokens are stateless; the client drops them
    log.info("user_logout", user_id=str(user.id))
    return ok(message="Logged out")
