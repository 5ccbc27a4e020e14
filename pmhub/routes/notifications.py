from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..config import settings
from ..db import get_db, unit_of_work
from ..errors import NotFound
from ..models.models import User
from ..responses import dump, ok
from ..schemas.notifications import NotificationResponse, SubscribeRequest, UnsubscribeRequest
from ..services import notifications as notification_service


router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.post("/subscribe", status_code=201)
def subscribe(req: SubscribeRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    with unit_of_work(db):
        sub = notification_service.subscribe(db, user.id, req.endpoint, req.keys.p256dh, req.keys.auth)
    return ok({"id": str(sub.id), "endpoint": sub.endpoint}, message="Subscribed to notifications")


@router.post("/unsubscribe")
def unsubscribe(req: UnsubscribeRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    with unit_of_work(db):
        removed = notification_service.unsubscribe(db, user.id, req.endpoint)
    if not removed:
        raise NotFound("Subscription not found")
    return ok(message="Unsubscribed")


@router.get("/vapid-public-key")
def vapid_public_key():
    if not settings.vapid_public_key:
        raise NotFound("Push notifications are not configured")
    return ok({"public_key": settings.vapid_public_key})


@router.get("")
def my_notifications(
    limit: int = Query(50, ge=1, le=200), db: Session = Depends(get_db), user: User = Depends(get_current_user)
):
    return ok(dump(NotificationResponse, notification_service.list_for_user(db, user.id, limit)))
