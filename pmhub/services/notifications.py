"""
Push notifications.

Every notification is recorded in the ``notifications`` table; when push is
enabled and VAPID keys are configured it is also delivered to each of the
user's web-push subscriptions. Delivery is fire-and-forget: callers invoke
these helpers after their own transaction has committed, and failures only
ever reach the log.
"""
import json
import uuid
from typing import Iterable, List, Optional

import structlog
from pywebpush import webpush, WebPushException
from sqlalchemy.orm import Session

from ..config import settings
from ..db import utcnow
from ..models.models import Notification, NotificationSubscription, Role, User


log = structlog.get_logger(__name__)


def push_configured() -> bool:
    return bool(settings.enable_push and settings.vapid_public_key and settings.vapid_private_key)


def subscribe(db: Session, user_id: uuid.UUID, endpoint: str, p256dh: str, auth: str) -> NotificationSubscription:
    sub = db.query(NotificationSubscription).filter(NotificationSubscription.endpoint == endpoint).first()
    if sub:
        sub.user_id = user_id
        sub.p256dh = p256dh
        sub.auth = auth
    else:
        sub = NotificationSubscription(user_id=user_id, endpoint=endpoint, p256dh=p256dh, auth=auth)
        db.add(sub)
    db.flush()
    return sub


def unsubscribe(db: Session, user_id: uuid.UUID, endpoint: str) -> bool:
    deleted = (
        db.query(NotificationSubscription)
        .filter(NotificationSubscription.user_id == user_id, NotificationSubscription.endpoint == endpoint)
        .delete(synchronize_session=False)
    )
    db.flush()
    return deleted > 0


def _deliver(db: Session, sub: NotificationSubscription, payload: dict) -> bool:
    try:
        webpush(
            subscription_info={"endpoint": sub.endpoint, "keys": {"p256dh": sub.p256dh, "auth": sub.auth}},
            data=json.dumps(payload),
            vapid_private_key=settings.vapid_private_key,
            vapid_claims={"sub": settings.vapid_subject},
        )
        return True
    except WebPushException as e:
        status_code = getattr(getattr(e, "response", None), "status_code", None)
        if status_code in (404, 410):
            # Subscription expired on the push service side
            log.info("push_subscription_gone", subscription_id=str(sub.id), status=status_code)
            db.delete(sub)
        else:
            log.warning("push_delivery_failed", subscription_id=str(sub.id), status=status_code, error=str(e))
        return False


def notify_user(
    db: Session,
    user_id: Optional[uuid.UUID],
    title: str,
    body: str,
    url: Optional[str] = None,
) -> Optional[Notification]:
    if not user_id:
        return None
    try:
        notification = Notification(user_id=user_id, channel="push", title=title, body=body, url=url, status="pending")
        db.add(notification)
        if push_configured():
            subs = db.query(NotificationSubscription).filter(NotificationSubscription.user_id == user_id).all()
            payload = {"title": title, "body": body, "url": url}
            delivered = [_deliver(db, s, payload) for s in subs]
            if any(delivered):
                notification.status = "sent"
                notification.sent_at = utcnow()
            elif subs:
                notification.status = "failed"
                notification.error_message = "No subscription accepted the message"
            else:
                notification.status = "recorded"
        else:
            notification.status = "recorded"
        db.commit()
        log.info("notification_recorded", user_id=str(user_id), title=title, status=notification.status)
        return notification
    except Exception as e:
        db.rollback()
        log.warning("notification_failed", user_id=str(user_id), title=title, error=str(e))
        return None


def notify_users(db: Session, user_ids: Iterable[uuid.UUID], title: str, body: str, url: Optional[str] = None) -> int:
    sent = 0
    for uid in dict.fromkeys(u for u in user_ids if u):
        if notify_user(db, uid, title, body, url) is not None:
            sent += 1
    return sent


def notify_role(db: Session, role_name: str, title: str, body: str, url: Optional[str] = None) -> int:
    user_ids: List[uuid.UUID] = [
        u.id
        for u in db.query(User).join(Role, User.role_id == Role.id).filter(Role.name == role_name, User.is_active.is_(True)).all()
    ]
    return notify_users(db, user_ids, title, body, url)


def list_for_user(db: Session, user_id: uuid.UUID, limit: int = 50) -> List[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
        .all()
    )
