import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class SubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class SubscribeRequest(BaseModel):
    endpoint: str
    keys: SubscriptionKeys


class UnsubscribeRequest(BaseModel):
    endpoint: str


class NotificationResponse(BaseModel):
    id: uuid.UUID
    title: str
    body: Optional[str] = None
    url: Optional[str] = None
    channel: str
    status: str
    created_at: datetime
    sent_at: Optional[datetime] = None

    class Config:
        from_attributes = True
