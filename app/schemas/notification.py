from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Any, Literal, Optional

NotificationType = Literal["new_match", "match_accepted", "new_message"]

class NotificationSettings(BaseModel):
    push_enabled: bool = True
    match_notifications: bool = True
    message_notifications: bool = True
    match_accepted_notifications: bool = True

class PushTokenCreate(BaseModel):
    token: str = Field(..., min_length=1)
    device_type: Optional[Literal["ios", "android"]] = None

class PushTokenResponse(BaseModel):
    id: UUID
    user_id: UUID
    token: str
    device_type: Optional[str] = None
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}

class DispatchRequest(BaseModel):
    user_id: UUID
    type: NotificationType
    title: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    data: dict[str, Any] = {}

class DispatchResponse(BaseModel):
    sent: int
    deactivated: int = 0
    delivery: str

class NotificationLogResponse(BaseModel):
    id: UUID
    user_id: UUID
    type: str
    title: str
    body: str
    data: Optional[dict[str, Any]] = None
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}

class UnreadNotificationCount(BaseModel):
    user_id: UUID
    unread: int
