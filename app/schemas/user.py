from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Literal, Optional

from app.schemas.notification import NotificationSettings

class UserCreate(BaseModel):
    email: str
    nickname: str = Field(..., min_length=1, max_length=40)
    gender: Literal["male", "female"]
    birth_year: int = Field(ge=1900, le=2100)
    location: str
    bio: Optional[str] = None

class UserResponse(BaseModel):
    id: UUID
    email: str
    nickname: str
    gender: str
    birth_year: int
    location: str
    bio: Optional[str] = None
    is_profile_complete: bool
    notification_settings: Optional[NotificationSettings] = None
    created_at: datetime

    model_config = {"from_attributes": True}

class UserUpdate(BaseModel):
    nickname: Optional[str] = Field(None, min_length=1, max_length=40)
    birth_year: Optional[int] = Field(None, ge=1900, le=2100)
    location: Optional[str] = None
    bio: Optional[str] = None
    is_profile_complete: Optional[bool] = None
    notification_settings: Optional[NotificationSettings] = None
