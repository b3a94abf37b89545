from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime

class MessageCreate(BaseModel):
    sender_id: UUID
    content: str = Field(..., description="Trimmed server-side; blank text is rejected")

class MessageResponse(BaseModel):
    id: UUID
    match_id: UUID
    sender_id: UUID
    content: str
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}

class MarkReadRequest(BaseModel):
    reader_id: UUID

class MarkReadResponse(BaseModel):
    match_id: UUID
    marked: int

class UnreadCountsResponse(BaseModel):
    user_id: UUID
    counts: dict[str, int]
    total: int
