from pydantic import BaseModel
from uuid import UUID
from datetime import datetime
from typing import Optional

class MatchResponse(BaseModel):
    id: UUID
    user_a_id: UUID
    user_b_id: UUID
    compatibility_score: int
    match_reason: Optional[str] = None
    user_a_status: str
    user_b_status: str
    is_matched: bool
    matched_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}

class MatchRunResponse(BaseModel):
    created_count: int
    matches: list[MatchResponse]

class DecisionRequest(BaseModel):
    user_id: UUID
    accept: bool = True

class MatchListItem(BaseModel):
    match_id: UUID
    other_user_id: UUID
    other_user_nickname: str
    compatibility_score: int
    match_reason: Optional[str] = None
    my_status: str
    their_status: str
    is_matched: bool
    created_at: datetime
