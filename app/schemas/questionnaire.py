from pydantic import BaseModel, Field
from uuid import UUID
from typing import Optional

from app.schemas.match import MatchRunResponse

class ScenarioOptionResponse(BaseModel):
    id: int
    option_code: str
    option_text: str
    display_order: int

    model_config = {"from_attributes": True}

class ScenarioResponseItem(BaseModel):
    id: int
    title: str
    description: str
    category: str
    display_order: int
    options: list[ScenarioOptionResponse]

    model_config = {"from_attributes": True}

class AnswerSubmit(BaseModel):
    scenario_id: int
    selected_option_id: int
    response_time_seconds: Optional[int] = Field(None, ge=0)

class ResponsesSubmit(BaseModel):
    answers: list[AnswerSubmit] = Field(..., min_length=1)
    complete: bool = Field(
        False, description="Questionnaire finished; run matching afterwards"
    )

class ResponsesSubmitResult(BaseModel):
    user_id: UUID
    saved: int
    matching: Optional[MatchRunResponse] = None
