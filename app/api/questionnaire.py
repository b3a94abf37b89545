"""
Rapport: Questionnaire API

Endpoints for retrieving the active scenario catalog and submitting a user's
answers.  A submission flagged ``complete`` marks the profile complete and
runs the candidate selector for that user straight away.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.api.deps import get_matching_service
from app.database import get_db
from app.errors import UserNotFound, ValidationError
from app.models.questionnaire import Scenario, ScenarioOption, ScenarioResponse
from app.models.user import User
from app.schemas.match import MatchResponse, MatchRunResponse
from app.schemas.questionnaire import (
    ResponsesSubmit,
    ResponsesSubmitResult,
    ScenarioResponseItem,
)
from app.services.matching_service import MatchingService

logger = structlog.get_logger("rapport.api.questionnaire")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# GET /scenarios - Active scenario catalog
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/scenarios",
    response_model=list[ScenarioResponseItem],
    summary="Get all active scenarios with their options",
)
async def get_scenarios(
    db: AsyncSession = Depends(get_db),
) -> list[Scenario]:
    logger.info("get_scenarios")

    stmt = (
        select(Scenario)
        .where(Scenario.is_active.is_(True))
        .options(selectinload(Scenario.options))
        .order_by(Scenario.display_order)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ──────────────────────────────────────────────────────────────────────────────
# POST /{user_id}/responses - Upsert answers (optionally finishing)
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{user_id}/responses",
    response_model=ResponsesSubmitResult,
    status_code=status.HTTP_201_CREATED,
    summary="Submit scenario answers",
)
async def submit_responses(
    user_id: uuid.UUID,
    payload: ResponsesSubmit,
    db: AsyncSession = Depends(get_db),
    matching_service: MatchingService = Depends(get_matching_service),
) -> ResponsesSubmitResult:
    """Upsert one answer per scenario for *user_id*.

    Each selected option must belong to its scenario.  With
    ``complete=true`` the profile is marked complete and matching runs;
    the created proposals are returned alongside the save count.
    """
    log = logger.bind(user_id=str(user_id), answer_count=len(payload.answers))
    log.info("submit_responses_start")

    user = await db.get(User, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found.")

    # Validate (scenario, option) pairs against the catalog
    option_ids = {a.selected_option_id for a in payload.answers}
    opt_stmt = select(ScenarioOption.id, ScenarioOption.scenario_id).where(
        ScenarioOption.id.in_(option_ids)
    )
    option_scenarios = dict((await db.execute(opt_stmt)).all())

    for answer in payload.answers:
        if option_scenarios.get(answer.selected_option_id) != answer.scenario_id:
            log.warning(
                "submit_responses_bad_option",
                scenario_id=answer.scenario_id,
                option_id=answer.selected_option_id,
            )
            raise ValidationError(
                f"Option {answer.selected_option_id} does not belong to "
                f"scenario {answer.scenario_id}."
            )

    # Upsert on (user, scenario); the last answer for a scenario wins
    existing_stmt = select(ScenarioResponse).where(
        ScenarioResponse.user_id == user_id,
        ScenarioResponse.scenario_id.in_({a.scenario_id for a in payload.answers}),
    )
    existing = {
        r.scenario_id: r for r in (await db.execute(existing_stmt)).scalars().all()
    }

    for answer in payload.answers:
        current = existing.get(answer.scenario_id)
        if current is not None:
            current.selected_option_id = answer.selected_option_id
            current.response_time_seconds = answer.response_time_seconds
        else:
            current = ScenarioResponse(
                user_id=user_id,
                scenario_id=answer.scenario_id,
                selected_option_id=answer.selected_option_id,
                response_time_seconds=answer.response_time_seconds,
            )
            db.add(current)
            existing[answer.scenario_id] = current

    await db.flush()
    log.info("submit_responses_persisted", saved=len(existing))

    matching: MatchRunResponse | None = None
    if payload.complete:
        user.is_profile_complete = True
        await db.flush()

        run = await matching_service.run_matching(user_id, db)
        matching = MatchRunResponse(
            created_count=run.created_count,
            matches=[MatchResponse.model_validate(m) for m in run.matches],
        )
        log.info("submit_responses_matched", created=run.created_count)

    return ResponsesSubmitResult(user_id=user_id, saved=len(existing), matching=matching)


# ──────────────────────────────────────────────────────────────────────────────
# DELETE /{user_id}/responses - Re-take the questionnaire
# ──────────────────────────────────────────────────────────────────────────────

@router.delete(
    "/{user_id}/responses",
    status_code=status.HTTP_200_OK,
    summary="Clear answers so the questionnaire can be taken again",
)
async def reset_responses(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Delete every answer of *user_id* and mark the profile incomplete.

    Existing matches are kept.
    """
    user = await db.get(User, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found.")

    result = await db.execute(
        delete(ScenarioResponse)
        .where(ScenarioResponse.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    user.is_profile_complete = False
    await db.flush()

    logger.info("reset_responses", user_id=str(user_id), deleted=result.rowcount)
    return {"user_id": str(user_id), "deleted": result.rowcount or 0}
