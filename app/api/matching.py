"""
Rapport: Matching API

Endpoints for running the candidate selector, retrieving match details,
listing a user's matches, and recording accept / reject decisions.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_lifecycle_service, get_matching_service
from app.database import get_db
from app.errors import UserNotFound
from app.models.match import Match
from app.models.user import User
from app.schemas.match import (
    DecisionRequest,
    MatchListItem,
    MatchResponse,
    MatchRunResponse,
)
from app.services.lifecycle_service import MatchLifecycleService
from app.services.matching_service import MatchingService

logger = structlog.get_logger("rapport.api.matching")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# POST /run/{user_id} - Run candidate selection for one user
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/run/{user_id}",
    response_model=MatchRunResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create match proposals for a user",
)
async def run_matching(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    matching_service: MatchingService = Depends(get_matching_service),
) -> MatchRunResponse:
    """Score every eligible counterpart and propose the best ones.

    Re-running is safe: pairs that already have a match are skipped, so
    the second call for the same user usually creates nothing.
    """
    result = await matching_service.run_matching(user_id, db)
    return MatchRunResponse(
        created_count=result.created_count,
        matches=[MatchResponse.model_validate(m) for m in result.matches],
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /user/{user_id} - List all matches for a user
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/user/{user_id}",
    response_model=list[MatchListItem],
    summary="List all matches for a user",
)
async def list_user_matches(
    user_id: uuid.UUID,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    matching_service: MatchingService = Depends(get_matching_service),
) -> list[MatchListItem]:
    """Return all matches involving a specific user, best score first.

    Each item is written from the requesting user's point of view.
    """
    log = logger.bind(user_id=str(user_id))
    log.info("list_user_matches", limit=limit, offset=offset)

    if await db.get(User, user_id) is None:
        raise UserNotFound(f"User {user_id} not found.")

    matches = await matching_service.list_matches(user_id, db, limit=limit, offset=offset)
    items = [_list_item(m, user_id) for m in matches]

    log.info("list_user_matches_complete", count=len(items))
    return items


def _list_item(match: Match, user_id: uuid.UUID) -> MatchListItem:
    if match.user_a_id == user_id:
        other, mine, theirs = match.user_b, match.user_a_status, match.user_b_status
    else:
        other, mine, theirs = match.user_a, match.user_b_status, match.user_a_status

    return MatchListItem(
        match_id=match.id,
        other_user_id=match.other_user_id(user_id),
        other_user_nickname=other.nickname if other else "Unknown",
        compatibility_score=match.compatibility_score,
        match_reason=match.match_reason,
        my_status=mine,
        their_status=theirs,
        is_matched=match.is_matched,
        created_at=match.created_at,
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /{match_id} - Get match details
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{match_id}",
    response_model=MatchResponse,
    summary="Get match details by ID",
)
async def get_match(
    match_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    lifecycle: MatchLifecycleService = Depends(get_lifecycle_service),
) -> Match:
    logger.info("get_match", match_id=str(match_id))
    return await lifecycle.get_match(match_id, db)


# ──────────────────────────────────────────────────────────────────────────────
# POST /{match_id}/decision - Accept or reject
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{match_id}/decision",
    response_model=MatchResponse,
    summary="Accept or reject a match",
)
async def decide(
    match_id: uuid.UUID,
    payload: DecisionRequest,
    db: AsyncSession = Depends(get_db),
    lifecycle: MatchLifecycleService = Depends(get_lifecycle_service),
) -> Match:
    """Record one participant's decision.

    When both sides have accepted the match becomes confirmed and chat
    opens; both participants are notified.
    """
    return await lifecycle.decide(match_id, payload.user_id, payload.accept, db)
