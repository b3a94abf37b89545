"""
Rapport: Users API

Endpoints for user CRUD, notification preferences, and push-token
registration.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_dispatcher
from app.database import get_db
from app.errors import ConflictError, UserNotFound
from app.models.notification import PushToken
from app.models.user import User
from app.schemas.notification import PushTokenCreate, PushTokenResponse
from app.schemas.user import UserCreate, UserResponse, UserUpdate
from app.services.notification_service import NotificationDispatcher

logger = structlog.get_logger("rapport.api.users")

router = APIRouter()


async def _get_user_or_404(user_id: uuid.UUID, db: AsyncSession) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found.")
    return user


# ──────────────────────────────────────────────────────────────────────────────
# POST / - Create a new user
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new user",
)
async def create_user(
    payload: UserCreate,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Register a new user account.

    Validates that the email is not already in use, creates the user record,
    and returns the full user response.
    """
    log = logger.bind(email=payload.email)
    log.info("create_user_start")

    stmt = select(User.id).where(User.email == payload.email)
    if (await db.execute(stmt)).scalar_one_or_none() is not None:
        log.warning("create_user_duplicate_email")
        raise ConflictError("A user with this email already exists.")

    new_user = User(**payload.model_dump())
    db.add(new_user)
    try:
        await db.flush()
    except IntegrityError:
        # Lost the race to a concurrent sign-up with the same email.
        log.warning("create_user_duplicate_email_on_insert")
        raise ConflictError("A user with this email already exists.")

    log.info("create_user_complete", user_id=str(new_user.id))
    return new_user


# ──────────────────────────────────────────────────────────────────────────────
# GET /{user_id} - Get user by ID
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{user_id}",
    response_model=UserResponse,
    summary="Get user by ID",
)
async def get_user(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> User:
    logger.info("get_user", user_id=str(user_id))
    return await _get_user_or_404(user_id, db)


# ──────────────────────────────────────────────────────────────────────────────
# PATCH /{user_id} - Update profile / notification settings
# ──────────────────────────────────────────────────────────────────────────────

@router.patch(
    "/{user_id}",
    response_model=UserResponse,
    summary="Update user details",
)
async def update_user(
    user_id: uuid.UUID,
    payload: UserUpdate,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Update mutable fields on a user record.

    Only fields present in the request body are applied.
    """
    log = logger.bind(user_id=str(user_id))
    log.info("update_user_start")

    user = await _get_user_or_404(user_id, db)

    update_data = payload.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        setattr(user, field, value)

    await db.flush()
    log.info("update_user_complete", updated_fields=list(update_data.keys()))
    return user


# ──────────────────────────────────────────────────────────────────────────────
# Push tokens
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{user_id}/push-tokens",
    response_model=PushTokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a device push token",
)
async def register_push_token(
    user_id: uuid.UUID,
    payload: PushTokenCreate,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> PushToken:
    """Store (or reactivate) a device token so the user receives pushes."""
    return await dispatcher.register_token(user_id, payload.token, payload.device_type, db)


@router.delete(
    "/{user_id}/push-tokens/{token}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Deactivate a device push token",
)
async def deactivate_push_token(
    user_id: uuid.UUID,
    token: str,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> Response:
    await _get_user_or_404(user_id, db)
    await dispatcher.deactivate_token(user_id, token, db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
