"""
Rapport: Main API Router

Aggregates all sub-routers under a single prefix so that ``app.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from app.api import chat, matching, notifications, questionnaire, users

router = APIRouter()

router.include_router(users.router, prefix="/users", tags=["Users"])
router.include_router(questionnaire.router, prefix="/questionnaire", tags=["Questionnaire"])
router.include_router(matching.router, prefix="/match", tags=["Matching"])
router.include_router(chat.router, prefix="/chat", tags=["Chat"])
router.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
