"""
Rapport: ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from app.models.user import User
from app.models.questionnaire import Scenario, ScenarioOption, ScenarioResponse
from app.models.match import Match, Message
from app.models.notification import NotificationLog, PushToken

__all__ = [
    "User",
    "Scenario",
    "ScenarioOption",
    "ScenarioResponse",
    "Match",
    "Message",
    "PushToken",
    "NotificationLog",
]
