"""
Rapport: Domain error taxonomy.

Services raise these instead of ``HTTPException`` so that they stay usable
outside a request.  ``app.main`` maps each family onto an HTTP status code.
"""

from __future__ import annotations


class RapportError(Exception):
    """Base class for every error raised by the matching core."""

    code: str = "rapport_error"
    status_code: int = 500

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


# ── Validation ────────────────────────────────────────────────────────────────

class ValidationError(RapportError):
    code = "validation_error"
    status_code = 422


class NoResponses(ValidationError):
    code = "no_responses"


class NotParticipant(ValidationError):
    code = "not_participant"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class MatchNotConfirmed(ValidationError):
    code = "match_not_confirmed"
    status_code = 409


class EmptyMessage(ValidationError):
    code = "empty_message"


class MessageTooLong(EmptyMessage):
    code = "message_too_long"


# ── Not found ─────────────────────────────────────────────────────────────────

class NotFoundError(RapportError):
    code = "not_found"
    status_code = 404


class UserNotFound(NotFoundError):
    code = "user_not_found"


class MatchNotFound(NotFoundError):
    code = "match_not_found"


# ── Conflict / dependency ─────────────────────────────────────────────────────

class ConflictError(RapportError):
    code = "conflict"
    status_code = 409


class DependencyError(RapportError):
    code = "dependency_unavailable"
    status_code = 503
