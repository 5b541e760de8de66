from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class CoachError(Exception):
    """Base class for every failure the coaching engine surfaces to callers."""

    status_code = 500
    code = "coach_error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationRejected(CoachError):
    status_code = 422
    code = "validation_rejected"

    def __init__(
        self,
        message: str = "Goal did not pass validation",
        *,
        scores: dict[str, int] | None = None,
        suggestions: list[str] | None = None,
        refined_goal: str | None = None,
    ):
        super().__init__(
            message,
            scores=scores or {},
            suggestions=list(suggestions or []),
            refined_goal=refined_goal,
        )
        self.scores = scores or {}
        self.suggestions = list(suggestions or [])
        self.refined_goal = refined_goal


class StructuralDraftError(CoachError):
    status_code = 422
    code = "structural_draft_error"

    def __init__(self, message: str, *, problems: list[str] | None = None):
        super().__init__(message, problems=list(problems or [message]))
        self.problems = list(problems or [message])


class CapacityExceeded(CoachError):
    status_code = 429
    code = "capacity_exceeded"


class NotFound(CoachError):
    status_code = 404
    code = "not_found"


class AlreadyTerminal(CoachError):
    """Operation on a quest or milestone that already reached a terminal state.

    Routers answer this with a 200 no-op payload so retried requests are harmless.
    """

    status_code = 200
    code = "already_terminal"

    def __init__(self, message: str, *, status: str, entity: str, entity_id: int):
        super().__init__(message, status=status, entity=entity, entity_id=entity_id)
        self.status = status
        self.entity = entity
        self.entity_id = entity_id


class CollaboratorUnavailable(CoachError):
    status_code = 503
    code = "collaborator_unavailable"


class PersistenceError(CoachError):
    status_code = 500
    code = "persistence_error"


def commit_or_raise(db: Session, what: str) -> None:
    """Commit the current unit of work; roll back and raise PersistenceError on failure."""
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Commit failed while %s: %s", what, exc)
        raise PersistenceError(f"Storage failure while {what}") from exc
