"""Error taxonomy of the workflow engine.

Every error carries a stable machine readable ``code`` and the HTTP status
the REST layer answers with.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any


class WorkflowError(Exception):
    """Base class for all errors raised by the workflow engine."""

    code = "WORKFLOW_ERROR"
    status = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = list(self.details)
        return payload


class ValidationError(WorkflowError):
    code = "VALIDATION_ERROR"
    status = HTTPStatus.BAD_REQUEST

    @classmethod
    def from_errors(cls, errors: list[str]) -> ValidationError:
        return cls("; ".join(errors), details=errors)


class InvalidJSONError(WorkflowError):
    code = "INVALID_JSON"
    status = HTTPStatus.BAD_REQUEST


class NotFoundError(WorkflowError):
    code = "NOT_FOUND"
    status = HTTPStatus.NOT_FOUND


class InvalidStateError(WorkflowError):
    code = "INVALID_STATE"
    status = HTTPStatus.BAD_REQUEST


class InvalidActionError(WorkflowError):
    code = "INVALID_ACTION"
    status = HTTPStatus.BAD_REQUEST


class InvalidTargetError(WorkflowError):
    code = "INVALID_TARGET"
    status = HTTPStatus.BAD_REQUEST


class TransitionCycleError(WorkflowError):
    """Raised when automatic stages keep advancing past the hop limit."""

    code = "TRANSITION_CYCLE"
    status = HTTPStatus.BAD_REQUEST


class UnauthorizedError(WorkflowError):
    code = "UNAUTHORIZED"
    status = HTTPStatus.UNAUTHORIZED


class InsufficientRoleError(WorkflowError):
    code = "INSUFFICIENT_ROLE"
    status = HTTPStatus.FORBIDDEN


class ActiveRunsError(WorkflowError):
    code = "ACTIVE_RUNS"
    status = HTTPStatus.CONFLICT


class RunConflictError(WorkflowError):
    """Raised when a concurrent mutation changed the run first."""

    code = "CONFLICT"
    status = HTTPStatus.CONFLICT


class DatabaseError(WorkflowError):
    code = "DB_ERROR"
    status = HTTPStatus.INTERNAL_SERVER_ERROR
