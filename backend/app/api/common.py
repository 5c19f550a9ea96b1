"""Request parsing and error rendering shared by the API blueprints."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Flask, jsonify, request
from flask_limiter.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from ..extensions import db
from ..workflow.errors import DatabaseError, InvalidJSONError, WorkflowError


def json_body() -> dict[str, Any]:
    """Return the JSON object sent with the request; an empty body is ``{}``."""

    if not request.get_data(cache=True):
        return {}
    payload = request.get_json(silent=True, force=True)
    if payload is None:
        raise InvalidJSONError("Failed to parse request body")
    if not isinstance(payload, dict):
        raise InvalidJSONError("Request body must be a JSON object")
    return payload


def query_flag(name: str) -> bool | None:
    """Read a ``true``/``false`` query parameter; anything else means unset."""

    value = (request.args.get(name) or "").strip().lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return None


def error_response(code: str, message: str, status: int) -> tuple[object, int]:
    return jsonify({"error": {"code": code, "message": message}}), status


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(WorkflowError)
    def _workflow_error(exc: WorkflowError) -> tuple[object, int]:
        return jsonify({"error": exc.to_dict()}), exc.status

    @app.errorhandler(RateLimitExceeded)
    def _rate_limited(exc: RateLimitExceeded) -> tuple[object, int]:
        return error_response(
            "RATE_LIMITED", f"Rate limit exceeded: {exc.description}", HTTPStatus.TOO_MANY_REQUESTS
        )

    @app.errorhandler(SQLAlchemyError)
    def _database_error(exc: SQLAlchemyError) -> tuple[object, int]:
        db.session.rollback()
        app.logger.exception("Database error while handling %s %s", request.method, request.path)
        return _workflow_error(DatabaseError("A database error occurred"))

    @app.errorhandler(HTTPException)
    def _http_error(exc: HTTPException) -> tuple[object, int]:
        code = (exc.name or "error").upper().replace(" ", "_")
        return error_response(code, exc.description or exc.name, exc.code or 500)
