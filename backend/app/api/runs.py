"""REST API endpoints for workflow runs."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, g, jsonify, request

from ..extensions import limiter
from ..models.run import RUN_STATUSES
from ..utils.auth import get_user_roles, require_user
from ..utils.pagination import paginated, parse_pagination
from ..workflow.engine import get_engine
from ..workflow.errors import ValidationError
from ..workflow.serializers import serialize_history, serialize_run
from .common import json_body

bp = Blueprint("workflow_runs", __name__)


def _action_rate_limit() -> str:
    return current_app.config.get("RUN_ACTION_RATE_LIMIT", "120 per minute")


def _optional_string(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    if value is None or isinstance(value, str):
        return value
    raise ValidationError(f"{key} must be a string")


@bp.post("/workflow-runs")
def start_run() -> tuple[object, int]:
    payload = json_body()
    workflow_id = payload.get("workflow_id")
    if not isinstance(workflow_id, str) or not workflow_id:
        raise ValidationError("workflow_id is required")
    run = get_engine().start_run(
        workflow_id,
        ticket_id=_optional_string(payload, "ticket_id"),
        context=payload.get("context"),
    )
    return jsonify(serialize_run(run)), HTTPStatus.CREATED


@bp.get("/workflow-runs")
def list_runs() -> tuple[object, int]:
    page, limit = parse_pagination(request.args)
    status = request.args.get("status") or None
    if status is not None and status not in RUN_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(RUN_STATUSES)}")
    runs, total = get_engine().list_runs(
        page,
        limit,
        workflow_id=request.args.get("workflow_id") or None,
        ticket_id=request.args.get("ticket_id") or None,
        status=status,
    )
    payload = [serialize_run(run) for run in runs]
    return jsonify(paginated(payload, page, limit, total)), HTTPStatus.OK


@bp.get("/workflow-runs/<run_id>")
def get_run(run_id: str) -> tuple[object, int]:
    run, history = get_engine().get_run(run_id)
    return jsonify(serialize_run(run, history=history)), HTTPStatus.OK


@bp.post("/workflow-runs/<run_id>/action")
@limiter.limit(_action_rate_limit)
@require_user
def run_action(run_id: str) -> tuple[object, int]:
    payload = json_body()
    action = payload.get("action")
    if not isinstance(action, str) or not action:
        raise ValidationError("action is required")
    run = get_engine().perform_action(
        run_id,
        action,
        g.user_id,
        get_user_roles(),
        comment=_optional_string(payload, "comment"),
        target_stage_id=_optional_string(payload, "target_stage_id"),
    )
    return jsonify(serialize_run(run)), HTTPStatus.OK


@bp.post("/workflow-runs/<run_id>/abort")
@require_user
def abort_run(run_id: str) -> tuple[object, int]:
    run = get_engine().abort_run(run_id, g.user_id)
    return jsonify(serialize_run(run)), HTTPStatus.OK


@bp.get("/workflow-runs/<run_id>/history")
def get_run_history(run_id: str) -> tuple[object, int]:
    history = get_engine().get_history(run_id)
    return jsonify({"data": [serialize_history(entry) for entry in history]}), HTTPStatus.OK


@bp.patch("/workflow-runs/<run_id>/context")
def update_run_context(run_id: str) -> tuple[object, int]:
    payload = json_body()
    if "context" not in payload:
        raise ValidationError("context is required")
    run = get_engine().update_context(run_id, payload["context"])
    return jsonify(serialize_run(run)), HTTPStatus.OK
