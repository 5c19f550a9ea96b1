"""REST API endpoints for workflow definitions."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, g, jsonify, request

from ..utils.auth import get_user_id, require_user
from ..utils.pagination import paginated, parse_pagination
from ..workflow import definitions
from ..workflow.serializers import serialize_definition
from .common import json_body, query_flag

bp = Blueprint("workflows", __name__)


@bp.post("/workflows")
@require_user
def create_workflow() -> tuple[object, int]:
    definition = definitions.create_definition(json_body(), created_by=g.user_id)
    return jsonify(serialize_definition(definition)), HTTPStatus.CREATED


@bp.get("/workflows")
def list_workflows() -> tuple[object, int]:
    page, limit = parse_pagination(request.args)
    items, total = definitions.list_definitions(
        page,
        limit,
        is_template=query_flag("is_template"),
        is_default=query_flag("is_default"),
    )
    payload = [serialize_definition(item, include_graph=False) for item in items]
    return jsonify(paginated(payload, page, limit, total)), HTTPStatus.OK


@bp.get("/workflows/<workflow_id>")
def get_workflow(workflow_id: str) -> tuple[object, int]:
    definition = definitions.get_definition(workflow_id)
    return jsonify(serialize_definition(definition)), HTTPStatus.OK


@bp.put("/workflows/<workflow_id>")
def update_workflow(workflow_id: str) -> tuple[object, int]:
    definition = definitions.update_definition(workflow_id, json_body())
    return jsonify(serialize_definition(definition)), HTTPStatus.OK


@bp.delete("/workflows/<workflow_id>")
def delete_workflow(workflow_id: str) -> tuple[object, int]:
    definitions.delete_definition(workflow_id)
    return "", HTTPStatus.NO_CONTENT


@bp.post("/workflows/<workflow_id>/clone")
def clone_workflow(workflow_id: str) -> tuple[object, int]:
    clone = definitions.clone_definition(workflow_id, created_by=get_user_id())
    return jsonify(serialize_definition(clone)), HTTPStatus.CREATED
