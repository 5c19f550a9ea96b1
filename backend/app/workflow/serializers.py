"""JSON representations of workflow definitions, runs and history."""

from __future__ import annotations

from typing import Any

from ..models.run import WorkflowRun, WorkflowRunHistory
from ..models.workflow import WorkflowDefinition, WorkflowStage, WorkflowTransition
from ..utils.clock import isoformat


def serialize_stage(stage: WorkflowStage) -> dict[str, Any]:
    return {
        "id": stage.id,
        "workflow_id": stage.workflow_id,
        "name": stage.name,
        "stage_order": stage.stage_order,
        "stage_type": stage.stage_type,
        "config": stage.config or {},
        "created_at": isoformat(stage.created_at),
    }


def serialize_transition(transition: WorkflowTransition) -> dict[str, Any]:
    return {
        "id": transition.id,
        "workflow_id": transition.workflow_id,
        "from_stage_id": transition.from_stage_id,
        "to_stage_id": transition.to_stage_id,
        "trigger": transition.trigger,
        "condition_expr": transition.condition_expr,
        "label": transition.label,
        "created_at": isoformat(transition.created_at),
    }


def serialize_definition(
    definition: WorkflowDefinition, *, include_graph: bool = True
) -> dict[str, Any]:
    """Return a definition; list views omit the graph and report ``stage_count``."""

    payload: dict[str, Any] = {
        "id": definition.id,
        "name": definition.name,
        "description": definition.description or "",
        "version": definition.version,
        "is_template": definition.is_template,
        "is_default": definition.is_default,
        "created_by": definition.created_by,
        "created_at": isoformat(definition.created_at),
        "updated_at": isoformat(definition.updated_at),
    }
    if include_graph:
        payload["stages"] = [serialize_stage(stage) for stage in definition.stages]
        payload["transitions"] = [
            serialize_transition(transition) for transition in definition.transitions
        ]
    else:
        payload["stage_count"] = len(definition.stages)
    return payload


def serialize_history(entry: WorkflowRunHistory) -> dict[str, Any]:
    return {
        "id": entry.id,
        "run_id": entry.run_id,
        "stage_id": entry.stage_id,
        "stage_name": entry.stage_name,
        "action": entry.action,
        "actor_id": entry.actor_id,
        "comment": entry.comment,
        "metadata": entry.metadata_ or {},
        "occurred_at": isoformat(entry.occurred_at),
    }


def serialize_run(
    run: WorkflowRun, *, history: list[WorkflowRunHistory] | None = None
) -> dict[str, Any]:
    stage = run.current_stage
    payload: dict[str, Any] = {
        "id": run.id,
        "workflow_id": run.workflow_id,
        "workflow_name": run.workflow.name if run.workflow is not None else None,
        "ticket_id": run.ticket_id,
        "current_stage_id": run.current_stage_id,
        "current_stage": serialize_stage(stage) if stage is not None else None,
        "status": run.status,
        "context": run.context or {},
        "started_at": isoformat(run.started_at),
        "completed_at": isoformat(run.completed_at),
    }
    if history is not None:
        payload["history"] = [serialize_history(entry) for entry in history]
    return payload
