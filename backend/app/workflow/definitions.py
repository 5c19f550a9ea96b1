"""Definition store: create, edit, clone and delete workflow definitions.

Stages and transitions arrive in payloads without identifiers. Transitions
refer to stages by ``stage_order``; a definition is built in two passes so
the whole graph is validated before anything is written, then stage ids are
materialised and transitions resolved through the order to stage map.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..extensions import db
from ..models.run import WorkflowRun, WorkflowRunHistory
from ..models.ticket import Operation, Ticket
from ..models.workflow import (
    STAGE_TYPES,
    TRIGGERS,
    WorkflowDefinition,
    WorkflowStage,
    WorkflowTransition,
)
from .errors import ActiveRunsError, NotFoundError, ValidationError
from .serializers import serialize_definition
from .stage_config import parse_stage_config
from .transaction import transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagePlan:
    name: str
    stage_order: int
    stage_type: str
    config: dict[str, Any]


@dataclass(frozen=True)
class TransitionPlan:
    from_stage_order: int
    to_stage_order: int
    trigger: str
    condition_expr: str | None = None
    label: str | None = None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _optional_text(item: Mapping[str, Any], key: str, prefix: str, errors: list[str]) -> str | None:
    value = item.get(key)
    if value is None or isinstance(value, str):
        return value
    errors.append(f"{prefix}.{key} must be a string")
    return None


def _plan_stages(raw: Any) -> tuple[list[StagePlan], list[str]]:
    """Validate the stage list of a payload."""

    if raw is None:
        return [], []
    if not isinstance(raw, list):
        return [], ["stages must be a list"]

    plans: list[StagePlan] = []
    errors: list[str] = []
    seen_orders: set[int] = set()
    for index, item in enumerate(raw):
        prefix = f"stages[{index}]"
        if not isinstance(item, Mapping):
            errors.append(f"{prefix} must be an object")
            continue

        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append(f"{prefix}.name is required")
        stage_order = item.get("stage_order")
        if not _is_int(stage_order):
            errors.append(f"{prefix}.stage_order must be an integer")
        elif stage_order in seen_orders:
            errors.append(f"{prefix}.stage_order {stage_order} is used more than once")
        else:
            seen_orders.add(stage_order)
        stage_type = item.get("stage_type")
        if stage_type not in STAGE_TYPES:
            errors.append(f"{prefix}.stage_type must be one of {', '.join(STAGE_TYPES)}")
            continue

        config = item.get("config") or {}
        _, config_errors = parse_stage_config(stage_type, config)
        errors.extend(f"{prefix}.config: {message}" for message in config_errors)

        if isinstance(name, str) and name.strip() and _is_int(stage_order) and not config_errors:
            plans.append(StagePlan(name.strip(), stage_order, stage_type, dict(config)))
    return plans, errors


def _plan_transitions(raw: Any, stage_orders: set[int]) -> tuple[list[TransitionPlan], list[str]]:
    """Validate the transition list of a payload against the known stage orders."""

    if raw is None:
        return [], []
    if not isinstance(raw, list):
        return [], ["transitions must be a list"]

    plans: list[TransitionPlan] = []
    errors: list[str] = []
    for index, item in enumerate(raw):
        prefix = f"transitions[{index}]"
        if not isinstance(item, Mapping):
            errors.append(f"{prefix} must be an object")
            continue

        item_errors: list[str] = []
        for key in ("from_stage_order", "to_stage_order"):
            value = item.get(key)
            if not _is_int(value):
                item_errors.append(f"{prefix}.{key} must be an integer")
            elif value not in stage_orders:
                item_errors.append(f"{prefix}.{key} {value} does not match any stage")
        trigger = item.get("trigger")
        if trigger not in TRIGGERS:
            item_errors.append(f"{prefix}.trigger must be one of {', '.join(TRIGGERS)}")
        condition_expr = _optional_text(item, "condition_expr", prefix, item_errors)
        label = _optional_text(item, "label", prefix, item_errors)

        if item_errors:
            errors.extend(item_errors)
            continue
        plans.append(
            TransitionPlan(
                item["from_stage_order"], item["to_stage_order"], trigger, condition_expr, label
            )
        )
    return plans, errors


def _materialize_stages(
    definition: WorkflowDefinition, plans: list[StagePlan]
) -> dict[int, WorkflowStage]:
    stages_by_order: dict[int, WorkflowStage] = {}
    for plan in plans:
        stage = WorkflowStage(
            id=str(uuid.uuid4()),
            name=plan.name,
            stage_order=plan.stage_order,
            stage_type=plan.stage_type,
            config=plan.config,
        )
        definition.stages.append(stage)
        stages_by_order[plan.stage_order] = stage
    return stages_by_order


def _materialize_transitions(
    definition: WorkflowDefinition,
    plans: list[TransitionPlan],
    stages_by_order: Mapping[int, WorkflowStage],
) -> None:
    for plan in plans:
        definition.transitions.append(
            WorkflowTransition(
                id=str(uuid.uuid4()),
                from_stage=stages_by_order[plan.from_stage_order],
                to_stage=stages_by_order[plan.to_stage_order],
                trigger=plan.trigger,
                condition_expr=plan.condition_expr,
                label=plan.label,
            )
        )


def _clear_other_defaults(definition_id: str | None = None) -> None:
    query = WorkflowDefinition.query.filter(WorkflowDefinition.is_default.is_(True))
    if definition_id is not None:
        query = query.filter(WorkflowDefinition.id != definition_id)
    for other in query.all():
        other.is_default = False


def _has_active_runs(definition_id: str) -> bool:
    query = WorkflowRun.query.filter_by(workflow_id=definition_id, status="active")
    return db.session.query(query.exists()).scalar()


def _optional_flag(payload: Mapping[str, Any], key: str, errors: list[str]) -> bool | None:
    value = payload.get(key)
    if value is None or isinstance(value, bool):
        return value
    errors.append(f"{key} must be a boolean")
    return None


def _load(definition_id: str) -> WorkflowDefinition:
    definition = db.session.get(WorkflowDefinition, definition_id)
    if definition is None:
        raise NotFoundError("Workflow not found")
    return definition


def get_definition(definition_id: str) -> WorkflowDefinition:
    return _load(definition_id)


def get_default_definition() -> WorkflowDefinition | None:
    return WorkflowDefinition.query.filter_by(is_default=True).first()


def list_definitions(
    page: int = 1,
    limit: int = 20,
    *,
    is_template: bool | None = None,
    is_default: bool | None = None,
) -> tuple[list[WorkflowDefinition], int]:
    """Return one page of definitions, newest first, and the total count."""

    query = WorkflowDefinition.query
    if is_template is not None:
        query = query.filter(WorkflowDefinition.is_template.is_(is_template))
    if is_default is not None:
        query = query.filter(WorkflowDefinition.is_default.is_(is_default))
    total = query.count()
    items = (
        query.order_by(WorkflowDefinition.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def create_definition(payload: Mapping[str, Any], created_by: str | None) -> WorkflowDefinition:
    """Validate the whole graph, then insert the definition with its stages."""

    errors: list[str] = []
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append("name is required")
    description = _optional_text(payload, "description", "workflow", errors) or ""
    is_template = _optional_flag(payload, "is_template", errors) or False
    is_default = _optional_flag(payload, "is_default", errors) or False

    stage_plans, stage_errors = _plan_stages(payload.get("stages"))
    transition_plans, transition_errors = _plan_transitions(
        payload.get("transitions"), {plan.stage_order for plan in stage_plans}
    )
    errors.extend(stage_errors)
    errors.extend(transition_errors)
    if errors:
        raise ValidationError.from_errors(errors)

    with transaction() as events:
        if is_default:
            _clear_other_defaults()
        definition = WorkflowDefinition(
            name=name.strip(),
            description=description,
            is_template=is_template,
            is_default=is_default,
            created_by=created_by,
        )
        db.session.add(definition)
        stages_by_order = _materialize_stages(definition, stage_plans)
        _materialize_transitions(definition, transition_plans, stages_by_order)
        db.session.flush()
        events.add("workflow.created", serialize_definition(definition))

    logger.info("Created workflow %s (%s)", definition.id, definition.name)
    return definition


def _detach_stages(stage_ids: list[str]) -> None:
    """Clear ticket pointers to stages about to be removed.

    Runs and history keep their stage ids; those columns carry no foreign key.
    """

    if not stage_ids:
        return
    Ticket.query.filter(Ticket.current_stage_id.in_(stage_ids)).update(
        {"current_stage_id": None}, synchronize_session=False
    )


def update_definition(definition_id: str, payload: Mapping[str, Any]) -> WorkflowDefinition:
    """Patch metadata and optionally replace the stage graph."""

    definition = _load(definition_id)

    errors: list[str] = []
    name = payload.get("name")
    if name is not None and (not isinstance(name, str) or not name.strip()):
        errors.append("name must not be empty")
    description = _optional_text(payload, "description", "workflow", errors)
    is_template = _optional_flag(payload, "is_template", errors)
    is_default = _optional_flag(payload, "is_default", errors)

    replace_stages = payload.get("stages") is not None
    replace_transitions = replace_stages or payload.get("transitions") is not None
    stage_plans: list[StagePlan] = []
    if replace_stages:
        stage_plans, stage_errors = _plan_stages(payload.get("stages"))
        errors.extend(stage_errors)
        stage_orders = {plan.stage_order for plan in stage_plans}
    else:
        stage_orders = {stage.stage_order for stage in definition.stages}
    transition_plans, transition_errors = _plan_transitions(
        payload.get("transitions"), stage_orders
    )
    errors.extend(transition_errors)
    if errors:
        raise ValidationError.from_errors(errors)

    if replace_transitions and _has_active_runs(definition.id):
        raise ActiveRunsError("Cannot change stages or transitions while runs are active")

    with transaction() as events:
        if name is not None:
            definition.name = name.strip()
        if description is not None:
            definition.description = description
        if is_template is not None:
            definition.is_template = is_template
        if is_default is not None:
            if is_default:
                _clear_other_defaults(definition.id)
            definition.is_default = is_default

        if replace_transitions:
            definition.transitions = []
            db.session.flush()
        if replace_stages:
            _detach_stages([stage.id for stage in definition.stages])
            definition.stages = []
            # Flush the deletes before inserting stages that reuse their orders.
            db.session.flush()
            stages_by_order = _materialize_stages(definition, stage_plans)
        else:
            stages_by_order = {stage.stage_order: stage for stage in definition.stages}
        if replace_transitions:
            _materialize_transitions(definition, transition_plans, stages_by_order)

        definition.version += 1
        db.session.flush()
        events.add("workflow.updated", serialize_definition(definition))

    logger.info("Updated workflow %s to version %s", definition.id, definition.version)
    return definition


def delete_definition(definition_id: str) -> None:
    """Delete a definition with its finished runs and their history."""

    definition = _load(definition_id)
    if _has_active_runs(definition.id):
        raise ActiveRunsError("Cannot delete a workflow with active runs")

    with transaction() as events:
        run_ids = [
            run_id
            for (run_id,) in db.session.query(WorkflowRun.id).filter_by(workflow_id=definition.id)
        ]
        if run_ids:
            Ticket.query.filter(Ticket.workflow_run_id.in_(run_ids)).update(
                {"workflow_run_id": None, "current_stage_id": None}, synchronize_session=False
            )
            WorkflowRunHistory.query.filter(WorkflowRunHistory.run_id.in_(run_ids)).delete(
                synchronize_session=False
            )
            for run in WorkflowRun.query.filter(WorkflowRun.id.in_(run_ids)).all():
                db.session.delete(run)
        Operation.query.filter_by(workflow_id=definition.id).update(
            {"workflow_id": None}, synchronize_session=False
        )
        db.session.flush()
        definition.transitions = []
        db.session.flush()
        db.session.delete(definition)
        events.add("workflow.deleted", {"workflow_id": definition_id})

    logger.info("Deleted workflow %s", definition_id)


def clone_definition(definition_id: str, created_by: str | None) -> WorkflowDefinition:
    """Deep copy a definition under a new identity; the copy is never the default."""

    original = _load(definition_id)
    order_by_stage_id = {stage.id: stage.stage_order for stage in original.stages}
    stage_plans = [
        StagePlan(stage.name, stage.stage_order, stage.stage_type, dict(stage.config or {}))
        for stage in original.stages
    ]
    transition_plans = [
        TransitionPlan(
            order_by_stage_id[transition.from_stage_id],
            order_by_stage_id[transition.to_stage_id],
            transition.trigger,
            transition.condition_expr,
            transition.label,
        )
        for transition in original.transitions
        if transition.from_stage_id in order_by_stage_id
        and transition.to_stage_id in order_by_stage_id
    ]

    with transaction() as events:
        clone = WorkflowDefinition(
            name=f"{original.name} (Copy)",
            description=original.description,
            is_template=original.is_template,
            is_default=False,
            created_by=created_by,
        )
        db.session.add(clone)
        stages_by_order = _materialize_stages(clone, stage_plans)
        _materialize_transitions(clone, transition_plans, stages_by_order)
        db.session.flush()
        events.add("workflow.created", serialize_definition(clone))

    logger.info("Cloned workflow %s into %s", definition_id, clone.id)
    return clone
