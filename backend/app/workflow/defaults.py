"""Built-in default approval workflow installed by the seed script."""

from __future__ import annotations

from typing import Any

from ..models.workflow import WorkflowDefinition
from .definitions import create_definition

DEFAULT_WORKFLOW_NAME = "Standard Red Team Approval"

DEFAULT_WORKFLOW: dict[str, Any] = {
    "name": DEFAULT_WORKFLOW_NAME,
    "description": "Default linear approval chain: Planner -> E3 -> E2 -> E1 -> Operator",
    "is_template": True,
    "is_default": True,
    "stages": [
        {
            "name": "Plan Drafting",
            "stage_order": 1,
            "stage_type": "action",
            "config": {
                "required_role": "planner",
                "description": "Planner drafts the operation plan",
            },
        },
        {
            "name": "E3 Review",
            "stage_order": 2,
            "stage_type": "approval",
            "config": {
                "required_role": "mission_commander",
                "min_approvals": 1,
                "approval_mode": "any",
                "escalation_timeout_minutes": 120,
            },
        },
        {
            "name": "E2 Review",
            "stage_order": 3,
            "stage_type": "approval",
            "config": {
                "required_role": "supervisor",
                "min_approvals": 1,
                "approval_mode": "any",
                "escalation_timeout_minutes": 240,
            },
        },
        {
            "name": "E1 Review",
            "stage_order": 4,
            "stage_type": "approval",
            "config": {
                "required_role": "senior_leadership",
                "min_approvals": 1,
                "approval_mode": "any",
                "auto_approve_conditions": {"risk_level": {"lte": 2}},
            },
        },
        {
            "name": "Execution",
            "stage_order": 5,
            "stage_type": "action",
            "config": {
                "required_role": "operator",
                "description": "Operator executes approved tasks",
            },
        },
        {"name": "Completed", "stage_order": 6, "stage_type": "terminal", "config": {}},
    ],
    "transitions": [
        {
            "from_stage_order": 1,
            "to_stage_order": 2,
            "trigger": "on_complete",
            "label": "Submit for Review",
        },
        {
            "from_stage_order": 2,
            "to_stage_order": 3,
            "trigger": "on_approve",
            "label": "E3 Approved",
        },
        {
            "from_stage_order": 2,
            "to_stage_order": 1,
            "trigger": "on_reject",
            "label": "Kickback to Planner",
        },
        {
            "from_stage_order": 3,
            "to_stage_order": 4,
            "trigger": "on_approve",
            "label": "E2 Approved",
        },
        {
            "from_stage_order": 3,
            "to_stage_order": 2,
            "trigger": "on_kickback",
            "label": "Kickback to E3",
        },
        {
            "from_stage_order": 4,
            "to_stage_order": 5,
            "trigger": "on_approve",
            "label": "E1 Approved",
        },
        {
            "from_stage_order": 4,
            "to_stage_order": 3,
            "trigger": "on_kickback",
            "label": "Kickback to E2",
        },
        {
            "from_stage_order": 5,
            "to_stage_order": 6,
            "trigger": "on_complete",
            "label": "Mark Complete",
        },
    ],
}


def ensure_default_workflow() -> tuple[WorkflowDefinition, bool]:
    """Install the default workflow once; return it and whether it was created."""

    existing = WorkflowDefinition.query.filter_by(name=DEFAULT_WORKFLOW_NAME).first()
    if existing is not None:
        return existing, False
    return create_definition(DEFAULT_WORKFLOW, created_by=None), True
