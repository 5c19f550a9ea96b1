"""Drain stages that advance without a human decision.

Notification, condition and auto-approvable approval stages are processed
in a loop until the run parks at an interactive stage or completes. Cycles
among automatic stages are cut off by a hop limit.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..events.bus import PendingEvents
from ..models.run import WorkflowRun
from .errors import TransitionCycleError
from .expression import evaluate
from .stage_config import ApprovalConfig, ConditionConfig, config_for

if TYPE_CHECKING:
    from .engine import RunEngine

logger = logging.getLogger(__name__)

AUTO_APPROVED_COMMENT = "Auto-approved by condition"


def drain_auto_stages(engine: RunEngine, run: WorkflowRun, events: PendingEvents) -> int:
    """Advance ``run`` past automatic stages and return the number of hops taken."""

    hops = 0
    while run.is_active and run.current_stage is not None:
        stage = run.current_stage
        config = config_for(stage)

        if stage.stage_type == "notification":
            events.add(
                "workflow.notification",
                {"run_id": run.id, "stage_name": stage.name, "config": stage.config or {}},
            )
            trigger = "on_complete"
        elif stage.stage_type == "condition":
            expression = config.expression if isinstance(config, ConditionConfig) else ""
            # An empty expression is false and leaves via on_condition_false.
            matched = evaluate(expression, run.context or {})
            trigger = "on_condition_true" if matched else "on_condition_false"
        elif stage.stage_type == "approval":
            if not isinstance(config, ApprovalConfig):
                break
            if not config.auto_approves(run.context or {}):
                break
            engine.record_history(run, stage, "auto_approved", comment=AUTO_APPROVED_COMMENT)
            events.add(
                "workflow.approved",
                {
                    "run_id": run.id,
                    "stage_name": stage.name,
                    "auto": True,
                    "ticket_id": run.ticket_id,
                },
            )
            trigger = "on_approve"
        else:
            break

        hops += 1
        if hops > engine.max_auto_hops:
            logger.warning("Run %s exceeded %s automatic hops", run.id, engine.max_auto_hops)
            raise TransitionCycleError(
                f"Automatic stages did not settle after {engine.max_auto_hops} transitions"
            )

        next_stage = engine.resolve_next_stage(run.workflow_id, stage, trigger)
        logger.debug("Run %s leaves stage %r via %s", run.id, stage.name, trigger)
        engine.advance_to_stage(run, next_stage, events)
    return hops
