"""Run engine: start runs, apply human actions and move runs between stages.

Every mutating method runs as one transaction through
:func:`~.transaction.transaction`. The run row is locked for update and
versioned, so of two racing mutations only one commits; the other fails
with :class:`~.errors.RunConflictError`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from flask import current_app

from ..events.bus import PendingEvents
from ..extensions import db
from ..models.run import WorkflowRun, WorkflowRunHistory
from ..models.ticket import TICKET_APPROVED_STATUS, TICKET_DRAFT_STATUS, Ticket
from ..models.workflow import WorkflowDefinition, WorkflowStage, WorkflowTransition
from ..utils.auth import has_role
from ..utils.clock import utcnow
from .auto_stages import drain_auto_stages
from .errors import (
    InsufficientRoleError,
    InvalidActionError,
    InvalidStateError,
    InvalidTargetError,
    NotFoundError,
    ValidationError,
)
from .stage_config import config_for
from .transaction import transaction

logger = logging.getLogger(__name__)

ALLOWED_ACTIONS: dict[str, tuple[str, ...]] = {
    "approval": ("approve", "reject", "kickback"),
    "action": ("complete",),
    "timer": ("complete", "timeout"),
}

ACTION_TRIGGERS = {
    "approve": "on_approve",
    "reject": "on_reject",
    "kickback": "on_kickback",
    "complete": "on_complete",
    "timeout": "on_timeout",
}

_ACTION_EVENTS = {
    "approve": "workflow.approved",
    "reject": "workflow.rejected",
    "kickback": "workflow.kickback",
}

_RETURN_ACTIONS = ("reject", "kickback")


class RunEngine:
    """Stage graph state machine over persisted workflow runs."""

    def __init__(self, *, super_role: str | None = "admin", max_auto_hops: int = 100) -> None:
        self.super_role = super_role
        self.max_auto_hops = max_auto_hops

    # -- reads -------------------------------------------------------------

    def get_run(self, run_id: str) -> tuple[WorkflowRun, list[WorkflowRunHistory]]:
        run = db.session.get(WorkflowRun, run_id)
        if run is None:
            raise NotFoundError("Workflow run not found")
        return run, self._history(run.id)

    def get_history(self, run_id: str) -> list[WorkflowRunHistory]:
        if db.session.get(WorkflowRun, run_id) is None:
            raise NotFoundError("Workflow run not found")
        return self._history(run_id)

    def list_runs(
        self,
        page: int = 1,
        limit: int = 20,
        *,
        workflow_id: str | None = None,
        ticket_id: str | None = None,
        status: str | None = None,
    ) -> tuple[list[WorkflowRun], int]:
        query = WorkflowRun.query
        if workflow_id:
            query = query.filter(WorkflowRun.workflow_id == workflow_id)
        if ticket_id:
            query = query.filter(WorkflowRun.ticket_id == ticket_id)
        if status:
            query = query.filter(WorkflowRun.status == status)
        total = query.count()
        runs = (
            query.order_by(WorkflowRun.started_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return runs, total

    @staticmethod
    def _history(run_id: str) -> list[WorkflowRunHistory]:
        return (
            WorkflowRunHistory.query.filter_by(run_id=run_id)
            .order_by(WorkflowRunHistory.occurred_at.desc(), WorkflowRunHistory.id.desc())
            .all()
        )

    # -- building blocks ---------------------------------------------------

    def lock_run(self, run_id: str) -> WorkflowRun:
        """Load a run for update, refreshing any copy already in the session."""

        run = (
            WorkflowRun.query.filter_by(id=run_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if run is None:
            raise NotFoundError("Workflow run not found")
        return run

    def record_history(
        self,
        run: WorkflowRun,
        stage: WorkflowStage | None,
        action: str,
        *,
        actor_id: str | None = None,
        comment: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> WorkflowRunHistory:
        entry = WorkflowRunHistory(
            run_id=run.id,
            stage_id=stage.id if stage is not None else None,
            stage_name=stage.name if stage is not None else "",
            action=action,
            actor_id=actor_id,
            comment=comment,
            metadata_=metadata or {},
            occurred_at=occurred_at or utcnow(),
        )
        db.session.add(entry)
        return entry

    def resolve_next_stage(
        self, workflow_id: str, from_stage: WorkflowStage, trigger: str
    ) -> WorkflowStage | None:
        """Explicit transition first, then the next stage by order, else ``None``."""

        transition = (
            WorkflowTransition.query.filter_by(
                workflow_id=workflow_id, from_stage_id=from_stage.id, trigger=trigger
            )
            .order_by(WorkflowTransition.created_at.asc())
            .first()
        )
        if transition is not None:
            return transition.to_stage

        return (
            WorkflowStage.query.filter(
                WorkflowStage.workflow_id == workflow_id,
                WorkflowStage.stage_order > from_stage.stage_order,
            )
            .order_by(WorkflowStage.stage_order.asc())
            .first()
        )

    def advance_to_stage(
        self,
        run: WorkflowRun,
        next_stage: WorkflowStage | None,
        events: PendingEvents,
        *,
        actor_id: str | None = None,
    ) -> None:
        """Move ``run`` onto ``next_stage``; ``None`` completes the run."""

        if next_stage is None:
            self._complete(run, events)
            return

        run.current_stage = next_stage
        ticket = self._ticket(run)
        if ticket is not None:
            ticket.current_stage_id = next_stage.id
        self.record_history(run, next_stage, "entered", actor_id=actor_id)
        events.add(
            "workflow.stage_entered",
            {
                "run_id": run.id,
                "stage_id": next_stage.id,
                "stage_name": next_stage.name,
                "stage_type": next_stage.stage_type,
                "ticket_id": run.ticket_id,
            },
        )

        if next_stage.stage_type == "terminal":
            self._complete(run, events)

    def _complete(self, run: WorkflowRun, events: PendingEvents) -> None:
        run.status = "completed"
        run.completed_at = utcnow()
        ticket = self._ticket(run)
        if ticket is not None:
            ticket.status = TICKET_APPROVED_STATUS
        events.add("workflow.run_completed", {"run_id": run.id, "ticket_id": run.ticket_id})
        logger.info("Workflow run %s completed", run.id)

    @staticmethod
    def _ticket(run: WorkflowRun) -> Ticket | None:
        if not run.ticket_id:
            return None
        return db.session.get(Ticket, run.ticket_id)

    # -- operations --------------------------------------------------------

    def start_run(
        self,
        workflow_id: str,
        ticket_id: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> WorkflowRun:
        """Start a run at the first stage and drain any leading automatic stages."""

        if context is None:
            context = {}
        if not isinstance(context, Mapping):
            raise ValidationError("context must be an object")

        definition = db.session.get(WorkflowDefinition, workflow_id)
        if definition is None:
            raise NotFoundError("Workflow not found")
        first_stage = (
            WorkflowStage.query.filter_by(workflow_id=definition.id)
            .order_by(WorkflowStage.stage_order.asc())
            .first()
        )
        if first_stage is None:
            raise ValidationError("Workflow has no stages")

        with transaction() as events:
            run = WorkflowRun(
                id=str(uuid.uuid4()),
                workflow=definition,
                ticket_id=ticket_id,
                current_stage=first_stage,
                status="active",
                context=dict(context),
            )
            db.session.add(run)
            db.session.flush()

            self.record_history(run, first_stage, "entered")
            ticket = self._ticket(run)
            if ticket is not None:
                ticket.workflow_run_id = run.id
                ticket.current_stage_id = first_stage.id
            events.add(
                "workflow.run_started",
                {
                    "run_id": run.id,
                    "workflow_id": definition.id,
                    "ticket_id": ticket_id,
                    "stage": first_stage.name,
                },
            )
            drain_auto_stages(self, run, events)

        logger.info("Started workflow run %s on workflow %s", run.id, definition.id)
        return run

    def perform_action(
        self,
        run_id: str,
        action: str,
        actor_id: str | None,
        roles: Iterable[str],
        *,
        comment: str | None = None,
        target_stage_id: str | None = None,
    ) -> WorkflowRun:
        """Apply a human action to the run's current stage and advance it."""

        if not action:
            raise ValidationError("action is required")

        with transaction() as events:
            run = self.lock_run(run_id)
            if not run.is_active:
                raise InvalidStateError("Run is not active")
            stage = run.current_stage
            if stage is None:
                raise InvalidStateError("Run has no current stage")

            allowed = ALLOWED_ACTIONS.get(stage.stage_type)
            if allowed is None:
                raise InvalidActionError(
                    f"Stage type '{stage.stage_type}' does not support actions"
                )
            if action not in allowed:
                raise InvalidActionError(
                    f"Action '{action}' not valid for stage type '{stage.stage_type}'"
                )

            required_role = config_for(stage).required_role
            if not has_role(roles, required_role, self.super_role):
                raise InsufficientRoleError(f"Requires role '{required_role}'")

            self.record_history(run, stage, action, actor_id=actor_id, comment=comment or None)
            event_type = _ACTION_EVENTS.get(action)
            if event_type is not None:
                events.add(
                    event_type,
                    {
                        "run_id": run.id,
                        "stage_name": stage.name,
                        "actor_id": actor_id,
                        "ticket_id": run.ticket_id,
                    },
                )

            if target_stage_id and action in _RETURN_ACTIONS:
                next_stage = db.session.get(WorkflowStage, target_stage_id)
                if next_stage is None or next_stage.workflow_id != run.workflow_id:
                    raise InvalidTargetError("Target stage not found in this workflow")
            else:
                trigger = ACTION_TRIGGERS[action]
                next_stage = self.resolve_next_stage(run.workflow_id, stage, trigger)

            self.advance_to_stage(run, next_stage, events, actor_id=actor_id)
            drain_auto_stages(self, run, events)

            returned_to_action = next_stage is not None and next_stage.stage_type == "action"
            if action in _RETURN_ACTIONS and returned_to_action:
                ticket = self._ticket(run)
                if ticket is not None:
                    ticket.status = TICKET_DRAFT_STATUS

        logger.info("Run %s: %s by %s on stage %r", run_id, action, actor_id, stage.name)
        return run

    def abort_run(self, run_id: str, actor_id: str | None) -> WorkflowRun:
        with transaction() as events:
            run = self.lock_run(run_id)
            if not run.is_active:
                raise InvalidStateError("Run is not active")
            run.status = "aborted"
            run.completed_at = utcnow()
            self.record_history(run, run.current_stage, "aborted", actor_id=actor_id)
            events.add("workflow.run_aborted", {"run_id": run.id, "actor_id": actor_id})

        logger.info("Workflow run %s aborted by %s", run_id, actor_id)
        return run

    def update_context(self, run_id: str, patch: Any) -> WorkflowRun:
        """Shallow merge ``patch`` into the context of an active run."""

        if not isinstance(patch, Mapping):
            raise ValidationError("context must be an object")

        with transaction():
            run = self.lock_run(run_id)
            if not run.is_active:
                raise InvalidStateError("Run is not active")
            run.context = {**(run.context or {}), **patch}
        return run


def get_engine() -> RunEngine:
    """Return an engine configured from the current application."""

    config = current_app.config
    return RunEngine(
        super_role=config.get("SUPER_ROLE", "admin"),
        max_auto_hops=int(config.get("MAX_AUTO_STAGE_HOPS", 100)),
    )
