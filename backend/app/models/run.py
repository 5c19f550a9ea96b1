"""Workflow run and run history models."""

from __future__ import annotations

import uuid

from ..extensions import db
from ..utils.clock import utcnow

RUN_STATUSES = ("active", "completed", "aborted")

HISTORY_ACTIONS = (
    "entered",
    "approve",
    "reject",
    "kickback",
    "complete",
    "timeout",
    "auto_approved",
    "escalated",
    "aborted",
)


class WorkflowRun(db.Model):
    """One live execution of a workflow definition."""

    __tablename__ = "workflow_runs"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = db.Column(db.String(36), db.ForeignKey("workflows.id"), nullable=False)
    # tickets.workflow_run_id already points here; kept without a foreign key.
    ticket_id = db.Column(db.String(36), nullable=True, index=True)
    # Stage pointers carry no foreign key so finished runs and history survive
    # a stage replacement unchanged.
    current_stage_id = db.Column(db.String(36), nullable=True)
    status = db.Column(
        db.Enum(*RUN_STATUSES, name="workflow_run_status"), nullable=False, default="active"
    )
    context = db.Column(db.JSON, nullable=False, default=dict)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    lock_version = db.Column(db.Integer, nullable=False)

    workflow = db.relationship("WorkflowDefinition")
    current_stage = db.relationship(
        "WorkflowStage",
        primaryjoin="foreign(WorkflowRun.current_stage_id) == WorkflowStage.id",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<WorkflowRun {self.id} {self.status}>"


class WorkflowRunHistory(db.Model):
    """Append-only record of stage entries and actions taken on a run."""

    __tablename__ = "workflow_run_history"
    __table_args__ = (db.Index("idx_run_history_run", "run_id", "occurred_at"),)

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(
        db.String(36), db.ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=False
    )
    stage_id = db.Column(db.String(36), nullable=True)
    stage_name = db.Column(db.String(128), nullable=False, default="")
    action = db.Column(db.Enum(*HISTORY_ACTIONS, name="workflow_history_action"), nullable=False)
    actor_id = db.Column(db.String(64), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    metadata_ = db.Column("metadata", db.JSON, nullable=False, default=dict)
    occurred_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<WorkflowRunHistory {self.run_id} {self.action}>"
