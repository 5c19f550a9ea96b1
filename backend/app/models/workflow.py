"""Workflow definition models: definitions, stages and transitions."""

from __future__ import annotations

import uuid

from ..extensions import db
from ..utils.clock import utcnow

STAGE_TYPES = ("action", "approval", "condition", "notification", "terminal", "timer")

TRIGGERS = (
    "on_approve",
    "on_reject",
    "on_kickback",
    "on_complete",
    "on_timeout",
    "on_escalate",
    "on_condition_true",
    "on_condition_false",
)


def _new_id() -> str:
    return str(uuid.uuid4())


class WorkflowDefinition(db.Model):
    """A named, versioned stage graph used as the template for runs."""

    __tablename__ = "workflows"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    version = db.Column(db.Integer, nullable=False, default=1)
    is_template = db.Column(db.Boolean, nullable=False, default=False)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    stages = db.relationship(
        "WorkflowStage",
        back_populates="workflow",
        order_by="WorkflowStage.stage_order",
        cascade="all, delete-orphan",
    )
    transitions = db.relationship(
        "WorkflowTransition",
        back_populates="workflow",
        order_by="WorkflowTransition.created_at",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<WorkflowDefinition {self.name!r} v{self.version}>"


class WorkflowStage(db.Model):
    """A node of the workflow graph."""

    __tablename__ = "workflow_stages"
    __table_args__ = (db.UniqueConstraint("workflow_id", "stage_order"),)

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    workflow_id = db.Column(
        db.String(36), db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(128), nullable=False)
    stage_order = db.Column(db.Integer, nullable=False)
    stage_type = db.Column(db.Enum(*STAGE_TYPES, name="workflow_stage_type"), nullable=False)
    config = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    workflow = db.relationship("WorkflowDefinition", back_populates="stages")

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<WorkflowStage {self.name!r} #{self.stage_order} ({self.stage_type})>"


class WorkflowTransition(db.Model):
    """A directed edge between two stages, selected by trigger name."""

    __tablename__ = "workflow_transitions"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    workflow_id = db.Column(
        db.String(36), db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    from_stage_id = db.Column(
        db.String(36), db.ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False
    )
    to_stage_id = db.Column(
        db.String(36), db.ForeignKey("workflow_stages.id", ondelete="CASCADE"), nullable=False
    )
    trigger = db.Column(db.Enum(*TRIGGERS, name="workflow_trigger"), nullable=False)
    # Stored for the editor; the engine does not evaluate it.
    condition_expr = db.Column(db.Text, nullable=True)
    label = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    workflow = db.relationship("WorkflowDefinition", back_populates="transitions")
    from_stage = db.relationship("WorkflowStage", foreign_keys=[from_stage_id])
    to_stage = db.relationship("WorkflowStage", foreign_keys=[to_stage_id])

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<WorkflowTransition {self.from_stage_id}-{self.trigger}->{self.to_stage_id}>"
