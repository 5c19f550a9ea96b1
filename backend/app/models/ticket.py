"""Ticket and operation rows owned by the ticket service.

Only the columns the workflow engine reads or stamps are mapped here.
"""

from __future__ import annotations

import uuid

from ..extensions import db

TICKET_DRAFT_STATUS = "draft"
TICKET_SUBMITTED_STATUS = "submitted"
TICKET_APPROVED_STATUS = "approved"


class Operation(db.Model):
    __tablename__ = "operations"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(256), nullable=False, default="")
    risk_level = db.Column(db.SmallInteger, nullable=False, default=3)
    workflow_id = db.Column(db.String(36), db.ForeignKey("workflows.id"), nullable=True)


class Ticket(db.Model):
    __tablename__ = "tickets"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    ticket_type = db.Column(db.String(24), nullable=False, default="general")
    priority = db.Column(db.String(12), nullable=False, default="medium")
    status = db.Column(db.String(16), nullable=False, default=TICKET_DRAFT_STATUS)
    operation_id = db.Column(db.String(36), db.ForeignKey("operations.id"), nullable=True)
    workflow_run_id = db.Column(db.String(36), db.ForeignKey("workflow_runs.id"), nullable=True)
    current_stage_id = db.Column(
        db.String(36), db.ForeignKey("workflow_stages.id", ondelete="SET NULL"), nullable=True
    )

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<Ticket {self.id} {self.status}>"
