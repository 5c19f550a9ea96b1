"""Database models for the workflow engine backend."""

from .run import WorkflowRun, WorkflowRunHistory
from .ticket import Operation, Ticket
from .workflow import WorkflowDefinition, WorkflowStage, WorkflowTransition

__all__ = [
    "WorkflowDefinition",
    "WorkflowStage",
    "WorkflowTransition",
    "WorkflowRun",
    "WorkflowRunHistory",
    "Ticket",
    "Operation",
]
