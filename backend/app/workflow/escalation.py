"""Background sweep escalating overdue approvals and expiring timer stages."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from ..events.bus import PendingEvents
from ..extensions import db
from ..models.run import WorkflowRun, WorkflowRunHistory
from ..models.workflow import WorkflowStage
from ..utils.clock import utcnow
from .auto_stages import drain_auto_stages
from .engine import RunEngine, get_engine
from .errors import WorkflowError
from .stage_config import ApprovalConfig, TimerConfig, config_for
from .transaction import transaction

logger = logging.getLogger(__name__)

ESCALATION_TRIGGERS = ("on_escalate", "on_timeout", "on_approve")
ESCALATED_COMMENT = "Auto-escalated due to timeout"
TIMER_EXPIRED_COMMENT = "Timer elapsed"


def _latest_entry(
    run_id: str, stage_id: str, action: str, since: datetime | None = None
) -> datetime | None:
    query = db.session.query(db.func.max(WorkflowRunHistory.occurred_at)).filter(
        WorkflowRunHistory.run_id == run_id,
        WorkflowRunHistory.stage_id == stage_id,
        WorkflowRunHistory.action == action,
    )
    if since is not None:
        query = query.filter(WorkflowRunHistory.occurred_at >= since)
    return query.scalar()


def escalation_anchor(run_id: str, stage_id: str) -> datetime | None:
    """Start of the current timeout window of a run parked on ``stage_id``.

    The window opens when the stage was last entered and reopens with every
    escalation recorded after that.
    """

    entered_at = _latest_entry(run_id, stage_id, "entered")
    if entered_at is None:
        return None
    escalated_at = _latest_entry(run_id, stage_id, "escalated", since=entered_at)
    return escalated_at or entered_at


def _escalate(
    engine: RunEngine,
    run: WorkflowRun,
    config: ApprovalConfig,
    now: datetime,
    events: PendingEvents,
) -> bool:
    stage = run.current_stage
    anchor = escalation_anchor(run.id, stage.id)
    if anchor is None or now < anchor + timedelta(minutes=config.escalation_timeout_minutes):
        return False

    logger.info("Escalating run %s on overdue stage %r", run.id, stage.name)
    engine.record_history(run, stage, "escalated", comment=ESCALATED_COMMENT, occurred_at=now)
    events.add("workflow.escalated", {"run_id": run.id, "stage_id": stage.id})
    for trigger in ESCALATION_TRIGGERS:
        next_stage = engine.resolve_next_stage(run.workflow_id, stage, trigger)
        if next_stage is not None:
            engine.advance_to_stage(run, next_stage, events)
            drain_auto_stages(engine, run, events)
            break
    return True


def _expire_timer(
    engine: RunEngine,
    run: WorkflowRun,
    config: TimerConfig,
    now: datetime,
    events: PendingEvents,
) -> bool:
    stage = run.current_stage
    entered_at = _latest_entry(run.id, stage.id, "entered")
    if entered_at is None or now < entered_at + timedelta(minutes=config.duration_minutes):
        return False

    logger.info("Timer stage %r of run %s elapsed", stage.name, run.id)
    engine.record_history(run, stage, "timeout", comment=TIMER_EXPIRED_COMMENT, occurred_at=now)
    next_stage = engine.resolve_next_stage(run.workflow_id, stage, "on_timeout")
    engine.advance_to_stage(run, next_stage, events)
    drain_auto_stages(engine, run, events)
    return True


def sweep_run(engine: RunEngine, run_id: str, now: datetime) -> bool:
    """Escalate or expire one run in its own transaction; return whether it changed."""

    with transaction() as events:
        run = engine.lock_run(run_id)
        stage = run.current_stage
        if not run.is_active or stage is None:
            return False
        config = config_for(stage)
        if isinstance(config, ApprovalConfig) and config.escalation_timeout_minutes:
            return _escalate(engine, run, config, now, events)
        if isinstance(config, TimerConfig) and config.duration_minutes:
            return _expire_timer(engine, run, config, now, events)
        return False


def check_escalations(engine: RunEngine | None = None, now: datetime | None = None) -> int:
    """Sweep all active runs parked on approval or timer stages.

    Returns the number of runs escalated or expired. A failure on one run is
    logged and the sweep moves on to the next.
    """

    engine = engine or get_engine()
    now = now or utcnow()
    run_ids = [
        run_id
        for (run_id,) in db.session.query(WorkflowRun.id)
        .join(WorkflowStage, WorkflowRun.current_stage_id == WorkflowStage.id)
        .filter(
            WorkflowRun.status == "active",
            WorkflowStage.stage_type.in_(("approval", "timer")),
        )
        .all()
    ]

    handled = 0
    for run_id in run_ids:
        try:
            if sweep_run(engine, run_id, now):
                handled += 1
        except WorkflowError as exc:
            logger.warning("Skipping run %s during escalation sweep: %s", run_id, exc.message)
        except SQLAlchemyError:
            logger.exception("Escalation sweep failed for run %s", run_id)
    return handled


class EscalationScheduler:
    """Daemon thread running :func:`check_escalations` on a fixed interval."""

    def __init__(self, app: Flask, interval: float) -> None:
        self.app = app
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name="escalation-scheduler", daemon=True
        )

    def start(self) -> None:
        if self._thread.is_alive():
            return
        self._thread.start()
        self.app.logger.info("Escalation scheduler running every %ss", self.interval)

    def stop(self) -> None:
        self._stop.set()

    def run_once(self) -> int:
        with self.app.app_context():
            try:
                return check_escalations()
            except SQLAlchemyError:
                self.app.logger.exception("Escalation sweep failed")
                db.session.rollback()
                return 0
            finally:
                db.session.remove()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()


_scheduler_instance: EscalationScheduler | None = None
_scheduler_lock = threading.Lock()


def ensure_scheduler_started(app: Flask) -> EscalationScheduler:
    """Ensure the escalation scheduler is running for the given Flask app."""
    global _scheduler_instance
    with _scheduler_lock:
        if _scheduler_instance is None:
            interval = float(app.config.get("ESCALATION_INTERVAL_SECONDS", 30))
            _scheduler_instance = EscalationScheduler(app, interval)
            _scheduler_instance.start()
    return _scheduler_instance
