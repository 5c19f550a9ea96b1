"""Start workflow runs when tickets are submitted.

The ticket service publishes ``ticket.status_changed`` envelopes on the
event bus. A submission of a ticket without a run starts one against the
operation's workflow, or the default workflow when the operation has none.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from typing import Any

import redis
from flask import Flask

from ..extensions import db
from ..models.run import WorkflowRun
from ..models.ticket import TICKET_SUBMITTED_STATUS, Operation, Ticket
from ..workflow.definitions import get_default_definition
from ..workflow.engine import RunEngine, get_engine
from ..workflow.errors import WorkflowError

logger = logging.getLogger(__name__)


def _decode(message: Any) -> Mapping[str, Any] | None:
    if isinstance(message, (bytes, bytearray)):
        message = message.decode("utf-8", errors="replace")
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except ValueError:
            logger.warning("Ignoring ticket event that is not valid JSON")
            return None
    if not isinstance(message, Mapping) or not isinstance(message.get("data"), Mapping):
        logger.warning("Ignoring ticket event without a data object")
        return None
    return message["data"]


def _resolve_workflow_id(operation: Operation | None) -> str | None:
    if operation is not None and operation.workflow_id:
        return operation.workflow_id
    default = get_default_definition()
    return default.id if default is not None else None


def handle_ticket_status_changed(
    message: Any, engine: RunEngine | None = None
) -> WorkflowRun | None:
    """Handle one ``ticket.status_changed`` envelope; return the run started, if any."""

    data = _decode(message)
    if data is None or data.get("to") != TICKET_SUBMITTED_STATUS:
        return None

    ticket_id = data.get("ticket_id") or data.get("resource_id")
    if not isinstance(ticket_id, str) or not ticket_id:
        logger.warning("Ignoring ticket submission without a ticket id")
        return None

    ticket = db.session.get(Ticket, ticket_id)
    if ticket is not None and ticket.workflow_run_id:
        return None
    if WorkflowRun.query.filter_by(ticket_id=ticket_id, status="active").first() is not None:
        return None

    operation_id = data.get("operation_id") or (ticket.operation_id if ticket else None)
    operation = db.session.get(Operation, operation_id) if operation_id else None
    workflow_id = _resolve_workflow_id(operation)
    if workflow_id is None:
        logger.info("No workflow applies to submitted ticket %s", ticket_id)
        return None

    context = {
        "ticket_id": ticket_id,
        "ticket_type": ticket.ticket_type if ticket is not None else "general",
        "priority": ticket.priority if ticket is not None else "medium",
        "operation_id": operation_id or "",
        "risk_level": operation.risk_level if operation is not None else 0,
    }
    try:
        run = (engine or get_engine()).start_run(workflow_id, ticket_id, context)
    except WorkflowError as exc:
        logger.warning("Could not start workflow run for ticket %s: %s", ticket_id, exc.message)
        return None

    logger.info(
        "Auto-started workflow run %s for ticket %s on workflow %s", run.id, ticket_id, workflow_id
    )
    return run


class TicketEventSubscriber:
    """Listens on the ticket channel in a daemon thread."""

    def __init__(self, app: Flask, client: redis.Redis, channel: str) -> None:
        self.app = app
        self.channel = channel
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name="ticket-event-subscriber", daemon=True
        )

    def start(self) -> None:
        if self._thread.is_alive():
            return
        self._pubsub.subscribe(self.channel)
        self._thread.start()
        self.app.logger.info("Subscribed to %s", self.channel)

    def stop(self) -> None:
        self._stop.set()

    def _dispatch(self, payload: Any) -> None:
        with self.app.app_context():
            try:
                handle_ticket_status_changed(payload)
            except Exception:  # pragma: no cover - keep the listener alive
                self.app.logger.exception("Failed to handle ticket event")
                db.session.rollback()
            finally:
                db.session.remove()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                message = self._pubsub.get_message(timeout=1.0)
            except redis.RedisError as exc:
                self.app.logger.warning("Ticket event subscription error: %s", exc)
                self._stop.wait(5)
                continue
            if message and message.get("type") == "message":
                self._dispatch(message.get("data"))
        self._pubsub.close()


_subscriber_instance: TicketEventSubscriber | None = None
_subscriber_lock = threading.Lock()


def ensure_subscriber_started(app: Flask, client: redis.Redis) -> TicketEventSubscriber:
    """Ensure the ticket event subscriber is running for the given Flask app."""
    global _subscriber_instance
    with _subscriber_lock:
        if _subscriber_instance is None:
            channel = app.config.get("TICKET_EVENTS_CHANNEL", "ticket.status_changed")
            _subscriber_instance = TicketEventSubscriber(app, client, channel)
            _subscriber_instance.start()
    return _subscriber_instance
