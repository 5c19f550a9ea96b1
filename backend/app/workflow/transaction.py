"""Unit of work shared by the definition store and the run engine."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm.exc import StaleDataError

from ..events.bus import PendingEvents, get_publisher
from ..extensions import db
from .errors import RunConflictError


@contextmanager
def transaction() -> Iterator[PendingEvents]:
    """Run the block in one database transaction.

    Yields the buffer collecting the block's events. They are published only
    after the commit succeeded; a rolled back block publishes nothing.
    """

    events = PendingEvents()
    try:
        yield events
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        raise RunConflictError("workflow run was modified concurrently, retry the request") from exc
    except Exception:
        db.session.rollback()
        raise
    events.flush(get_publisher())
