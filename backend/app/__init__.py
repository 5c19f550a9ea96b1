"""Application factory for the workflow engine backend."""
from __future__ import annotations

import time

from flask import Flask
from sqlalchemy.exc import OperationalError

from .config import Config
from .extensions import cors, db, limiter

API_PREFIX = "/api/v1"


def create_app(config_class: type[Config] = Config) -> Flask:
    """Create and configure the Flask application instance."""
    app = Flask(__name__)
    app.config.from_object(config_class)
    # Module loggers live below the application logger (``backend.app``).
    app.logger.setLevel(str(app.config.get("LOG_LEVEL", "INFO")).upper())

    db.init_app(app)

    if cors is not None:
        allowed_origins = [
            origin.strip()
            for origin in (app.config.get("CORS_ALLOWED_ORIGINS") or "").split(",")
            if origin.strip()
        ]
        cors.init_app(
            app,
            resources={r"/api/*": {"origins": allowed_origins}},
            allow_headers=["Content-Type", "Authorization", "X-User-ID", "X-User-Roles"],
        )

    limiter.init_app(app)

    from .api.common import register_error_handlers
    from .api.health import bp as health_bp
    from .api.runs import bp as runs_bp
    from .api.workflows import bp as workflows_bp

    app.register_blueprint(health_bp, url_prefix=API_PREFIX)
    app.register_blueprint(workflows_bp, url_prefix=API_PREFIX)
    app.register_blueprint(runs_bp, url_prefix=API_PREFIX)
    register_error_handlers(app)

    with app.app_context():
        # Import models to ensure they are registered with SQLAlchemy before creating tables.
        from .models import run, ticket, workflow  # noqa: F401

        _initialize_database(app)

    from .events.bus import init_event_bus

    publisher = init_event_bus(app)

    if app.config.get("ENABLE_TICKET_SUBSCRIBER", True) and publisher.client is not None:
        from .events.tickets import ensure_subscriber_started

        ensure_subscriber_started(app, publisher.client)

    if app.config.get("ENABLE_ESCALATION_SCHEDULER", True):
        from .workflow.escalation import ensure_scheduler_started

        ensure_scheduler_started(app)

    return app


def _initialize_database(app: Flask) -> None:
    """Initialize the database with retry logic to handle delayed availability."""

    max_retries = int(app.config.get("DB_INIT_MAX_RETRIES", 30))
    retry_delay = float(app.config.get("DB_INIT_RETRY_DELAY", 2))

    for attempt in range(1, max_retries + 1):
        try:
            db.create_all()
            return
        except OperationalError as exc:
            if attempt >= max_retries:
                app.logger.exception("Database initialization failed after %s attempts.", attempt)
                raise

            app.logger.warning(
                "Database initialization attempt %s/%s failed: %s", attempt, max_retries, exc
            )
            time.sleep(retry_delay)


__all__ = ["Config", "create_app"]
