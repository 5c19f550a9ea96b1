"""Health check endpoint."""

from flask import Blueprint, current_app, jsonify

from ..events.bus import get_publisher

bp = Blueprint("health", __name__)


@bp.get("/health")
def health() -> tuple[dict[str, str], int]:
    """Return the service health status."""
    return (
        jsonify(
            {
                "status": "ok",
                "service": current_app.config.get("SERVICE_NAME", "workflow-engine"),
                "event_bus": "connected" if get_publisher().client is not None else "disabled",
            }
        ),
        200,
    )
