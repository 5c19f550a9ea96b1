"""Seed the database with the default approval workflow."""
from __future__ import annotations

import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app import Config, create_app
from backend.app.workflow.defaults import ensure_default_workflow


class SeedConfig(Config):
    ENABLE_TICKET_SUBSCRIBER = False
    ENABLE_ESCALATION_SCHEDULER = False


def main() -> None:
    app = create_app(SeedConfig)
    with app.app_context():
        workflow, created = ensure_default_workflow()
        print(
            "Seed completed",
            f"workflow={workflow.name!r}",
            f"id={workflow.id}",
            f"created={int(created)}",
        )


if __name__ == "__main__":
    main()
