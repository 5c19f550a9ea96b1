"""Tests for the workflow definition REST API."""

from __future__ import annotations

from conftest import db, edge, stage

HEADERS = {"X-User-ID": "designer-1", "X-User-Roles": "admin"}


def _payload(name="Approval Chain", **fields):
    payload = {
        "name": name,
        "description": "Two step review",
        "stages": [
            stage("Draft", 1, "action", required_role="planner"),
            stage("Review", 2, "approval", required_role="supervisor"),
            stage("Done", 3, "terminal"),
        ],
        "transitions": [
            edge(2, 1, "on_reject", label="Back to draft"),
            edge(2, 3, "on_approve"),
        ],
    }
    payload.update(fields)
    return payload


def _create(client, **fields):
    response = client.post("/api/v1/workflows", json=_payload(**fields), headers=HEADERS)
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def test_create_requires_user_header(client):
    response = client.post("/api/v1/workflows", json=_payload())

    assert response.status_code == 401
    assert response.get_json() == {
        "error": {"code": "UNAUTHORIZED", "message": "X-User-ID header is required"}
    }


def test_create_and_fetch_definition(client, events):
    created = _create(client)

    assert created["name"] == "Approval Chain"
    assert created["version"] == 1
    assert created["created_by"] == "designer-1"
    assert [item["name"] for item in created["stages"]] == ["Draft", "Review", "Done"]
    stage_ids = {item["stage_order"]: item["id"] for item in created["stages"]}
    reject = next(item for item in created["transitions"] if item["trigger"] == "on_reject")
    assert (reject["from_stage_id"], reject["to_stage_id"]) == (stage_ids[2], stage_ids[1])
    assert reject["label"] == "Back to draft"

    detail = client.get(f"/api/v1/workflows/{created['id']}")
    assert detail.status_code == 200
    assert detail.get_json() == created

    assert events.types() == ["workflow.created"]
    assert events.of_type("workflow.created")[0]["id"] == created["id"]


def test_create_rejects_invalid_graph_and_writes_nothing(client):
    from backend.app.models import WorkflowDefinition

    payload = _payload(
        stages=[
            stage("Draft", 1, "action"),
            stage("Draft again", 1, "action"),
            {"name": "", "stage_order": 3, "stage_type": "robot", "config": {}},
        ],
        transitions=[edge(1, 9, "on_complete"), edge(1, 1, "on_whatever")],
    )

    response = client.post("/api/v1/workflows", json=payload, headers=HEADERS)

    assert response.status_code == 400
    error = response.get_json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    details = error["details"]
    assert "stages[1].stage_order 1 is used more than once" in details
    assert any(message.startswith("stages[2].stage_type must be one of") for message in details)
    assert "transitions[0].to_stage_order 9 does not match any stage" in details
    assert any(message.startswith("transitions[1].trigger must be one of") for message in details)
    assert WorkflowDefinition.query.count() == 0


def test_create_reports_stage_config_errors(client):
    payload = _payload(
        stages=[stage("Review", 1, "approval", escalation_timeout_minutes=0)], transitions=[]
    )

    response = client.post("/api/v1/workflows", json=payload, headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()["error"]["details"] == [
        "stages[0].config: escalation_timeout_minutes must be a positive number"
    ]


def test_create_rejects_malformed_json(client):
    response = client.post(
        "/api/v1/workflows",
        data="{not json",
        content_type="application/json",
        headers=HEADERS,
    )
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "INVALID_JSON"

    response = client.post("/api/v1/workflows", json=["a", "list"], headers=HEADERS)
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "INVALID_JSON"


def test_list_is_paginated_and_reports_stage_count(client):
    for index in range(3):
        _create(client, name=f"Workflow {index}", is_template=index == 0)

    response = client.get("/api/v1/workflows?limit=2")
    assert response.status_code == 200
    body = response.get_json()
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3}
    assert len(body["data"]) == 2
    assert all(item["stage_count"] == 3 for item in body["data"])
    assert all("stages" not in item for item in body["data"])

    second_page = client.get("/api/v1/workflows?limit=2&page=2").get_json()
    assert len(second_page["data"]) == 1

    templates = client.get("/api/v1/workflows?is_template=true").get_json()
    assert [item["name"] for item in templates["data"]] == ["Workflow 0"]


def test_invalid_limit_falls_back_to_default(client):
    _create(client)

    body = client.get("/api/v1/workflows?limit=500&page=abc").get_json()
    assert body["pagination"] == {"page": 1, "limit": 20, "total": 1}


def test_only_one_default_workflow(client):
    first = _create(client, name="First", is_default=True)
    second = _create(client, name="Second", is_default=True)

    defaults = client.get("/api/v1/workflows?is_default=true").get_json()["data"]
    assert [item["id"] for item in defaults] == [second["id"]]

    response = client.put(f"/api/v1/workflows/{first['id']}", json={"is_default": True})
    assert response.status_code == 200
    defaults = client.get("/api/v1/workflows?is_default=true").get_json()["data"]
    assert [item["id"] for item in defaults] == [first["id"]]


def test_update_metadata_and_replace_stages(client, events):
    created = _create(client)

    response = client.put(
        f"/api/v1/workflows/{created['id']}",
        json={
            "name": "Renamed",
            "stages": [stage("Only", 1, "action"), stage("End", 2, "terminal")],
            "transitions": [edge(1, 2, "on_complete")],
        },
    )

    assert response.status_code == 200
    updated = response.get_json()
    assert updated["name"] == "Renamed"
    assert updated["description"] == "Two step review"
    assert updated["version"] == 2
    assert [item["name"] for item in updated["stages"]] == ["Only", "End"]
    assert len(updated["transitions"]) == 1
    assert updated["transitions"][0]["to_stage_id"] == updated["stages"][1]["id"]
    assert events.types()[-1] == "workflow.updated"


def test_update_transitions_only_keeps_stages(client):
    created = _create(client)
    stage_ids = [item["id"] for item in created["stages"]]

    response = client.put(
        f"/api/v1/workflows/{created['id']}",
        json={"transitions": [edge(1, 3, "on_complete")]},
    )

    assert response.status_code == 200
    updated = response.get_json()
    assert [item["id"] for item in updated["stages"]] == stage_ids
    assert [item["trigger"] for item in updated["transitions"]] == ["on_complete"]


def test_update_validation_and_missing(client):
    created = _create(client)

    response = client.put(f"/api/v1/workflows/{created['id']}", json={"name": "  "})
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "VALIDATION_ERROR"

    response = client.put("/api/v1/workflows/missing", json={"name": "x"})
    assert response.status_code == 404
    assert response.get_json()["error"] == {"code": "NOT_FOUND", "message": "Workflow not found"}


def test_structural_update_blocked_by_active_runs(client, engine):
    created = _create(client)
    engine.start_run(created["id"])

    response = client.put(
        f"/api/v1/workflows/{created['id']}",
        json={"stages": [stage("Only", 1, "action")]},
    )
    assert response.status_code == 409
    assert response.get_json()["error"]["code"] == "ACTIVE_RUNS"

    response = client.put(f"/api/v1/workflows/{created['id']}", json={"description": "Edited"})
    assert response.status_code == 200
    assert response.get_json()["version"] == 2


def test_replacing_stages_leaves_finished_runs_and_history_untouched(client, engine):
    from backend.app.models import WorkflowRun, WorkflowRunHistory

    created = _create(client)
    run = engine.start_run(created["id"])
    engine.abort_run(run.id, "boss")
    run_id = run.id

    def snapshot():
        db.session.expire_all()
        finished = db.session.get(WorkflowRun, run_id)
        history = (
            WorkflowRunHistory.query.filter_by(run_id=run_id)
            .order_by(WorkflowRunHistory.id)
            .with_entities(WorkflowRunHistory.id, WorkflowRunHistory.stage_id)
            .all()
        )
        return finished.lock_version, finished.current_stage_id, [tuple(row) for row in history]

    before = snapshot()
    assert before[1] == created["stages"][0]["id"]
    assert all(stage_id is not None for _, stage_id in before[2])

    response = client.put(
        f"/api/v1/workflows/{created['id']}",
        json={"stages": [stage("Only", 1, "action")]},
    )

    assert response.status_code == 200
    assert response.get_json()["stages"][0]["id"] != before[1]
    assert snapshot() == before


def test_database_errors_render_error_envelope(client, monkeypatch):
    from sqlalchemy.exc import OperationalError

    from backend.app.workflow import definitions

    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection lost"))

    monkeypatch.setattr(definitions, "list_definitions", broken)

    response = client.get("/api/v1/workflows")

    assert response.status_code == 500
    assert response.get_json() == {
        "error": {"code": "DB_ERROR", "message": "A database error occurred"}
    }


def test_clone_copies_graph_under_new_ids(client, events):
    created = _create(client, is_default=True)

    response = client.post(
        f"/api/v1/workflows/{created['id']}/clone", headers={"X-User-ID": "cloner"}
    )

    assert response.status_code == 201
    clone = response.get_json()
    assert clone["id"] != created["id"]
    assert clone["name"] == "Approval Chain (Copy)"
    assert clone["is_default"] is False
    assert clone["created_by"] == "cloner"
    assert [item["name"] for item in clone["stages"]] == ["Draft", "Review", "Done"]
    clone_stage_ids = {item["id"] for item in clone["stages"]}
    assert not clone_stage_ids & {item["id"] for item in created["stages"]}
    assert len(clone["transitions"]) == 2
    for transition in clone["transitions"]:
        assert transition["from_stage_id"] in clone_stage_ids
        assert transition["to_stage_id"] in clone_stage_ids
    assert events.types()[-1] == "workflow.created"

    assert client.post("/api/v1/workflows/missing/clone").status_code == 404


def test_delete_workflow(client, engine, events):
    from backend.app.models import Ticket, WorkflowRun, WorkflowRunHistory

    created = _create(client)
    ticket = Ticket(status="submitted")
    db.session.add(ticket)
    db.session.commit()
    ticket_id = ticket.id
    run = engine.start_run(created["id"], ticket_id=ticket_id)
    engine.abort_run(run.id, "boss")

    response = client.delete(f"/api/v1/workflows/{created['id']}")

    assert response.status_code == 204
    assert response.data == b""
    assert client.get(f"/api/v1/workflows/{created['id']}").status_code == 404
    assert WorkflowRun.query.count() == 0
    assert WorkflowRunHistory.query.count() == 0
    assert db.session.get(Ticket, ticket_id).workflow_run_id is None
    assert events.of_type("workflow.deleted") == [{"workflow_id": created["id"]}]

    assert client.delete(f"/api/v1/workflows/{created['id']}").status_code == 404


def test_delete_blocked_by_active_runs(client, engine):
    created = _create(client)
    engine.start_run(created["id"])

    response = client.delete(f"/api/v1/workflows/{created['id']}")

    assert response.status_code == 409
    assert response.get_json()["error"]["code"] == "ACTIVE_RUNS"
