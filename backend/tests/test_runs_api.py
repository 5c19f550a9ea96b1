"""Tests for the workflow run REST API."""

from __future__ import annotations

import pytest
from conftest import edge, stage


@pytest.fixture()
def workflow(make_workflow):
    return make_workflow(
        [
            stage("Draft", 1, "action", required_role="planner"),
            stage("Review", 2, "approval", required_role="supervisor"),
            stage("Rework", 3, "action"),
            stage("Done", 4, "terminal"),
        ],
        [edge(2, 4, "on_approve"), edge(2, 3, "on_reject")],
    )


def _start(client, workflow_id, **payload):
    response = client.post("/api/v1/workflow-runs", json={"workflow_id": workflow_id, **payload})
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def _act(client, run_id, action, user="user-1", roles="", **payload):
    return client.post(
        f"/api/v1/workflow-runs/{run_id}/action",
        json={"action": action, **payload},
        headers={"X-User-ID": user, "X-User-Roles": roles},
    )


def test_start_run_returns_run_with_current_stage(client, workflow):
    run = _start(client, workflow.id, ticket_id="ticket-9", context={"risk_level": 2})

    assert run["status"] == "active"
    assert run["workflow_id"] == workflow.id
    assert run["workflow_name"] == "Test Workflow"
    assert run["ticket_id"] == "ticket-9"
    assert run["context"] == {"risk_level": 2}
    assert run["current_stage"]["name"] == "Draft"
    assert run["current_stage_id"] == run["current_stage"]["id"]
    assert run["completed_at"] is None


def test_start_run_validation(client, make_workflow):
    response = client.post("/api/v1/workflow-runs", json={})
    assert response.status_code == 400
    assert response.get_json()["error"]["message"] == "workflow_id is required"

    response = client.post("/api/v1/workflow-runs", json={"workflow_id": "missing"})
    assert response.status_code == 404

    empty = make_workflow([], name="Empty")
    response = client.post("/api/v1/workflow-runs", json={"workflow_id": empty.id})
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "VALIDATION_ERROR"

    response = client.post(
        "/api/v1/workflow-runs", json={"workflow_id": empty.id, "ticket_id": 12}
    )
    assert response.status_code == 400


def test_full_approval_flow_over_http(client, workflow):
    run = _start(client, workflow.id)

    response = _act(client, run["id"], "complete", roles="planner")
    assert response.status_code == 200
    assert response.get_json()["current_stage"]["name"] == "Review"

    response = _act(client, run["id"], "approve", roles="planner")
    assert response.status_code == 403
    assert response.get_json()["error"] == {
        "code": "INSUFFICIENT_ROLE",
        "message": "Requires role 'supervisor'",
    }

    response = _act(client, run["id"], "approve", user="sup", roles="viewer, supervisor")
    assert response.status_code == 200
    finished = response.get_json()
    assert finished["status"] == "completed"
    assert finished["completed_at"] is not None

    response = _act(client, run["id"], "approve", roles="admin")
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "INVALID_STATE"


def test_action_errors(client, workflow):
    run = _start(client, workflow.id)

    response = _act(client, run["id"], "approve", roles="admin")
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "INVALID_ACTION"

    response = client.post(
        f"/api/v1/workflow-runs/{run['id']}/action", json={}, headers={"X-User-ID": "user-1"}
    )
    assert response.status_code == 400
    assert response.get_json()["error"]["message"] == "action is required"

    assert _act(client, "missing", "complete").status_code == 404


def test_reject_to_explicit_target(client, workflow, stage_by_name):
    run = _start(client, workflow.id)
    _act(client, run["id"], "complete", roles="planner")

    draft = stage_by_name(workflow, "Draft")
    response = _act(
        client,
        run["id"],
        "reject",
        roles="supervisor",
        comment="start over",
        target_stage_id=draft.id,
    )
    assert response.status_code == 200
    assert response.get_json()["current_stage"]["name"] == "Draft"

    response = _act(client, run["id"], "complete", roles="planner")
    response = _act(
        client, run["id"], "kickback", roles="supervisor", target_stage_id="not-a-stage"
    )
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "INVALID_TARGET"


def test_get_run_includes_history(client, workflow):
    run = _start(client, workflow.id)
    _act(client, run["id"], "complete", user="planner-7", roles="planner", comment="drafted")

    response = client.get(f"/api/v1/workflow-runs/{run['id']}")

    assert response.status_code == 200
    body = response.get_json()
    actions = [(entry["action"], entry["stage_name"]) for entry in body["history"]]
    assert actions == [("entered", "Review"), ("complete", "Draft"), ("entered", "Draft")]
    complete = body["history"][1]
    assert complete["actor_id"] == "planner-7"
    assert complete["comment"] == "drafted"
    assert complete["metadata"] == {}

    history = client.get(f"/api/v1/workflow-runs/{run['id']}/history").get_json()
    assert history["data"] == body["history"]

    assert client.get("/api/v1/workflow-runs/missing").status_code == 404
    assert client.get("/api/v1/workflow-runs/missing/history").status_code == 404


def test_list_runs_with_filters(client, workflow):
    first = _start(client, workflow.id, ticket_id="ticket-1")
    _start(client, workflow.id, ticket_id="ticket-2")
    client.post(f"/api/v1/workflow-runs/{first['id']}/abort", headers={"X-User-ID": "boss"})

    body = client.get(f"/api/v1/workflow-runs?workflow_id={workflow.id}").get_json()
    assert body["pagination"]["total"] == 2

    body = client.get("/api/v1/workflow-runs?status=aborted").get_json()
    assert [item["id"] for item in body["data"]] == [first["id"]]

    body = client.get("/api/v1/workflow-runs?ticket_id=ticket-2&limit=1").get_json()
    assert body["pagination"] == {"page": 1, "limit": 1, "total": 1}
    assert body["data"][0]["ticket_id"] == "ticket-2"

    response = client.get("/api/v1/workflow-runs?status=paused")
    assert response.status_code == 400


def test_abort_run(client, workflow):
    run = _start(client, workflow.id)

    response = client.post(
        f"/api/v1/workflow-runs/{run['id']}/abort", headers={"X-User-ID": "boss"}
    )

    assert response.status_code == 200
    assert response.get_json()["status"] == "aborted"
    history = client.get(f"/api/v1/workflow-runs/{run['id']}/history").get_json()["data"]
    assert history[0]["action"] == "aborted"
    assert history[0]["actor_id"] == "boss"

    response = client.post(
        f"/api/v1/workflow-runs/{run['id']}/abort", headers={"X-User-ID": "boss"}
    )
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "INVALID_STATE"


@pytest.mark.parametrize(
    ("path", "payload"),
    [("action", {"action": "complete"}), ("abort", None)],
)
def test_action_and_abort_require_user_header(client, workflow, path, payload):
    run = _start(client, workflow.id)

    response = client.post(
        f"/api/v1/workflow-runs/{run['id']}/{path}",
        json=payload,
        headers={"X-User-Roles": "admin"},
    )

    assert response.status_code == 401
    assert response.get_json() == {
        "error": {"code": "UNAUTHORIZED", "message": "X-User-ID header is required"}
    }
    detail = client.get(f"/api/v1/workflow-runs/{run['id']}").get_json()
    assert detail["status"] == "active"
    assert detail["current_stage"]["name"] == "Draft"
    assert [entry["action"] for entry in detail["history"]] == ["entered"]


def test_patch_context(client, workflow):
    run = _start(client, workflow.id, context={"risk_level": 2, "region": "east"})

    response = client.patch(
        f"/api/v1/workflow-runs/{run['id']}/context", json={"context": {"risk_level": 5}}
    )
    assert response.status_code == 200
    assert response.get_json()["context"] == {"risk_level": 5, "region": "east"}

    response = client.patch(f"/api/v1/workflow-runs/{run['id']}/context", json={})
    assert response.status_code == 400

    response = client.patch(
        f"/api/v1/workflow-runs/{run['id']}/context", json={"context": "flat"}
    )
    assert response.status_code == 400
    assert response.get_json()["error"]["message"] == "context must be an object"


def test_cycle_is_reported_as_bad_request(client, make_workflow):
    workflow = make_workflow(
        [stage("Ping", 1, "condition", expression="true"), stage("Pong", 2, "notification")],
        [edge(1, 2, "on_condition_true"), edge(2, 1, "on_complete")],
    )

    response = client.post("/api/v1/workflow-runs", json={"workflow_id": workflow.id})

    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == "TRANSITION_CYCLE"
    assert client.get("/api/v1/workflow-runs").get_json()["pagination"]["total"] == 0


def test_action_endpoint_is_rate_limited(app, client, workflow, monkeypatch):
    monkeypatch.setitem(app.config, "RUN_ACTION_RATE_LIMIT", "2 per minute")
    run = _start(client, workflow.id)

    statuses = [
        _act(client, run["id"], "approve", user="rate-limited-user").status_code
        for _ in range(3)
    ]

    assert statuses[:2] == [400, 400]
    assert statuses[2] == 429
    response = _act(client, run["id"], "approve", user="rate-limited-user")
    assert response.get_json()["error"]["code"] == "RATE_LIMITED"
