"""Tests for the HTTP API."""

import pytest
from conftest import make_config, welcome_steps
from fastapi.testclient import TestClient

from convoflow.actions.gateway import RecordingGateway
from convoflow.app import AutomationRuntime
from convoflow.core.config import ApiServerConfig


@pytest.fixture
def client(runtime):
    return TestClient(runtime.api.app)


@pytest.fixture
def created(client):
    response = client.post(
        "/automations",
        json={"id": "welcome", "name": "Welcome", "status": "active", "steps": welcome_steps()},
    )
    assert response.status_code == 201
    return response.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_create_returns_camel_case_automation(created):
    assert created["id"] == "welcome"
    assert created["status"] == "active"
    assert created["currentSnapshotId"]
    assert created["executionCount"] == 0
    assert created["steps"][0]["isStart"] is True
    assert created["steps"][0]["nextStepId"] == "ask_name"


def test_create_rejects_invalid_graph(client):
    steps = welcome_steps()
    steps[-1]["nextStepId"] = "greet"

    response = client.post("/automations", json={"name": "Loop", "steps": steps})

    assert response.status_code == 422
    body = response.json()
    assert body["issues"][0]["stepId"] == "welcome_back"
    assert "cycle" in body["detail"]


def test_create_rejects_malformed_body(client):
    response = client.post(
        "/automations", json={"name": "Bad", "steps": [{"id": "a", "type": "teleport"}]}
    )

    assert response.status_code == 422
    assert response.json()["issues"][0]["stepId"] is None


def test_get_list_and_filter(client, created):
    client.post("/automations", json={"id": "draft", "name": "Draft"})

    assert client.get("/automations/welcome").json()["name"] == "Welcome"
    assert sorted(a["id"] for a in client.get("/automations").json()) == ["draft", "welcome"]
    assert [a["id"] for a in client.get("/automations?status=inactive").json()] == ["draft"]
    assert client.get("/automations?status=bogus").status_code == 400


def test_unknown_automation_is_404(client):
    response = client.get("/automations/missing")
    assert response.status_code == 404
    assert response.json() == {"detail": "Automation not found: missing"}


def test_update_and_list_steps(client, created):
    steps = welcome_steps()
    steps[0]["config"]["message"] = "Hey there!"

    response = client.put("/automations/welcome", json={"steps": steps, "description": "v2"})

    assert response.status_code == 200
    assert response.json()["description"] == "v2"
    assert response.json()["currentSnapshotId"] != created["currentSnapshotId"]
    listed = client.get("/automations/welcome/steps").json()
    assert listed[0]["config"]["message"] == "Hey there!"


def test_toggle_and_status(client, created):
    assert client.post("/automations/welcome/toggle").json()["status"] == "inactive"
    paused = client.put("/automations/welcome/status", json={"status": "paused"})
    assert paused.json()["status"] == "paused"
    assert client.put("/automations/welcome/status", json={"status": "nope"}).status_code == 422


def test_test_route_runs_accelerated(client, created):
    response = client.post(
        "/automations/welcome/test", json={"conversationId": "conv-t", "replies": ["Bob"]}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "completed"
    assert body["messages"][-1]["payload"]["text"] == "Welcome back, Bob!"
    assert client.get("/automations/welcome").json()["executionCount"] == 0


def test_events_drive_runs(client, created, gateway):
    started = client.post(
        "/events/conversation-started",
        json={"conversationId": "conv-1", "contactId": "c-1", "channelId": "web"},
    ).json()
    assert len(started["started"]) == 1
    run_id = started["started"][0]

    again = client.post("/events/conversation-started", json={"conversationId": "conv-1"})
    assert again.json()["skipped"] == {"welcome": "already_running"}

    resumed = client.post(
        "/events/message-received",
        json={"conversationId": "conv-1", "text": "Bob", "messageId": "m-1"},
    ).json()
    assert resumed["resumed"] == [run_id]

    detail = client.get(f"/runs/{run_id}").json()
    assert detail["run"]["waitingFor"] == "time_gap"
    assert detail["run"]["variables"]["name"] == "Bob"
    assert detail["run"]["triggerData"] == {"channelId": "web"}
    assert [log["status"] for log in detail["logs"]] == [
        "completed",
        "waiting",
        "resumed",
        "waiting",
    ]
    assert gateway.texts("conv-1") == ["Welcome!", "What's your name?"]


def test_execute_starts_production_run(client, created, gateway):
    response = client.post(
        "/automations/welcome/execute",
        json={"conversationId": "conv-7", "contactId": "c-7", "triggerData": {"source": "crm"}},
    )

    assert response.status_code == 201
    run = response.json()
    assert run["isTest"] is False
    assert run["waitingFor"] == "user_reply"
    assert run["triggerData"] == {"trigger": "manual", "source": "crm"}
    assert gateway.texts("conv-7") == ["Welcome!", "What's your name?"]
    assert client.get("/automations/welcome").json()["executionCount"] == 1

    again = client.post("/automations/welcome/execute", json={"conversationId": "conv-7"})
    assert again.status_code == 409
    missing = client.post("/automations/missing/execute", json={"conversationId": "conv-7"})
    assert missing.status_code == 404


def test_pending_runs_and_conversation_cancel(client, created):
    first = client.post("/events/conversation-started", json={"conversationId": "conv-1"})
    client.post("/events/conversation-started", json={"conversationId": "conv-2"})
    (run_id,) = first.json()["started"]

    pending = client.get("/runs/pending").json()
    assert sorted(run["conversationId"] for run in pending) == ["conv-1", "conv-2"]
    assert [run["id"] for run in client.get("/runs/pending?conversationId=conv-1").json()] == [
        run_id
    ]

    cancelled = client.post("/conversations/conv-1/cancel", json={"reason": "agent_took_over"})

    assert cancelled.json() == {"conversationId": "conv-1", "cancelled": [run_id]}
    detail = client.get(f"/runs/{run_id}").json()
    assert detail["run"]["outcome"] == "cancelled"
    assert detail["run"]["lastError"] == "agent_took_over"
    assert [run["conversationId"] for run in client.get("/runs/pending").json()] == ["conv-2"]
    assert client.post("/conversations/conv-1/cancel").json()["cancelled"] == []


def test_button_id_is_accepted(client, created):
    client.post("/events/conversation-started", json={"conversationId": "conv-1"})

    resumed = client.post(
        "/events/message-received",
        json={"conversationId": "conv-1", "text": "Bob", "buttonId": "unknown"},
    )

    assert resumed.status_code == 200
    assert len(resumed.json()["resumed"]) == 1


def test_scheduler_status(client):
    status = client.get("/scheduler").json()

    assert status["status"] == "disabled"
    assert status["jobs"] == []


def test_run_history(client, created):
    client.post("/events/conversation-started", json={"conversationId": "conv-1"})
    client.post("/automations/welcome/test", json={"conversationId": "conv-t"})

    runs = client.get("/automations/welcome/runs").json()
    production = client.get("/automations/welcome/runs?includeTests=false").json()

    assert len(runs) == 2
    assert [run["conversationId"] for run in production] == ["conv-1"]
    assert client.get("/automations/missing/runs").status_code == 404
    assert client.get("/runs/missing").status_code == 404


def test_delete(client, created):
    client.post("/events/conversation-started", json={"conversationId": "conv-1"})

    response = client.delete("/automations/welcome")

    assert response.json() == {"status": "deleted", "id": "welcome"}
    assert client.get("/automations/welcome").status_code == 404
    assert client.delete("/automations/welcome").status_code == 404


def test_api_key_is_enforced(clock):
    config = make_config(api=ApiServerConfig(enabled=False, api_key="s3cret"))
    rt = AutomationRuntime(config, gateway=RecordingGateway(), clock=clock)
    client = TestClient(rt.api.app)

    assert client.get("/automations").status_code == 401
    assert client.get("/automations", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/automations", headers={"X-API-Key": "s3cret"}).status_code == 200
    assert client.get("/healthz").status_code == 200
    rt.db.dispose()
