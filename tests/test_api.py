"""HTTP surface: envelopes, identity header, workflow lifecycle and status feed.

Error responses share one envelope:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": ...},
    "request_id": "<uuid>"
}
"""

import json
import uuid
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from agentflow import app as app_module
from agentflow.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from agentflow.api.schemas import CreateWorkflowRequest, Envelope, ErrorBody
from agentflow.service.runtime import get_runtime

PLAN = {
    "steps": [
        {"type": "notification", "description": "Starte die Bewerbung"},
        {
            "type": "tool_call",
            "description": "Bewerbung senden",
            "tool": "send_email",
            "parameters": {"to": "jobs@acme.example", "subject": "Bewerbung", "body": "Hallo"},
        },
    ]
}


class PlanningAgent:
    def __init__(self, plan):
        self.content = "```json\n%s\n```" % json.dumps(plan)

    async def call(self, messages, *, session_id=None, acting_user=None):
        return self.content


class MockMailer:
    def __init__(self):
        self.sent = []

    def send(self, to_email, subject, body, *, attachments=(), reply_to=None):
        self.sent.append(to_email)
        return True


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def session_id():
    return f"session-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def user():
    return get_runtime().store.create_user(f"api_{uuid.uuid4().hex[:8]}@example.com")


@pytest.fixture
def planned(monkeypatch):
    runtime = get_runtime()
    monkeypatch.setattr(runtime.planner, "agent", PlanningAgent(PLAN))
    mailer = MockMailer()
    monkeypatch.setattr(runtime.tools, "email_service", mailer)
    return mailer


class TestErrorEnvelope:
    def test_error_body_requires_code_and_message(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Fehler")
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_is_normalized(self):
        assert ErrorBody(code="teapot", message="x").code == "server_error"

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id

    def test_status_code_mapping(self):
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(418) == "server_error"
        assert _STATUS_TO_CODE[503] == "unavailable"

    def test_error_response_shape(self):
        response = _error_response(409, "conflict happened", {"workflow_id": "w-1"})
        body = json.loads(response.body)
        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "conflict happened",
            "details": {"workflow_id": "w-1"},
        }


def test_blank_intent_rejected_by_schema():
    with pytest.raises(ValidationError):
        CreateWorkflowRequest(intent="   ", session_id="s-1")
    assert CreateWorkflowRequest(intent="  hallo ", session_id="s-1").intent == "hallo"


class TestHealth:
    def test_healthz_reports_memory_store(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["filesystem"]["status"] == "healthy"
        assert body["version"] == app_module.__version__

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["API-Version"] == app_module.__version__


class TestWorkflowLifecycle:
    def test_create_and_execute_until_confirmation(self, client, planned, session_id, user):
        headers = {"X-User-ID": user.id}
        created = client.post(
            "/v1/workflows",
            json={"intent": "Bewirb mich bei Acme", "session_id": session_id},
            headers=headers,
        )
        assert created.status_code == 201
        workflow = created.json()["data"]
        assert workflow["status"] == "draft"
        assert workflow["user_id"] == user.id
        assert [s["step_type"] for s in workflow["steps"]] == ["notification", "tool_call"]
        assert workflow["steps"][1]["requires_confirmation"] is True

        executed = client.post(f"/v1/workflows/{workflow['id']}/execute", headers=headers)
        assert executed.status_code == 200
        paused = executed.json()["data"]
        assert paused["status"] == "waiting_user_input"
        assert paused["steps"][1]["status"] == "pending_confirmation"
        assert planned.sent == []

        active = client.get(f"/v1/sessions/{session_id}/workflows").json()["data"]["items"]
        assert [w["id"] for w in active] == [workflow["id"]]

        confirmed = client.post(
            f"/v1/workflows/{workflow['id']}/confirm", json={"confirmed": True}, headers=headers
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["status"] == "completed"
        assert planned.sent == ["jobs@acme.example"]

    def test_owned_workflow_hidden_from_other_callers(self, client, planned, session_id, user):
        created = client.post(
            "/v1/workflows",
            json={"intent": "Bewirb mich", "session_id": session_id},
            headers={"X-User-ID": user.id},
        ).json()["data"]

        anonymous = client.get(f"/v1/workflows/{created['id']}")
        assert anonymous.status_code == 404
        assert anonymous.json()["error"]["code"] == "not_found"

        owner = client.get(f"/v1/workflows/{created['id']}", headers={"X-User-ID": user.id})
        assert owner.status_code == 200

    def test_unknown_user_header_is_unauthorized(self, client):
        response = client.get("/v1/workflows/whatever", headers={"X-User-ID": "nobody"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_missing_workflow_uses_error_envelope(self, client):
        response = client.get(f"/v1/workflows/{uuid.uuid4()}")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
        assert body["request_id"]

    def test_invalid_body_is_validation_error(self, client, session_id):
        response = client.post("/v1/workflows", json={"intent": "", "session_id": session_id})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_cancel_then_execute_conflicts(self, client, planned, session_id):
        created = client.post(
            "/v1/workflows", json={"intent": "Bewirb mich", "session_id": session_id}
        ).json()["data"]

        cancelled = client.post(f"/v1/workflows/{created['id']}/cancel")
        assert cancelled.json()["data"]["status"] == "cancelled"

        for wait in ("true", "false"):
            response = client.post(f"/v1/workflows/{created['id']}/execute?wait={wait}")
            assert response.status_code == 409
            assert response.json()["error"]["code"] == "conflict"

    def test_approve_requires_an_approver(self, client, planned, session_id):
        created = client.post(
            "/v1/workflows", json={"intent": "Bewirb mich", "session_id": session_id}
        ).json()["data"]

        missing = client.post(f"/v1/workflows/{created['id']}/approve", json={})
        assert missing.status_code == 400

        approved = client.post(f"/v1/workflows/{created['id']}/approve", json={"approved_by": "chef"})
        assert approved.json()["data"]["status"] == "approved"

    def test_schedule_endpoint(self, client, planned, session_id):
        created = client.post(
            "/v1/workflows", json={"intent": "Bewirb mich", "session_id": session_id}
        ).json()["data"]

        response = client.post(
            f"/v1/workflows/{created['id']}/schedule",
            json={"schedule_type": "daily", "config": {"time": "07:30"}, "max_executions": 5},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["is_scheduled"] is True
        assert data["schedule_type"] == "daily"
        assert data["next_run_at"]

        invalid = client.post(
            f"/v1/workflows/{created['id']}/schedule",
            json={"schedule_type": "daily", "config": {"time": "nope"}},
        )
        assert invalid.status_code == 400
        assert invalid.json()["error"]["code"] == "validation_error"


class TestStatusFeed:
    def test_list_since_and_clear(self, client, session_id):
        status = get_runtime().status
        status.add_status(session_id, "erste Meldung")
        first = get_runtime().store.list_statuses(session_id)[0]
        status.add_status(session_id, "zweite Meldung")
        second = get_runtime().store.list_statuses(session_id)[1]
        second.created_at = first.created_at + timedelta(milliseconds=5)

        listed = client.get(f"/v1/sessions/{session_id}/statuses").json()["data"]
        assert [i["message"] for i in listed["items"]] == ["erste Meldung", "zweite Meldung"]

        newer = client.get(
            f"/v1/sessions/{session_id}/statuses", params={"since": first.created_at.isoformat()}
        ).json()["data"]
        assert [i["message"] for i in newer["items"]] == ["zweite Meldung"]

        cleared = client.delete(f"/v1/sessions/{session_id}/statuses").json()["data"]
        assert cleared == {"session_id": session_id, "cleared": 2}
        assert client.get(f"/v1/sessions/{session_id}/statuses").json()["data"]["items"] == []
