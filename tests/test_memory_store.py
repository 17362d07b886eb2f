"""Tests for the JSON-snapshot backed memory store."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from agentflow.storage.errors import ConstraintViolation
from agentflow.storage.memory import MemoryStore
from agentflow.storage.models import Workflow, WorkflowStep


def _workflow(session_id: str = "s-1") -> Workflow:
    return Workflow.new(
        session_id,
        "Finde Python-Jobs in Berlin",
        steps=[
            WorkflowStep(1, "tool_call", "Jobsuche", tool_name="job_search", tool_parameters={"what": "Python"}),
            WorkflowStep(2, "analysis", "Bewerte", expected_output_format={"fields": {"score": "integer"}}),
        ],
    )


class TestWorkflows:
    def test_create_and_get_returns_same_instance(self, store):
        workflow = store.create_workflow(_workflow())
        assert store.get_workflow(workflow.id) is workflow

    def test_duplicate_step_numbers_rejected(self, store):
        workflow = Workflow.new(
            "s-1",
            "x",
            steps=[WorkflowStep(1, "analysis", "a"), WorkflowStep(1, "analysis", "b")],
        )
        with pytest.raises(ConstraintViolation):
            store.create_workflow(workflow)

    def test_duplicate_workflow_rejected(self, store):
        workflow = store.create_workflow(_workflow())
        with pytest.raises(ConstraintViolation):
            store.create_workflow(workflow)

    def test_session_listing_filters_by_status(self, store):
        running = store.create_workflow(_workflow())
        running.status = "running"
        store.save_workflow(running)
        store.create_workflow(_workflow())
        store.create_workflow(_workflow("other"))

        assert len(store.list_workflows_for_session("s-1")) == 2
        active = store.list_workflows_for_session("s-1", statuses=("running",))
        assert [wf.id for wf in active] == [running.id]

    def test_due_workflows_ordered_and_limited(self, store):
        now = datetime(2024, 6, 1, 12, 0)
        first, second, future = _workflow(), _workflow(), _workflow()
        first.schedule_once(now - timedelta(hours=2))
        second.schedule_once(now - timedelta(hours=1))
        future.schedule_once(now + timedelta(hours=1))
        for wf in (second, future, first):
            store.create_workflow(wf)

        due = store.list_due_workflows(now, limit=10)
        assert [wf.id for wf in due] == [first.id, second.id]
        assert len(store.list_due_workflows(now, limit=1)) == 1

    def test_executions_are_numbered_per_workflow(self, store):
        workflow = store.create_workflow(_workflow())
        first = store.create_execution(workflow.id)
        second = store.create_execution(workflow.id)
        assert (first.execution_number, second.execution_number) == (1, 2)
        second.complete()
        store.save_execution(second)
        history = store.list_executions(workflow.id)
        assert [e.status for e in history] == ["running", "completed"]


class TestStatuses:
    def test_since_filter_is_strict(self, store):
        first = store.add_status("s-1", "eins")
        second = store.add_status("s-1", "zwei")
        second.created_at = first.created_at + timedelta(milliseconds=5)
        later = store.list_statuses("s-1", since=first.created_at)
        assert [s.message for s in later] == ["zwei"]

    def test_clear_only_affects_session(self, store):
        store.add_status("s-1", "eins")
        store.add_status("s-2", "anders")
        assert store.clear_statuses("s-1") == 1
        assert store.list_statuses("s-1") == []
        assert len(store.list_statuses("s-2")) == 1


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("nutzer@example.com", name="Nutzer")
        store.create_document(user.id, "cv.pdf", str(tmp_path / "cv.pdf"), size=2048, document_type="cv")
        workflow = _workflow()
        workflow.steps[0].complete({"tool": "job_search", "result": {"job_count": 1, "jobs": []}})
        workflow.schedule_daily("08:00", now=datetime(2024, 6, 1, 7, 0))
        store.create_workflow(workflow)
        store.add_status("s-1", "⚙️ Führe Step 1 aus")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.get_workflow(workflow.id)
        assert restored is not None
        assert restored.steps[0].status == "completed"
        assert restored.steps[0].result["result"]["job_count"] == 1
        assert restored.next_run_at == datetime(2024, 6, 1, 8, 0)
        assert reloaded.get_user(user.id).email == "nutzer@example.com"
        assert reloaded.list_documents(user.id)[0].size_human == "2.0 KB"
        assert [s.message for s in reloaded.list_statuses("s-1")] == ["⚙️ Führe Step 1 aus"]

    def test_duplicate_email_rejected(self, store):
        store.create_user("a@example.com")
        with pytest.raises(ConstraintViolation):
            store.create_user("a@example.com")

    def test_document_requires_existing_owner(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_document("missing", "cv.pdf", "/tmp/cv.pdf")


class TestUsersAndTemplates:
    def test_token_expiry_round_trips(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("token@example.com")
        assert not user.has_valid_token()

        user.external_token_expires_at = datetime(2030, 1, 1)
        store.save_user(user)

        reloaded = MemoryStore(fs_root=str(tmp_path)).get_user(user.id)
        assert reloaded.has_valid_token(now=datetime(2029, 12, 31))
        assert not reloaded.has_valid_token(now=datetime(2030, 1, 2))

    def test_template_and_unschedule_survive_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        workflow = _workflow()
        workflow.schedule_hourly(15, now=datetime(2024, 6, 1, 7, 0))
        workflow.unschedule()
        store.create_workflow(workflow.save_as_template("Wöchentliche Jobsuche"))

        restored = MemoryStore(fs_root=str(tmp_path)).get_workflow(workflow.id)
        assert restored.is_template is True
        assert restored.template_name == "Wöchentliche Jobsuche"
        assert restored.is_scheduled is False
        assert restored.next_run_at is None

    def test_delete_workflow_drops_executions(self, store):
        workflow = store.create_workflow(_workflow())
        store.create_execution(workflow.id)

        assert store.delete_workflow(workflow.id) is True
        assert store.get_workflow(workflow.id) is None
        assert store.list_executions(workflow.id) == []
        assert store.delete_workflow(workflow.id) is False
