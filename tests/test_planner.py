"""Plan parsing, validation and normalisation."""

from __future__ import annotations

import json

import pytest

from agentflow.service.errors import PlanParseError
from agentflow.service.planner import (
    PLANNING_PROMPT,
    WorkflowPlanner,
    infer_output_format,
    normalize_email_attachments,
    parse_plan,
    validate_plan,
)
from agentflow.storage.models import User


class MockAgent:
    def __init__(self, response: str):
        self.response = response
        self.messages = None

    async def call(self, messages, *, session_id=None, acting_user=None):
        self.messages = messages
        return self.response


PLAN = {
    "steps": [
        {
            "type": "tool_call",
            "description": "Suche Jobs",
            "tool": "job_search",
            "parameters": {"what": "Koch", "where": "Köln"},
        },
        {"type": "analysis", "description": "Wähle den besten Job aus"},
        {
            "type": "tool_call",
            "description": "Kontakt finden",
            "tool": "company_career_contact_finder",
            "parameters": {"company_name": "{{step_2.result.company_name}}"},
        },
        {
            "type": "tool_call",
            "description": "Bewerbung senden",
            "tool": "send_email",
            "parameters": {
                "to": "{{step_3.result.result.application_email}}",
                "subject": "Bewerbung: {{step_2.result.job_title}}",
                "body": "Hallo",
                "attachments": "doc-1, doc-2",
            },
        },
    ]
}


class TestParsePlan:
    def test_fenced_block(self):
        content = "Hier der Plan:\n```json\n%s\n```" % json.dumps(PLAN)
        assert parse_plan(content) == PLAN

    def test_comments_and_trailing_commas_are_tolerated(self):
        content = """Plan:
        {
          // erster Schritt
          "steps": [
            {"type": "notification", "description": "Hallo",},
          ],
        }
        Ende."""
        assert parse_plan(content) == {"steps": [{"type": "notification", "description": "Hallo"}]}

    def test_steps_object_found_inside_prose_with_other_braces(self):
        content = 'Notiz {kein json} und dann {"steps": [{"type": "analysis"}]}'
        assert parse_plan(content)["steps"] == [{"type": "analysis"}]

    def test_no_json(self):
        with pytest.raises(PlanParseError):
            parse_plan("Ich kann leider keinen Plan erstellen.")

    def test_object_without_steps(self):
        with pytest.raises(PlanParseError):
            parse_plan('{"plan": []}')


class TestValidatePlan:
    def test_tool_call_requires_tool(self):
        with pytest.raises(PlanParseError) as excinfo:
            validate_plan({"steps": [{"type": "tool_call", "description": "x"}]})
        assert excinfo.value.detail["errors"]

    def test_unknown_step_type(self):
        with pytest.raises(PlanParseError):
            validate_plan({"steps": [{"type": "teleport"}]})

    def test_empty_plan(self):
        with pytest.raises(PlanParseError):
            validate_plan({"steps": []})


class TestNormalisation:
    def test_output_format_inferred_from_later_references(self):
        steps = json.loads(json.dumps(PLAN["steps"]))
        assert infer_output_format(1, steps) == {
            "type": "object",
            "fields": {"company_name": "string", "job_title": "string"},
        }
        assert infer_output_format(3, steps) is None

    def test_email_attachments_become_document_references(self):
        normalized = normalize_email_attachments({"attachments": "doc-1, doc-2"})
        assert json.loads(normalized["attachments"]) == [
            {"type": "document_id", "value": "doc-1"},
            {"type": "document_id", "value": "doc-2"},
        ]
        assert normalize_email_attachments({"to": "x"}) == {"to": "x"}

    def test_optimize_marks_email_steps_for_confirmation(self):
        plan = WorkflowPlanner(MockAgent("")).optimize_plan(json.loads(json.dumps(PLAN)))
        email = plan["steps"][3]
        assert email["requires_confirmation"] is True
        assert plan["steps"][0]["requires_confirmation"] is False
        assert plan["steps"][1]["output_format"]["fields"] == {
            "company_name": "string",
            "job_title": "string",
        }

    def test_flat_output_format_is_wrapped(self):
        plan = {"steps": [{"type": "decision", "output_format": {"choice": "string"}}]}
        optimized = WorkflowPlanner(MockAgent("")).optimize_plan(plan)
        assert optimized["steps"][0]["output_format"] == {"type": "object", "fields": {"choice": "string"}}
        assert optimized["steps"][0]["description"] == "Keine Beschreibung"


async def test_create_plan_builds_numbered_steps():
    agent = MockAgent("```json\n%s\n```" % json.dumps(PLAN))
    user = User(id="u-1", email="u@example.com")
    workflow = await WorkflowPlanner(agent).create_plan("Bewirb mich als Koch in Köln", "s-1", user)

    assert agent.messages[0] == {"role": "system", "content": PLANNING_PROMPT}
    assert agent.messages[1]["content"] == "Bewirb mich als Koch in Köln"
    assert workflow.status == "draft"
    assert workflow.user_id == "u-1"
    assert [s.step_number for s in workflow.steps] == [1, 2, 3, 4]
    assert workflow.steps[0].tool_name == "job_search"
    assert workflow.steps[3].requires_confirmation is True
    assert workflow.steps[1].output_fields == ["company_name", "job_title"]
