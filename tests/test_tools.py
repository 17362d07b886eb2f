"""Tool dispatch: two-phase email, contact finder fallbacks and registry calls."""

from __future__ import annotations

import pytest

from agentflow.service.context import build_context
from agentflow.service.errors import ContactsNotFound, MissingUserContext, ToolExecutionError
from agentflow.service.status import StatusChannel
from agentflow.service.strategy import SearchStrategy
from agentflow.service.tools import (
    CONTACT_FINDER_TOOL,
    DOCUMENT_LIST_TOOL,
    ToolInvoker,
    ToolRegistry,
    UserDocumentListTool,
    body_preview,
    parse_attachment_ids,
)


class MockAgent:
    """Agent stand-in returning canned text."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    async def call(self, messages, *, session_id=None, acting_user=None):
        self.prompts.append(messages)
        return self.responses.pop(0) if self.responses else "ok"

    def reset(self, session_id):
        pass


class MockMailer:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    def send(self, to_email, subject, body, *, attachments=(), reply_to=None):
        self.sent.append(
            {
                "to": to_email,
                "subject": subject,
                "body": body,
                "attachments": list(attachments),
                "reply_to": reply_to,
            }
        )
        return self.succeed


def _invoker(store, *, registry=None, agent=None, mailer=None) -> ToolInvoker:
    return ToolInvoker(
        registry or ToolRegistry(),
        agent or MockAgent(),
        store=store,
        status=StatusChannel(store),
        strategy=SearchStrategy(),
        email_service=mailer or MockMailer(),
    )


@pytest.fixture
def user_with_cv(store, tmp_path):
    user = store.create_user("bewerber@example.com", name="Bewerber")
    cv_path = tmp_path / "lebenslauf.pdf"
    cv_path.write_bytes(b"%PDF-1.4")
    cv = store.create_document(
        user.id, "lebenslauf.pdf", str(cv_path), size=8, mime_type="application/pdf", document_type="cv"
    )
    return user, cv


EMAIL_PARAMS = {
    "to": "jobs@acme.example",
    "subject": "Bewerbung als Koch",
    "body": "<p>Sehr geehrte Damen und Herren</p>",
}


class TestEmailTwoPhase:
    async def test_prepare_never_sends(self, store, user_with_cv):
        user, cv = user_with_cv
        mailer = MockMailer()
        invoker = _invoker(store, mailer=mailer)
        params = dict(EMAIL_PARAMS, attachments='[{"type": "document_id", "value": "%s"}]' % cv.id)

        result = await invoker.invoke("send_email", params, {}, session_id="s-1", acting_user=user)

        assert mailer.sent == []
        assert result["status"] == "prepared"
        assert result["requires_user_authentication"] is False
        details = result["email_details"]
        assert details["recipient"] == "jobs@acme.example"
        assert details["body_preview"] == "Sehr geehrte Damen und Herren"
        assert details["attachment_count"] == 1
        assert details["attachments"][0]["filename"] == "lebenslauf.pdf"
        assert details["_user_id"] == user.id
        assert "wartet auf Freigabe" in store.list_statuses("s-1")[-1].message

    async def test_prepare_without_user_requires_authentication(self, store):
        invoker = _invoker(store)
        params = dict(EMAIL_PARAMS, attachments="doc-1")
        result = await invoker.invoke("SendMailTool", params, {})
        assert result["requires_user_authentication"] is True
        assert result["email_details"]["attachments"] == [{"id": "doc-1", "pending_verification": True}]

    async def test_foreign_attachments_are_dropped(self, store, user_with_cv):
        _, cv = user_with_cv
        stranger = store.create_user("fremd@example.com")
        result = await _invoker(store).invoke(
            "send_email", dict(EMAIL_PARAMS, attachments=[cv.id]), {}, acting_user=stranger
        )
        assert result["email_details"]["attachment_count"] == 0

    async def test_confirmed_send_delivers_with_attachments(self, store, user_with_cv):
        user, cv = user_with_cv
        mailer = MockMailer()
        invoker = _invoker(store, mailer=mailer)
        prepared = await invoker.invoke(
            "send_email", dict(EMAIL_PARAMS, attachments=[cv.id]), {}, acting_user=user
        )

        sent = await invoker.send_prepared_email(prepared["email_details"], session_id="s-1")

        assert sent["status"] == "sent"
        assert sent["attachment_count"] == 1
        assert mailer.sent == [
            {
                "to": "jobs@acme.example",
                "subject": "Bewerbung als Koch",
                "body": "<p>Sehr geehrte Damen und Herren</p>",
                "attachments": [cv.path],
                "reply_to": "bewerber@example.com",
            }
        ]

    async def test_send_without_any_user_fails(self, store):
        invoker = _invoker(store)
        prepared = await invoker.invoke("send_email", EMAIL_PARAMS, {})
        with pytest.raises(MissingUserContext):
            await invoker.send_prepared_email(prepared["email_details"])

    async def test_rejected_by_mailer(self, store, user_with_cv):
        user, _ = user_with_cv
        invoker = _invoker(store, mailer=MockMailer(succeed=False))
        prepared = await invoker.invoke("send_email", EMAIL_PARAMS, {}, acting_user=user)
        with pytest.raises(ToolExecutionError):
            await invoker.send_prepared_email(prepared["email_details"], acting_user=user)

    async def test_incomplete_details_rejected(self, store):
        with pytest.raises(ToolExecutionError):
            await _invoker(store).send_prepared_email({"recipient": "x@example.com"})


def _jobs_context():
    return build_context(
        {
            1: {
                "tool": "job_search",
                "parameters": {"what": "Koch"},
                "result": {
                    "job_count": 3,
                    "jobs": [
                        {"title": "Koch", "company": "Kantine GmbH", "url": "https://jobs.example/1"},
                        {"title": "Koch", "company": "Hotel AG", "url": ""},
                        {"title": "Koch", "company": "Mensa eG", "url": "https://jobs.example/3"},
                    ],
                },
            }
        }
    )


class TestContactFinder:
    async def test_falls_back_to_job_companies(self, store):
        looked_up = []

        def finder(parameters, acting_user=None):
            looked_up.append(parameters["company_name"])
            if parameters["company_name"] == "Mensa eG":
                return {"application_email": "karriere@mensa.example"}
            return {"success": False}

        registry = ToolRegistry()
        registry.register(CONTACT_FINDER_TOOL, finder)
        result = await _invoker(store, registry=registry).invoke(
            CONTACT_FINDER_TOOL, {"company_name": "Acme"}, _jobs_context(), session_id="s-1"
        )

        assert looked_up == ["Acme", "Kantine GmbH", "Mensa eG"]
        assert result["result"]["application_email"] == "karriere@mensa.example"
        assert result["parameters"] == {"company_name": "Mensa eG"}
        messages = [s.message for s in store.list_statuses("s-1")]
        assert messages[-1] == "✅ Kontaktdaten gefunden: Bewerbungs-E-Mail: karriere@mensa.example"

    async def test_exhaustion_reports_attempt_count(self, store):
        registry = ToolRegistry()
        registry.register(CONTACT_FINDER_TOOL, lambda parameters, acting_user=None: {})
        with pytest.raises(ContactsNotFound) as excinfo:
            await _invoker(store, registry=registry).invoke(
                CONTACT_FINDER_TOOL, {"company_name": "Acme"}, _jobs_context()
            )
        assert excinfo.value.attempts == 3
        assert excinfo.value.candidates == ["Acme", "Kantine GmbH", "Mensa eG"]

    async def test_agent_lookup_when_no_finder_registered(self, store):
        agent = MockAgent('```json\n{"application_email": "jobs@acme.example", "general_email": ""}\n```')
        result = await _invoker(store, agent=agent).invoke(
            CONTACT_FINDER_TOOL, {"company_name": "Acme"}, {}
        )
        assert result["result"]["application_email"] == "jobs@acme.example"
        assert "Acme" in agent.prompts[0]


class TestDispatch:
    async def test_registered_tool_result_is_wrapped(self, store):
        registry = ToolRegistry()
        registry.register("echo", lambda parameters, acting_user=None: {"echo": parameters["x"]})
        result = await _invoker(store, registry=registry).invoke("echo", {"x": 1}, {})
        assert result == {"tool": "echo", "parameters": {"x": 1}, "result": {"echo": 1}}

    async def test_unknown_tool_is_delegated_to_agent(self, store):
        agent = MockAgent("erledigt")
        result = await _invoker(store, agent=agent).invoke("weather", {"city": "Köln"}, {})
        assert result["result"] == "erledigt"
        assert agent.prompts[0].startswith('Verwende das Tool "weather"')

    async def test_unexpected_errors_are_wrapped(self, store):
        def broken(parameters, acting_user=None):
            raise KeyError("boom")

        registry = ToolRegistry()
        registry.register("broken", broken)
        with pytest.raises(ToolExecutionError) as excinfo:
            await _invoker(store, registry=registry).invoke("broken", {}, {})
        assert excinfo.value.tool == "broken"

    async def test_search_variants_are_stored_in_context(self, store):
        context = {}
        result = await _invoker(store).invoke(
            "generate_search_variants", {"job_title": "Koch", "job_location": "Köln"}, context, session_id="s-1"
        )
        assert result["variants_generated"] == 5
        assert context["search_variants_count"] == 5
        assert context["search_variants_list"][0]["radius"] == 0
        assert store.list_statuses("s-1")[-1].message == "🔍 5 Suchvarianten generiert"

    async def test_document_list_requires_user(self, store, user_with_cv):
        user, cv = user_with_cv
        registry = ToolRegistry()
        registry.register(DOCUMENT_LIST_TOOL, UserDocumentListTool(store))
        invoker = _invoker(store, registry=registry)

        listed = await invoker.invoke(DOCUMENT_LIST_TOOL, {"category": "CV"}, {}, acting_user=user)
        assert listed["result"]["documents"][0]["id"] == cv.id
        with pytest.raises(MissingUserContext):
            await invoker.invoke(DOCUMENT_LIST_TOOL, {}, {})


def test_attachment_parsing_variants():
    assert parse_attachment_ids('["a", "b"]') == ["a", "b"]
    assert parse_attachment_ids("a, b") == ["a", "b"]
    assert parse_attachment_ids(None) == []
    assert parse_attachment_ids(7) == [7]


def test_body_preview_strips_markup_and_truncates():
    body = "<b>" + "x" * 250 + "</b>"
    preview = body_preview(body)
    assert preview.endswith("...")
    assert "<b>" not in preview
