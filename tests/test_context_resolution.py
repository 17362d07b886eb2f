"""Tests for placeholder resolution against the execution context."""

from __future__ import annotations

from agentflow.service.context import (
    ContextResolver,
    build_context,
    lookup,
    split_path,
    stringify,
)


def _context():
    return build_context(
        {
            1: {
                "tool": "job_search",
                "parameters": {"what": "Python Developer"},
                "result": {
                    "job_count": 2,
                    "jobs": [
                        {"title": "Backend Dev", "company": "Acme", "url": "https://acme.example/1"},
                        {"title": "Data Eng", "company": "Globex", "url": "https://globex.example/2"},
                    ],
                },
            },
            2: {"company": "Acme GmbH", "contact_email": ""},
            3: None,
        }
    )


class TestBuildContext:
    def test_keys_follow_step_numbers(self):
        ctx = _context()
        assert set(ctx) == {"step_1", "step_2"}
        assert ctx["step_2"] == {"result": {"company": "Acme GmbH", "contact_email": ""}}

    def test_steps_without_result_are_omitted(self):
        assert "step_3" not in _context()


class TestLookup:
    def test_split_path_handles_indices(self):
        assert split_path("step_1.result.result.jobs[0].url") == [
            "step_1",
            "result",
            "result",
            "jobs",
            0,
            "url",
        ]

    def test_nested_lookup(self):
        assert lookup(_context(), "step_2.result.company") == "Acme GmbH"

    def test_list_index_lookup(self):
        assert lookup(_context(), "step_1.result.result.jobs[1].company") == "Globex"

    def test_missing_segment_returns_none(self):
        assert lookup(_context(), "step_2.result.missing") is None
        assert lookup(_context(), "step_1.result.result.jobs[5].url") is None

    def test_stringify_unwraps_single_values(self):
        assert stringify({"only": "value"}) == "value"
        assert stringify(["one"]) == "one"
        assert stringify(True) == "true"
        assert stringify(3) == "3"
        assert stringify(["a", "b"]) == '["a", "b"]'


class TestContextResolver:
    def test_resolves_plain_placeholder(self):
        resolver = ContextResolver()
        assert resolver.resolve_string("Firma: {{step_2.result.company}}", _context()) == "Firma: Acme GmbH"

    def test_resolves_nested_structures(self):
        resolver = ContextResolver()
        params = {
            "company_name": "{{step_2.result.company}}",
            "urls": ["{{step_1.result.result.jobs[0].url}}"],
            "limit": 5,
        }
        resolved = resolver.resolve(params, _context())
        assert resolved == {
            "company_name": "Acme GmbH",
            "urls": ["https://acme.example/1"],
            "limit": 5,
        }

    def test_alternatives_fall_through_to_first_present_value(self):
        resolver = ContextResolver()
        text = "{{step_2.result.contact_email|step_1.result.result.jobs[0].company}}"
        assert resolver.resolve_string(text, _context()) == "Acme"

    def test_quoted_literal_alternative(self):
        resolver = ContextResolver()
        text = "{{step_2.result.contact_email|'bewerbung@example.com'}}"
        assert resolver.resolve_string(text, _context()) == "bewerbung@example.com"

    def test_unresolvable_placeholder_is_left_verbatim(self):
        resolver = ContextResolver()
        text = "An: {{step_9.result.email}}"
        assert resolver.resolve_string(text, _context()) == text

    def test_reports_unresolved_placeholders_once(self):
        resolver = ContextResolver()
        resolved = resolver.resolve(
            {"to": "{{step_9.result.email}}", "cc": ["{{step_9.result.email}}", "{{ step_8.x }}"]},
            _context(),
        )
        assert resolver.find_unresolved_placeholders(resolved) == ["step_9.result.email", "step_8.x"]
        assert resolver.has_unresolved_placeholders(resolved)

    def test_text_without_placeholders_is_untouched(self):
        resolver = ContextResolver()
        assert resolver.resolve_string("keine Platzhalter", {}) == "keine Platzhalter"
        assert not resolver.has_unresolved_placeholders({"a": "b"})
