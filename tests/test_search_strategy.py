"""Search variant generation, result scoring and result-shape normalisation."""

from __future__ import annotations

import json

import pytest

from agentflow.service.errors import NoSearchCriteria
from agentflow.service.strategy import (
    NATIONWIDE,
    SearchPolicy,
    SearchStrategy,
    job_field,
    normalize_search_result,
)


@pytest.fixture
def strategy():
    return SearchStrategy(SearchPolicy())


class TestGenerateVariants:
    def test_title_and_location_expand_over_synonyms_and_radii(self, strategy):
        variants = strategy.generate_variants(
            {"job_title": "Softwareentwickler", "job_location": "Berlin"}
        )
        assert len(variants) == 6 * 5
        first = variants[0]
        assert first["strategy"] == "title_location_radius"
        assert (first["what"], first["where"], first["radius"], first["priority"]) == (
            "Softwareentwickler",
            "Berlin",
            0,
            0,
        )
        assert first["description"] == "Softwareentwickler in Berlin"
        assert variants[1]["radius"] == 10
        assert variants[1]["description"] == "Softwareentwickler in Berlin (+10km)"
        priorities = [v["priority"] for v in variants]
        assert priorities == sorted(priorities)

    def test_title_without_location_searches_nationwide(self, strategy):
        variants = strategy.generate_variants({"job_title": "Koch"})
        assert variants == [
            {
                "strategy": "title_nationwide",
                "priority": 50,
                "what": "Koch",
                "where": NATIONWIDE,
                "radius": 0,
                "description": "Koch (bundesweit)",
            }
        ]

    def test_skills_add_skill_and_industry_variants(self, strategy):
        variants = strategy.generate_variants({"skills": "PHP, Python", "job_location": "Hamburg"})
        assert [(v["strategy"], v["what"], v["priority"]) for v in variants] == [
            ("skill_based", "PHP", 100),
            ("skill_based", "Python", 101),
            ("industry_based", "Webentwicklung", 200),
            ("industry_based", "Softwareentwicklung", 201),
        ]
        assert all(v["where"] == "Hamburg" for v in variants)

    def test_string_skills_are_capped(self, strategy):
        skills = ",".join("skill%d" % i for i in range(8))
        variants = strategy.generate_variants({"skills": skills})
        assert len([v for v in variants if v["strategy"] == "skill_based"]) == 5

    def test_partial_title_keeps_original_first(self, strategy):
        fallbacks = strategy.title_fallbacks("Senior Softwareentwickler")
        assert fallbacks[0] == "Senior Softwareentwickler"
        assert "Backend Developer" in fallbacks

    def test_no_criteria_raises(self, strategy):
        with pytest.raises(NoSearchCriteria):
            strategy.generate_variants({"job_location": "Berlin"})


class TestEvaluate:
    def test_exact_match_bonus_makes_small_result_acceptable(self, strategy):
        variant = {"strategy": "title_location_radius", "radius": 0, "priority": 0}
        evaluation = strategy.evaluate({"job_count": 2}, variant)
        assert evaluation["quality_score"] == 40
        assert evaluation["is_acceptable"] is True
        assert evaluation["should_retry"] is False

    def test_late_priority_penalty(self, strategy):
        variant = {"strategy": "skill_based", "radius": 0, "priority": 100}
        evaluation = strategy.evaluate({"job_count": 5}, variant)
        assert evaluation["quality_score"] == 20
        assert evaluation["is_acceptable"] is False
        assert evaluation["should_retry"] is True

    def test_unknown_variant_is_penalised(self, strategy):
        evaluation = strategy.evaluate({"job_count": 2}, None)
        assert evaluation["quality_score"] == 0
        assert evaluation["strategy_used"] == "unknown"

    def test_score_is_capped_before_bonus(self, strategy):
        variant = {"strategy": "title_location_radius", "radius": 0, "priority": 0}
        assert strategy.evaluate({"job_count": 50}, variant)["quality_score"] == 120

    def test_no_results(self, strategy):
        evaluation = strategy.evaluate({"job_count": 0}, {"strategy": "title_location_radius"})
        assert evaluation["has_results"] is False
        assert evaluation["quality_score"] == 0
        assert evaluation["should_retry"] is True

    def test_threshold_is_configurable(self):
        lenient = SearchStrategy(SearchPolicy(quality_threshold=10))
        evaluation = lenient.evaluate({"job_count": 5}, {"strategy": "skill_based", "priority": 100})
        assert evaluation["is_acceptable"] is True


class TestMatchVariant:
    def test_matches_case_insensitively(self, strategy):
        variants = strategy.generate_variants({"job_title": "Koch", "job_location": "Köln"})
        match = strategy.match_variant({"what": "koch", "where": "KÖLN", "radius": "20"}, variants)
        assert match["radius"] == 20
        assert match["priority"] == 2

    def test_unlisted_radius_does_not_match(self, strategy):
        variants = strategy.generate_variants({"job_title": "Koch", "job_location": "Köln"})
        assert strategy.match_variant({"what": "Koch", "where": "Köln", "radius": 25}, variants) is None


class TestNormalizeSearchResult:
    JOBS = [{"title": "Koch", "company": "Kantine", "url": "https://x.example/1"}]

    def test_tagged_tool_result(self):
        raw = {"tool": "job_search", "parameters": {}, "result": {"job_count": 1, "jobs": self.JOBS}}
        assert normalize_search_result(raw) == {"job_count": 1, "jobs": self.JOBS}

    def test_tagged_result_as_json_string(self):
        raw = {"tool": "job_search", "result": "Ergebnis: " + json.dumps({"job_count": 1, "jobs": self.JOBS})}
        assert normalize_search_result(raw)["job_count"] == 1

    def test_flat_and_nested_shapes(self):
        assert normalize_search_result({"jobs": self.JOBS}) == {"job_count": 1, "jobs": self.JOBS}
        assert normalize_search_result({"result": {"job_count": 3, "jobs": []}})["job_count"] == 3
        assert normalize_search_result({"tool_result": {"jobs": self.JOBS}})["job_count"] == 1

    def test_generic_agent_tool_nesting(self):
        raw = {"tool": "other", "result": {"job_count": 4, "jobs": self.JOBS}}
        assert normalize_search_result(raw) == {"job_count": 4, "jobs": self.JOBS}

    def test_non_search_results(self):
        assert normalize_search_result({"analysis": "text"}) is None
        assert normalize_search_result("text") is None
        assert normalize_search_result(None) is None

    def test_job_field_company_fallback(self):
        assert job_field({"arbeitgeber": "Bäckerei"}, "company") == "Bäckerei"
        assert job_field({"title": None}, "title") == ""
        assert job_field("x", "title") == ""
