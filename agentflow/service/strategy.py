from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from agentflow.logging import get_logger
from agentflow.service.errors import NoSearchCriteria
from agentflow.service.extraction import parse_json_object

logger = get_logger(__name__)

# Job title hierarchy used for synonym fallbacks
TITLE_FALLBACKS: Dict[str, List[str]] = {
    "geschäftsführer": [
        "Geschäftsführer",
        "Niederlassungsleiter",
        "Betriebsleiter",
        "Filialleiter",
        "Operations Manager",
        "General Manager",
    ],
    "softwareentwickler": [
        "Softwareentwickler",
        "Software Engineer",
        "Developer",
        "Programmierer",
        "Full Stack Developer",
        "Backend Developer",
    ],
    "projektmanager": [
        "Projektmanager",
        "Project Manager",
        "Projektleiter",
        "Program Manager",
        "Scrum Master",
    ],
}

SKILL_INDUSTRIES: Dict[str, str] = {
    "php": "Webentwicklung",
    "symfony": "Webentwicklung",
    "javascript": "Webentwicklung",
    "react": "Webentwicklung",
    "python": "Softwareentwicklung",
    "personalführung": "Management",
    "kundenberatung": "Vertrieb",
    "marketing": "Marketing",
}

DEFAULT_RADIUS_STEPS = (0, 10, 20, 50, 100)
NATIONWIDE = "Deutschland"
MAX_STRING_SKILLS = 5

# Used when a search result cannot be tied to a known variant
UNKNOWN_SEARCH_PARAMS: Dict[str, Any] = {
    "strategy": "unknown",
    "priority": 999,
    "what": "unknown",
    "where": "unknown",
    "radius": 0,
    "description": "Job Search Result",
}


@dataclass
class SearchPolicy:
    """Scoring knobs; the defaults are policy, not measurements."""

    quality_threshold: int = 30
    radius_steps: Sequence[int] = field(default_factory=lambda: list(DEFAULT_RADIUS_STEPS))
    exact_match_bonus: int = 20
    late_priority_threshold: int = 50
    late_priority_penalty: int = 30

    @classmethod
    def from_settings(cls, settings: Any) -> "SearchPolicy":
        return cls(
            quality_threshold=settings.search_quality_threshold,
            radius_steps=list(settings.search_radius_steps),
            exact_match_bonus=settings.search_exact_match_bonus,
            late_priority_threshold=settings.search_late_priority_threshold,
            late_priority_penalty=settings.search_late_priority_penalty,
        )


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def _jobs_from(payload: Mapping[str, Any]) -> Optional[List[Any]]:
    jobs = payload.get("jobs")
    return jobs if isinstance(jobs, list) else None


def normalize_search_result(raw: Any) -> Optional[Dict[str, Any]]:
    """Canonical ``{job_count, jobs}`` view of a search-shaped step result.

    Accepts the shapes produced by tools and agents: tagged
    ``{"tool": "job_search", "result": {...}}``, flat ``{job_count, jobs}``,
    nested under ``result`` and nested under ``tool_result``. Returns ``None``
    for results that are not search-shaped.
    """
    if not isinstance(raw, Mapping):
        return None

    payload: Optional[Mapping[str, Any]] = None
    if raw.get("tool") == "job_search":
        inner = raw.get("result", raw)
        if isinstance(inner, str):
            inner = parse_json_object(inner) or {}
        payload = inner if isinstance(inner, Mapping) else {}
    elif "job_count" in raw or "jobs" in raw:
        payload = raw
    elif isinstance(raw.get("result"), Mapping) and (
        "job_count" in raw["result"] or "jobs" in raw["result"]
    ):
        payload = raw["result"]
    elif isinstance(raw.get("tool_result"), Mapping) and (
        "job_count" in raw["tool_result"] or "jobs" in raw["tool_result"]
    ):
        payload = raw["tool_result"]

    if payload is None:
        return None

    jobs = _jobs_from(payload)
    if jobs is None:
        for key in ("result", "tool_result"):
            nested = payload.get(key)
            if isinstance(nested, Mapping):
                jobs = _jobs_from(nested)
                if jobs is not None:
                    break
    jobs = jobs or []
    if "job_count" in payload:
        count = _as_int(payload.get("job_count"))
    else:
        count = len(jobs)
    return {"job_count": count, "jobs": jobs}


def job_field(job: Any, key: str) -> str:
    if not isinstance(job, Mapping):
        return ""
    value = job.get(key)
    if key == "company" and not value:
        value = job.get("arbeitgeber")
    return str(value) if value else ""


class SearchStrategy:
    """Generates prioritised search variants and scores search results."""

    def __init__(self, policy: Optional[SearchPolicy] = None) -> None:
        self.policy = policy or SearchPolicy()

    @staticmethod
    def title_fallbacks(base_title: str) -> List[str]:
        normalized = base_title.strip().lower()
        if normalized in TITLE_FALLBACKS:
            return list(TITLE_FALLBACKS[normalized])
        for key, fallbacks in TITLE_FALLBACKS.items():
            if key in normalized:
                return [base_title.strip()] + list(fallbacks)
        return [base_title.strip()]

    @staticmethod
    def parse_skills(skills: Any) -> List[str]:
        if isinstance(skills, (list, tuple)):
            return [str(s).strip() for s in skills if str(s).strip()]
        if isinstance(skills, str):
            parsed = [s.strip() for s in skills.split(",") if s.strip()]
            return parsed[:MAX_STRING_SKILLS]
        return []

    @staticmethod
    def industries_for(skills: Sequence[str]) -> List[str]:
        found: List[str] = []
        for skill in skills:
            normalized = skill.strip().lower()
            for keyword, industry in SKILL_INDUSTRIES.items():
                if keyword in normalized and industry not in found:
                    found.append(industry)
        return found

    def generate_variants(self, params: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Ordered search variants; lowest ``priority`` is tried first.

        Raises ``NoSearchCriteria`` when neither a title nor skills are given.
        """
        base_title = str(params.get("job_title") or "").strip()
        base_location = str(params.get("job_location") or "").strip()
        skills = self.parse_skills(params.get("skills") or "")

        if not base_title and not skills:
            raise NoSearchCriteria()

        variants: List[Dict[str, Any]] = []

        if base_title and base_location:
            for title_index, title in enumerate(self.title_fallbacks(base_title)):
                for radius_index, radius in enumerate(self.policy.radius_steps):
                    variants.append(
                        {
                            "strategy": "title_location_radius",
                            "priority": title_index * 10 + radius_index,
                            "what": title,
                            "where": base_location,
                            "radius": radius,
                            "description": "%s in %s%s"
                            % (title, base_location, f" (+{radius}km)" if radius > 0 else ""),
                        }
                    )

        if base_title and not base_location:
            for index, title in enumerate(self.title_fallbacks(base_title)):
                variants.append(
                    {
                        "strategy": "title_nationwide",
                        "priority": 50 + index,
                        "what": title,
                        "where": NATIONWIDE,
                        "radius": 0,
                        "description": "%s (bundesweit)" % title,
                    }
                )

        for index, skill in enumerate(skills):
            variants.append(
                {
                    "strategy": "skill_based",
                    "priority": 100 + index,
                    "what": skill,
                    "where": base_location or NATIONWIDE,
                    "radius": 0,
                    "description": "Skill: %s" % skill,
                }
            )

        for index, industry in enumerate(self.industries_for(skills)):
            variants.append(
                {
                    "strategy": "industry_based",
                    "priority": 200 + index,
                    "what": industry,
                    "where": base_location or NATIONWIDE,
                    "radius": 0,
                    "description": "Branche: %s" % industry,
                }
            )

        variants.sort(key=lambda v: v["priority"])
        logger.info(
            "search_variants_generated",
            total_variants=len(variants),
            base_title=base_title,
            base_location=base_location,
            skills_count=len(skills),
        )
        return variants

    def evaluate(self, result: Mapping[str, Any], variant: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        params = dict(UNKNOWN_SEARCH_PARAMS)
        params.update(variant or {})
        job_count = _as_int(result.get("job_count", 0))
        has_results = job_count > 0

        score = 0
        if has_results:
            score = min(100, job_count * 10)
            if params.get("strategy") == "title_location_radius" and _as_int(params.get("radius")) == 0:
                score += self.policy.exact_match_bonus
            if _as_int(params.get("priority"), 999) > self.policy.late_priority_threshold:
                score = max(0, score - self.policy.late_priority_penalty)

        acceptable = score >= self.policy.quality_threshold
        return {
            "has_results": has_results,
            "job_count": job_count,
            "quality_score": score,
            "is_acceptable": acceptable,
            "strategy_used": params.get("strategy"),
            "search_description": params.get("description"),
            "should_retry": not has_results or not acceptable,
        }

    @staticmethod
    def match_variant(
        parameters: Mapping[str, Any], variants: Sequence[Mapping[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """Variant whose what/where/radius equal the parameters actually sent."""
        what = str(parameters.get("what") or "").strip().casefold()
        where = str(parameters.get("where") or "").strip().casefold()
        radius = _as_int(parameters.get("radius"), -1)
        if not what:
            return None
        for variant in variants:
            if (
                str(variant.get("what", "")).casefold() == what
                and str(variant.get("where", "")).casefold() == where
                and _as_int(variant.get("radius"), -2) == radius
            ):
                return dict(variant)
        return None


__all__ = [
    "DEFAULT_RADIUS_STEPS",
    "SKILL_INDUSTRIES",
    "SearchPolicy",
    "SearchStrategy",
    "TITLE_FALLBACKS",
    "UNKNOWN_SEARCH_PARAMS",
    "job_field",
    "normalize_search_result",
]
