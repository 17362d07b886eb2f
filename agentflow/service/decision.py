from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple

from agentflow.logging import get_logger
from agentflow.service.errors import NoSearchCriteria
from agentflow.service.status import StatusChannel
from agentflow.service.strategy import (
    UNKNOWN_SEARCH_PARAMS,
    SearchStrategy,
    job_field,
    normalize_search_result,
)
from agentflow.storage.models import WorkflowStep

logger = get_logger(__name__)

FINAL_SELECTION_PHRASES = ("finale", "wähle besten", "aus allen versuchen")


def is_job_search_decision(step: WorkflowStep) -> bool:
    """Decision steps that evaluate a previous job search."""
    if step.decision_kind:
        return step.decision_kind == "job_search"
    description = (step.description or "").lower()
    return "job" in description and ("suche" in description or "ergebnis" in description)


def is_final_selection_decision(step: WorkflowStep) -> bool:
    """Decision steps that pick the best job across all search attempts."""
    if step.decision_kind:
        return step.decision_kind == "final_selection"
    description = (step.description or "").lower()
    return any(phrase in description for phrase in FINAL_SELECTION_PHRASES)


def _step_number(key: str) -> Optional[int]:
    if not key.startswith("step_"):
        return None
    try:
        return int(key[len("step_"):])
    except ValueError:
        return None


def _result_of(context: Mapping[str, Any], number: int) -> Any:
    entry = context.get(f"step_{number}")
    if isinstance(entry, Mapping):
        return entry.get("result")
    return None


class SmartDecisionEvaluator:
    """Decides whether a search was good enough or which variant to try next.

    Prior results are located in the execution context by shape, so search
    results produced by the job search tool, by generic agent tools and by
    legacy steps are all recognised.
    """

    def __init__(self, strategy: SearchStrategy, status: Optional[StatusChannel] = None) -> None:
        self.strategy = strategy
        self.status = status

    def _status(self, session_id: Optional[str], message: str) -> None:
        if self.status is not None:
            self.status.add_status(session_id, message)

    # Context scanning

    @staticmethod
    def _search_steps(context: Mapping[str, Any], current_step: int) -> List[Tuple[int, Any, Dict[str, Any]]]:
        found = []
        for key in context:
            number = _step_number(key)
            if number is None or number >= current_step:
                continue
            raw = _result_of(context, number)
            # Decision outputs and carried-forward copies are not search attempts
            if isinstance(raw, Mapping) and ("should_retry" in raw or raw.get("skipped")):
                continue
            normalized = normalize_search_result(raw)
            if normalized is not None:
                found.append((number, raw, normalized))
        found.sort(key=lambda item: item[0])
        return found

    def variants_for(self, context: Mapping[str, Any], current_step: int) -> List[Dict[str, Any]]:
        """Variant list from ``generate_search_variants``, else derived from the first search."""
        stored = context.get("search_variants_list")
        if isinstance(stored, list) and stored:
            return stored
        for _, raw, _ in self._search_steps(context, current_step):
            params = raw.get("parameters") if isinstance(raw, Mapping) else None
            if not isinstance(params, Mapping) or not params.get("what"):
                continue
            try:
                return self.strategy.generate_variants(
                    {
                        "job_title": params.get("what"),
                        "job_location": params.get("where") or "",
                        "skills": params.get("skills") or "",
                    }
                )
            except NoSearchCriteria:
                return []
        return []

    def search_params_for(
        self, context: Mapping[str, Any], step_number: int, raw: Any
    ) -> Dict[str, Any]:
        entry = context.get(f"step_{step_number}")
        if isinstance(entry, Mapping) and isinstance(entry.get("search_params"), Mapping):
            return dict(entry["search_params"])
        if isinstance(raw, Mapping):
            if isinstance(raw.get("search_params"), Mapping):
                return dict(raw["search_params"])
            # Only a recorded variant list identifies the strategy of a search
            params = raw.get("parameters")
            recorded = context.get("search_variants_list")
            if isinstance(params, Mapping) and isinstance(recorded, list):
                variant = self.strategy.match_variant(params, recorded)
                if variant is not None:
                    return variant
        return dict(UNKNOWN_SEARCH_PARAMS)

    def find_last_result(self, context: Mapping[str, Any], current_step: int) -> Optional[Dict[str, Any]]:
        """Most recent search-shaped result before ``current_step``."""
        steps = self._search_steps(context, current_step)
        if not steps:
            return None
        number, raw, normalized = steps[-1]
        return {
            "step": number,
            "result": normalized,
            "search_params": self.search_params_for(context, number, raw),
        }

    def count_attempts(self, context: Mapping[str, Any], current_step: int) -> int:
        return len(self._search_steps(context, current_step))

    def next_variant(self, context: Mapping[str, Any], current_step: int) -> Optional[Dict[str, Any]]:
        variants = self.variants_for(context, current_step)
        attempted = self.count_attempts(context, current_step)
        if attempted < len(variants):
            return dict(variants[attempted])
        return None

    def find_best_attempt(self, context: Mapping[str, Any], current_step: int) -> Dict[str, Any]:
        best: Optional[Tuple[int, Dict[str, Any]]] = None
        for number, _, normalized in self._search_steps(context, current_step):
            if best is None or normalized["job_count"] > best[1]["job_count"]:
                best = (number, normalized)
        if best is None:
            return {"step": None, "job_count": 0, "jobs": [], "quality_score": 0}
        number, normalized = best
        return {
            "step": number,
            "job_count": normalized["job_count"],
            "jobs": normalized["jobs"],
            "quality_score": min(100, normalized["job_count"] * 10),
        }

    # Decisions

    def evaluate_job_search(
        self, step: WorkflowStep, context: Mapping[str, Any], session_id: Optional[str] = None
    ) -> Dict[str, Any]:
        current = step.step_number
        last = self.find_last_result(context, current)
        if last is None:
            logger.warning("decision_without_search_result", step=current)
            return {
                "has_results": False,
                "should_retry": True,
                "retry_reason": "no_previous_search",
                "next_action": "start_new_search",
            }

        evaluation = self.strategy.evaluate(last["result"], last["search_params"])
        logger.info(
            "job_search_evaluated",
            step=current,
            source_step=last["step"],
            job_count=evaluation["job_count"],
            quality_score=evaluation["quality_score"],
            acceptable=evaluation["is_acceptable"],
        )

        if evaluation["is_acceptable"]:
            jobs = last["result"]["jobs"]
            first = jobs[0] if jobs else {}
            self._status(session_id, "✅ Jobs gefunden: %d Ergebnisse" % evaluation["job_count"])
            return {
                "has_results": True,
                "job_count": evaluation["job_count"],
                "quality_score": evaluation["quality_score"],
                "strategy_used": evaluation["strategy_used"],
                "best_job_title": job_field(first, "title"),
                "best_job_company": job_field(first, "company"),
                "best_job_url": job_field(first, "url"),
                "should_retry": False,
            }

        following = self.next_variant(context, current)
        if following is not None:
            self._status(
                session_id, "🔄 Keine guten Ergebnisse - versuche: %s" % following.get("description", "")
            )
            return {
                "has_results": False,
                "should_retry": True,
                "next_search_params": following,
                "retry_reason": "quality_too_low",
                "previous_quality_score": evaluation["quality_score"],
            }

        best = self.find_best_attempt(context, current)
        first = best["jobs"][0] if best["jobs"] else {}
        self._status(
            session_id,
            "⚠️ Alle Suchvarianten versucht - nutze beste Ergebnis (%d Jobs)" % best["job_count"],
        )
        return {
            "has_results": best["job_count"] > 0,
            "job_count": best["job_count"],
            "best_job_title": job_field(first, "title"),
            "best_job_company": job_field(first, "company"),
            "best_job_url": job_field(first, "url"),
            "should_retry": False,
            "all_attempts_exhausted": True,
        }

    def select_final(self, context: Mapping[str, Any], current_step: int) -> Dict[str, Any]:
        """Best job across all retry attempts, by job count."""
        best = self.find_best_attempt(context, current_step)
        if best["step"] is None or not best["jobs"]:
            return {
                "has_results": False,
                "final_job_title": "",
                "final_company": "",
                "final_job_url": "",
                "source_attempt": "none",
            }
        first = best["jobs"][0]
        return {
            "has_results": True,
            "final_job_title": job_field(first, "title"),
            "final_company": job_field(first, "company"),
            "final_job_url": job_field(first, "url"),
            "source_attempt": "step_%d" % best["step"],
        }


__all__ = [
    "FINAL_SELECTION_PHRASES",
    "SmartDecisionEvaluator",
    "is_final_selection_decision",
    "is_job_search_decision",
]
