from __future__ import annotations

from typing import Any, Dict, Mapping

from agentflow.logging import get_logger
from agentflow.storage.models import WorkflowStep

logger = get_logger(__name__)

# Phrases the planner uses for conditional retry steps
RETRY_KEYWORDS = (
    "versuch 2",
    "versuch 3",
    "versuch 4",
    "versuch 5",
    "retry",
    "erweitertem radius",
    "alternativer berufsbezeichnung",
    "nur wenn",
    "falls leer",
    "falls versuch",
)


def is_retry_step(step: WorkflowStep) -> bool:
    """Whether ``step`` is one attempt in a cascade of retry variants."""
    if step.retry_group:
        return True
    description = (step.description or "").lower()
    return any(keyword in description for keyword in RETRY_KEYWORDS)


def _signals_success(result: Any) -> bool:
    if not isinstance(result, Mapping):
        return False
    return result.get("has_results") is True or result.get("retry_needed") is False


class SkipPolicy:
    """Skips redundant retry steps once an earlier attempt already succeeded."""

    def should_skip(self, step: WorkflowStep, context: Mapping[str, Any]) -> bool:
        if not is_retry_step(step):
            return False
        previous = context.get(f"step_{step.step_number - 1}")
        if not isinstance(previous, Mapping):
            return False
        skip = _signals_success(previous.get("result"))
        if skip:
            logger.info("retry_step_skippable", step=step.step_number)
        return skip

    def copy_last_successful(self, step: WorkflowStep, context: Mapping[str, Any]) -> Dict[str, Any]:
        """Carry forward the latest successful result before ``step``."""
        for number in range(step.step_number - 1, 0, -1):
            entry = context.get(f"step_{number}")
            if not isinstance(entry, Mapping):
                continue
            result = entry.get("result")
            if isinstance(result, Mapping) and result.get("has_results") is True:
                copied = dict(result)
                copied["skipped"] = True
                copied["copied_from"] = f"step_{number}"
                return copied
        return {"has_results": False, "job_count": 0, "skipped": True}


__all__ = ["RETRY_KEYWORDS", "SkipPolicy", "is_retry_step"]
