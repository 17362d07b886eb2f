"""Placeholder resolution against the accumulated execution context.

``{{step_2.result.company}}`` walks the context map segment by segment;
``{{step_1.result.jobs[0].url}}`` indexes into lists; ``{{a.b|c.d|'fallback'}}``
tries each alternative left to right. Anything that cannot be resolved is
left in place verbatim so downstream checks can report it.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Optional

from agentflow.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_SEGMENT_PATTERN = re.compile(r"[^.\[\]]+|\[(\d+)\]")

_MISSING = object()


def split_path(path: str) -> List[Any]:
    """``"a.b[2].c"`` -> ``["a", "b", 2, "c"]``."""
    segments: List[Any] = []
    for match in _SEGMENT_PATTERN.finditer(path.strip()):
        if match.group(1) is not None:
            segments.append(int(match.group(1)))
        else:
            segments.append(match.group(0).strip())
    return segments


def lookup(context: Mapping[str, Any], path: str) -> Any:
    """Walk ``context`` along ``path``; returns ``None`` when any segment is missing."""
    current: Any = context
    for segment in split_path(path):
        if isinstance(current, Mapping):
            if segment in current:
                current = current[segment]
            elif isinstance(segment, int) and str(segment) in current:
                current = current[str(segment)]
            else:
                return None
        elif isinstance(current, list):
            try:
                index = int(segment)
            except (TypeError, ValueError):
                return None
            if index < 0 or index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def stringify(value: Any) -> str:
    """Coerce a resolved value for substitution into a string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    if isinstance(value, Mapping) and len(value) == 1:
        return stringify(next(iter(value.values())))
    if isinstance(value, list) and len(value) == 1:
        return stringify(value[0])
    return json.dumps(value, ensure_ascii=False, default=str)


def _is_present(value: Any) -> bool:
    return value is not None and value != ""


def _literal(alternative: str) -> Optional[str]:
    if len(alternative) >= 2 and alternative[0] == alternative[-1] and alternative[0] in ("'", '"'):
        return alternative[1:-1]
    return None


class ContextResolver:
    """Resolves ``{{path}}`` placeholders in strings and nested structures."""

    def resolve(self, value: Any, context: Mapping[str, Any]) -> Any:
        if isinstance(value, str):
            return self.resolve_string(value, context)
        if isinstance(value, Mapping):
            return {key: self.resolve(item, context) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item, context) for item in value]
        return value

    def resolve_string(self, text: str, context: Mapping[str, Any]) -> str:
        if "{{" not in text:
            return text

        def _replace(match: re.Match) -> str:
            expression = match.group(1)
            resolved = self._resolve_expression(expression, context)
            if resolved is _MISSING:
                logger.debug("placeholder_unresolved", placeholder=expression.strip())
                return match.group(0)
            return resolved

        return PLACEHOLDER_PATTERN.sub(_replace, text)

    def _resolve_expression(self, expression: str, context: Mapping[str, Any]) -> Any:
        for alternative in (part.strip() for part in expression.split("|")):
            if not alternative:
                continue
            literal = _literal(alternative)
            if literal is not None:
                return literal
            value = lookup(context, alternative)
            if _is_present(value):
                return stringify(value)
        return _MISSING

    def find_unresolved_placeholders(self, value: Any) -> List[str]:
        """Inner paths of every placeholder still present in ``value``, deduplicated."""
        found: List[str] = []

        def _walk(item: Any) -> None:
            if isinstance(item, str):
                for match in PLACEHOLDER_PATTERN.finditer(item):
                    inner = match.group(1).strip()
                    if inner not in found:
                        found.append(inner)
            elif isinstance(item, Mapping):
                for nested in item.values():
                    _walk(nested)
            elif isinstance(item, list):
                for nested in item:
                    _walk(nested)

        _walk(value)
        return found

    def has_unresolved_placeholders(self, value: Any) -> bool:
        return bool(self.find_unresolved_placeholders(value))


def build_context(results: Mapping[int, Optional[Dict[str, Any]]]) -> Dict[str, Any]:
    """Context map keyed ``step_<n>`` from step-number -> persisted result."""
    return {
        f"step_{number}": {"result": result}
        for number, result in sorted(results.items())
        if result is not None
    }


__all__ = [
    "ContextResolver",
    "PLACEHOLDER_PATTERN",
    "build_context",
    "lookup",
    "split_path",
    "stringify",
]
