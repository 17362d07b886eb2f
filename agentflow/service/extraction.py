from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional

from agentflow.logging import get_logger

logger = get_logger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


def first_balanced_object(text: str) -> Optional[str]:
    """First ``{...}`` substring with balanced braces, honouring JSON strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            char = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        start = text.find("{", start + 1)
    return None


def _field_patterns(field: str) -> List[re.Pattern]:
    label = re.escape(field.replace("_", " "))
    return [
        re.compile(r'"%s"\s*:\s*"([^"]+)"' % re.escape(field), re.IGNORECASE),
        re.compile(r"\*\*%s[:\*]*\s*([^\n]+)" % label, re.IGNORECASE),
        re.compile(r"%s\s*:\s*([^\n]+)" % label, re.IGNORECASE),
        re.compile(r"-\s*%s\s*:\s*([^\n]+)" % label, re.IGNORECASE),
    ]


def extract_field(text: str, field: str) -> str:
    """Best-effort value for ``field`` from free text; ``""`` when not found."""
    for pattern in _field_patterns(field):
        match = pattern.search(text)
        if match:
            value = match.group(1).strip().strip("*").strip()
            if value:
                return value
    return ""


def extract_key_values(text: str, fields: Iterable[str]) -> Dict[str, str]:
    return {field: extract_field(text, field) for field in fields}


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Fenced JSON block first, then the first balanced object; ``None`` if neither parses."""
    candidates: List[str] = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    balanced = first_balanced_object(text)
    if balanced and balanced not in candidates:
        candidates.append(balanced)
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def extract_structured(response_text: str, required_fields: Iterable[str]) -> Dict[str, Any]:
    """Map every required field to a value extracted from a model response.

    Never raises. Falls back from JSON to label-style matching per field and
    fills anything still missing with an empty string.
    """
    fields = list(required_fields)
    text = response_text or ""
    parsed = parse_json_object(text)
    if parsed is None:
        logger.debug("structured_extraction_fallback", fields=fields)
        return extract_key_values(text, fields)

    result: Dict[str, Any] = dict(parsed)
    for field in fields:
        if _is_empty(result.get(field)):
            result[field] = extract_field(text, field)
    return result


def build_structured_prompt(description: str, fields: Iterable[str]) -> str:
    field_lines = "\n".join(f"- {field}" for field in fields)
    return (
        f"{description}\n\n"
        "Antworte ausschließlich mit einem JSON-Objekt in einem ```json Codeblock, "
        f"das genau diese Felder enthält:\n{field_lines}\n\n"
        "Verwende konkrete Werte. Wenn ein Wert unbekannt ist, verwende einen leeren String."
    )


__all__ = [
    "first_balanced_object",
    "build_structured_prompt",
    "extract_field",
    "extract_key_values",
    "extract_structured",
    "parse_json_object",
]
