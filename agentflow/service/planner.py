from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator

from agentflow.logging import get_logger
from agentflow.service.agent import AgentCaller
from agentflow.service.errors import PlanParseError
from agentflow.service.extraction import first_balanced_object
from agentflow.service.tools import EMAIL_TOOLS, parse_attachment_ids
from agentflow.storage.models import STEP_TYPES, User, Workflow, WorkflowStep

logger = get_logger(__name__)

_PLAN_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "steps": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "type": {"enum": list(STEP_TYPES)},
                    "description": {"type": "string"},
                    "tool": {"type": ["string", "null"]},
                    "parameters": {"type": "object"},
                    "requires_confirmation": {"type": "boolean"},
                    "output_format": {"type": "object"},
                    "retry_group": {"type": ["string", "null"]},
                    "decision_kind": {"enum": ["job_search", "final_selection", "generic", None]},
                },
                "required": ["type"],
                "allOf": [
                    {
                        "if": {"properties": {"type": {"const": "tool_call"}}},
                        "then": {
                            "required": ["tool"],
                            "properties": {"tool": {"type": "string", "minLength": 1}},
                        },
                    }
                ],
            },
        },
    },
    "required": ["steps"],
}

_FENCED = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"^\s*//.*$", re.MULTILINE)
_TRAILING_COMMA = re.compile(r",\s*([\]}])")
_DESCRIPTION_FIELD = re.compile(r"(\w+):\s*\"([^\"]+)\"")
_RESERVED_DESCRIPTION_KEYS = ("type", "description", "tool")

PLANNING_PROMPT = """Du bist ein Workflow-Planer. Erstelle aus der Anfrage des Nutzers einen
effizienten, ausführbaren Workflow als JSON-Objekt mit einem Array "steps".

Regeln:
1. Nutze die Angaben des Nutzers direkt (z.B. Beruf und Ort für die Jobsuche).
2. Keine unnötigen Schritte.
3. Schritte vom Typ analysis und decision brauchen ein "output_format" mit den exakten
   Feldnamen, die spätere Schritte verwenden.
4. "requires_confirmation": true nur für E-Mails.
5. Verweise auf frühere Ergebnisse mit {{step_N.result.FELDNAME}}; Tool-Ergebnisse liegen
   unter {{step_N.result.result.FELDNAME}}. Alternativen mit |, z.B.
   {{step_3.result.result.application_email|step_3.result.result.general_email}}.

Schritt-Typen: tool_call, analysis, decision, notification.

Verfügbare Tools:
- job_search (what, where, radius)
- generate_search_variants (job_title, job_location, skills)
- company_career_contact_finder (company_name)
- user_document_list (category)
- send_email (to, subject, body, attachments)

Antworte ausschließlich mit einem ```json Codeblock."""


def _clean_json(text: str) -> str:
    text = _BLOCK_COMMENT.sub("", text)
    text = _LINE_COMMENT.sub("", text)
    text = _TRAILING_COMMA.sub(r"\1", text)
    return text.strip()


def parse_plan(content: str) -> Dict[str, Any]:
    """Extract the plan object from an agent response.

    Raises ``PlanParseError`` when no JSON object with a ``steps`` list is found.
    """
    candidates: List[str] = []
    fenced = _FENCED.search(content or "")
    if fenced:
        candidates.append(fenced.group(1))
    start = (content or "").find('"steps"')
    if start != -1:
        opening = content.rfind("{", 0, start)
        if opening != -1:
            balanced = first_balanced_object(content[opening:])
            if balanced:
                candidates.append(balanced)
    balanced = first_balanced_object(content or "")
    if balanced:
        candidates.append(balanced)

    if not candidates:
        logger.error("plan_parse_no_json", content_preview=(content or "")[:500])
        raise PlanParseError("could not parse workflow plan: no JSON found")

    last_error: Optional[str] = None
    for candidate in candidates:
        try:
            plan = json.loads(_clean_json(candidate))
        except ValueError as exc:
            last_error = str(exc)
            continue
        if isinstance(plan, dict) and isinstance(plan.get("steps"), list):
            return plan
        last_error = 'missing "steps" array'
    logger.error("plan_parse_invalid_json", error=last_error)
    raise PlanParseError(f"invalid workflow plan: {last_error}")


def validate_plan(plan: Dict[str, Any]) -> None:
    validator = Draft202012Validator(_PLAN_SCHEMA)
    errors = sorted(validator.iter_errors(plan), key=lambda e: list(e.path))
    if errors:
        messages = ["/".join(str(p) for p in e.path) + ": " + e.message for e in errors]
        raise PlanParseError("workflow plan validation failed", detail={"errors": messages})


def infer_output_format(index: int, steps: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Fields later steps read from step ``index`` via ``{{step_N.result.X}}``."""
    fields: Dict[str, str] = {}
    reference = re.compile(r"\{\{[^}]*?step_%d\.result\.(\w+)" % (index + 1))
    for later in steps[index + 1:]:
        encoded = json.dumps(later.get("parameters") or {}, ensure_ascii=False)
        encoded += " " + str(later.get("description") or "")
        for field in reference.findall(encoded):
            fields[field] = "string"
    for field, _ in _DESCRIPTION_FIELD.findall(steps[index].get("description") or ""):
        if field not in _RESERVED_DESCRIPTION_KEYS:
            fields[field] = "string"
    if not fields:
        return None
    return {"type": "object", "fields": fields}


def normalize_email_attachments(parameters: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite ``attachments`` as a JSON list of ``{type: document_id, value}``."""
    if "attachments" not in parameters:
        return parameters
    normalized = []
    for entry in parse_attachment_ids(parameters["attachments"]):
        if isinstance(entry, dict):
            item = dict(entry)
            item.setdefault("type", "document_id")
            normalized.append(item)
        elif entry not in (None, ""):
            normalized.append({"type": "document_id", "value": str(entry)})
    updated = dict(parameters)
    updated["attachments"] = json.dumps(normalized, ensure_ascii=False)
    return updated


class WorkflowPlanner:
    """Turns a free-text intent into a validated, persisted-ready workflow."""

    def __init__(self, agent: AgentCaller) -> None:
        self.agent = agent

    def optimize_plan(self, plan: Dict[str, Any]) -> Dict[str, Any]:
        validate_plan(plan)
        steps = plan["steps"]
        for index, step in enumerate(steps):
            step.setdefault("description", "Keine Beschreibung")
            step["parameters"] = step.get("parameters") or {}
            step.setdefault("requires_confirmation", False)
            if step["type"] in ("analysis", "decision"):
                if not step.get("output_format"):
                    inferred = infer_output_format(index, steps)
                    if inferred:
                        step["output_format"] = inferred
                fmt = step.get("output_format")
                if fmt and "fields" not in fmt:
                    step["output_format"] = {"type": "object", "fields": fmt}
            if step["type"] == "tool_call" and step.get("tool") in EMAIL_TOOLS:
                step["parameters"] = normalize_email_attachments(step["parameters"])
                step["requires_confirmation"] = True
        return plan

    @staticmethod
    def build_steps(plan: Dict[str, Any]) -> List[WorkflowStep]:
        return [
            WorkflowStep(
                step_number=number,
                step_type=data["type"],
                description=data.get("description") or "",
                tool_name=data.get("tool"),
                tool_parameters=data.get("parameters") or {},
                expected_output_format=data.get("output_format"),
                requires_confirmation=bool(data.get("requires_confirmation")),
                retry_group=data.get("retry_group"),
                decision_kind=data.get("decision_kind"),
            )
            for number, data in enumerate(plan["steps"], start=1)
        ]

    async def create_plan(
        self,
        intent: str,
        session_id: str,
        acting_user: Optional[User] = None,
    ) -> Workflow:
        messages = [
            {"role": "system", "content": PLANNING_PROMPT},
            {"role": "user", "content": intent},
        ]
        content = await self.agent.call(messages, session_id=session_id, acting_user=acting_user)
        plan = self.optimize_plan(parse_plan(content))
        workflow = Workflow.new(
            session_id,
            intent,
            user_id=acting_user.id if acting_user else None,
            steps=self.build_steps(plan),
        )
        logger.info(
            "workflow_planned",
            workflow_id=workflow.id,
            steps_count=len(workflow.steps),
            session_id=session_id,
        )
        return workflow


__all__ = [
    "PLANNING_PROMPT",
    "WorkflowPlanner",
    "infer_output_format",
    "normalize_email_attachments",
    "parse_plan",
    "validate_plan",
]
