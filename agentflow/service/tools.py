from __future__ import annotations

import asyncio
import inspect
import json
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Optional

from agentflow.logging import get_logger
from agentflow.service.agent import AgentCaller
from agentflow.service.email import EmailService
from agentflow.service.errors import (
    ContactsNotFound,
    MissingUserContext,
    ServiceError,
    ToolExecutionError,
)
from agentflow.service.extraction import extract_structured
from agentflow.service.status import StatusChannel
from agentflow.service.strategy import SearchStrategy, normalize_search_result
from agentflow.storage.models import User

logger = get_logger(__name__)

EMAIL_TOOLS = ("send_email", "SendMailTool")
CONTACT_FINDER_TOOL = "company_career_contact_finder"
SEARCH_VARIANTS_TOOL = "generate_search_variants"
DOCUMENT_LIST_TOOL = "user_document_list"
# Tools whose failure does not abort the run
OPTIONAL_TOOLS = (DOCUMENT_LIST_TOOL,)

CONTACT_FIELDS = ["application_email", "general_email", "contact_person", "career_page_url"]
BODY_PREVIEW_LENGTH = 200

_TAG_PATTERN = re.compile(r"<[^>]+>")

ToolFn = Callable[..., Any]


def parse_attachment_ids(value: Any) -> List[Any]:
    """Attachment entries from a JSON string, a comma-separated string or a list."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(decoded, list):
            return decoded
        return [decoded] if decoded not in (None, "") else []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def attachment_document_id(entry: Any) -> Optional[str]:
    if isinstance(entry, Mapping):
        doc_id = entry.get("value") or entry.get("id")
    else:
        doc_id = entry
    if doc_id in (None, ""):
        return None
    return str(doc_id)


def body_preview(body: str) -> str:
    stripped = _TAG_PATTERN.sub("", body)
    preview = stripped[:BODY_PREVIEW_LENGTH]
    return preview + "..." if len(body) > BODY_PREVIEW_LENGTH else preview


def contact_found(result: Any) -> bool:
    if not isinstance(result, Mapping):
        return False
    if result.get("success") is True:
        return True
    return bool(result.get("application_email")) or bool(result.get("general_email"))


class ToolRegistry:
    """Maps tool names to callables ``fn(parameters, acting_user=None)``."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolFn] = {}

    def register(self, name: str, fn: ToolFn) -> None:
        self._tools[name] = fn

    def get(self, name: str) -> Optional[ToolFn]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


class UserDocumentListTool:
    """Lists the acting user's uploaded documents, optionally by category."""

    def __init__(self, store: Any) -> None:
        self.store = store

    def __call__(self, parameters: Mapping[str, Any], acting_user: Optional[User] = None) -> Dict[str, Any]:
        if acting_user is None:
            raise MissingUserContext("user context required to list documents")
        category = str(parameters.get("category") or "").strip().lower()
        documents = [
            {
                "id": doc.id,
                "filename": doc.filename,
                "type": doc.document_type,
                "size_human": doc.size_human,
                "mime_type": doc.mime_type,
            }
            for doc in self.store.list_documents(acting_user.id)
            if not category or doc.document_type.lower() == category
        ]
        return {"success": True, "count": len(documents), "documents": documents}


class ToolInvoker:
    """Executes ``tool_call`` steps.

    Registered tools are called directly, unknown tools are delegated to the
    agent as a natural-language instruction. Email sending is split into a
    prepare phase and a confirmed send phase.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        agent: AgentCaller,
        *,
        store: Any,
        status: StatusChannel,
        strategy: SearchStrategy,
        email_service: EmailService,
    ) -> None:
        self.registry = registry
        self.agent = agent
        self.store = store
        self.status = status
        self.strategy = strategy
        self.email_service = email_service

    async def _call_registered(self, fn: ToolFn, parameters: Dict[str, Any], acting_user: Optional[User]) -> Any:
        if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None)):
            return await fn(parameters, acting_user=acting_user)
        return await asyncio.to_thread(fn, parameters, acting_user=acting_user)

    async def invoke(
        self,
        tool_name: str,
        parameters: Dict[str, Any],
        context: MutableMapping[str, Any],
        *,
        session_id: Optional[str] = None,
        acting_user: Optional[User] = None,
    ) -> Dict[str, Any]:
        logger.info(
            "tool_call_started",
            tool=tool_name,
            context_keys=list(context.keys()),
            has_user=acting_user is not None,
        )
        try:
            if tool_name in EMAIL_TOOLS:
                return self.prepare_email(parameters, session_id=session_id, acting_user=acting_user)
            if tool_name == CONTACT_FINDER_TOOL:
                return await self.find_contacts(
                    parameters, context, session_id=session_id, acting_user=acting_user
                )
            if tool_name == SEARCH_VARIANTS_TOOL:
                return self.generate_search_variants(parameters, context, session_id=session_id)

            fn = self.registry.get(tool_name)
            if fn is not None:
                payload = await self._call_registered(fn, parameters, acting_user)
            else:
                prompt = 'Verwende das Tool "%s" mit folgenden Parametern: %s' % (
                    tool_name,
                    json.dumps(parameters, ensure_ascii=False),
                )
                payload = await self.agent.call(prompt, session_id=session_id, acting_user=acting_user)
            return {"tool": tool_name, "parameters": parameters, "result": payload}
        except ServiceError:
            raise
        except Exception as exc:
            logger.error("tool_call_failed", tool=tool_name, error_type=type(exc).__name__, error=str(exc))
            raise ToolExecutionError(tool_name, exc) from exc

    # Search variants

    def generate_search_variants(
        self,
        parameters: Mapping[str, Any],
        context: MutableMapping[str, Any],
        *,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        variants = self.strategy.generate_variants(parameters)
        context["search_variants_list"] = variants
        context["search_variants_count"] = len(variants)
        self.status.add_status(session_id, "🔍 %d Suchvarianten generiert" % len(variants))
        return {
            "tool": SEARCH_VARIANTS_TOOL,
            "variants_generated": len(variants),
            "first_variant": variants[0] if variants else None,
            "variants": variants,
        }

    # Contact finder

    @staticmethod
    def _latest_jobs(context: Mapping[str, Any]) -> List[Mapping[str, Any]]:
        numbers = sorted(
            (int(key[5:]) for key in context if key.startswith("step_") and key[5:].isdigit()),
            reverse=True,
        )
        for number in numbers:
            entry = context.get(f"step_{number}")
            result = entry.get("result") if isinstance(entry, Mapping) else None
            normalized = normalize_search_result(result)
            if normalized and normalized["jobs"]:
                return [job for job in normalized["jobs"] if isinstance(job, Mapping)]
        return []

    async def _lookup_contact(self, company: str, session_id: Optional[str], acting_user: Optional[User]) -> Any:
        fn = self.registry.get(CONTACT_FINDER_TOOL)
        if fn is not None:
            return await self._call_registered(fn, {"company_name": company}, acting_user)
        prompt = (
            "Finde die Kontaktdaten für Bewerbungen beim Unternehmen \"%s\": "
            "Bewerbungs-E-Mail, allgemeine E-Mail, Ansprechpartner und Karriereseite." % company
        )
        content = await self.agent.call(prompt, session_id=session_id, acting_user=acting_user)
        return extract_structured(content, CONTACT_FIELDS)

    async def find_contacts(
        self,
        parameters: Mapping[str, Any],
        context: Mapping[str, Any],
        *,
        session_id: Optional[str] = None,
        acting_user: Optional[User] = None,
    ) -> Dict[str, Any]:
        """Try the explicit company first, then the company of every job with a URL."""
        initial = str(parameters.get("company_name") or "").strip() or None
        candidates: List[Dict[str, Any]] = []
        if initial:
            candidates.append({"company": initial, "description": "Initialer Firmenname: %s" % initial})
        for index, job in enumerate(self._latest_jobs(context), start=1):
            url = job.get("url")
            if not url:
                continue
            candidates.append(
                {
                    "company": job.get("company") or job.get("arbeitgeber") or initial,
                    "description": "Job-URL #%d: %s" % (index, url),
                }
            )

        attempts = 0
        tried: List[str] = []
        for candidate in candidates:
            attempts += 1
            self.status.add_status(
                session_id,
                "🔄 Starte Kontakt-Suche (Versuch %d): %s" % (attempts, candidate["description"]),
            )
            company = candidate["company"]
            if not company:
                logger.warning("contact_candidate_without_company", attempt=attempts)
                continue
            tried.append(company)
            try:
                found = await self._lookup_contact(company, session_id, acting_user)
            except Exception as exc:
                logger.warning("contact_lookup_failed", attempt=attempts, company=company, error=str(exc))
                continue
            if contact_found(found):
                emails = []
                if found.get("application_email"):
                    emails.append("Bewerbungs-E-Mail: %s" % found["application_email"])
                if found.get("general_email"):
                    emails.append("Allgemeine E-Mail: %s" % found["general_email"])
                self.status.add_status(session_id, "✅ Kontaktdaten gefunden: " + ", ".join(emails))
                logger.info("contact_found", attempt=attempts, company=company)
                return {
                    "tool": CONTACT_FINDER_TOOL,
                    "parameters": {"company_name": company},
                    "result": dict(found),
                }
            self.status.add_status(
                session_id, "⚠️ Keine relevanten Kontaktdaten gefunden. Versuche nächsten Fallback."
            )

        logger.warning("contacts_not_found", attempts=attempts, candidates=tried)
        raise ContactsNotFound(attempts, tried)

    # Email, phase 1

    def _attachment_details(self, entries: List[Any], acting_user: Optional[User]) -> List[Dict[str, Any]]:
        details: List[Dict[str, Any]] = []
        for entry in entries:
            doc_id = attachment_document_id(entry)
            if doc_id is None:
                continue
            if acting_user is None:
                details.append({"id": doc_id, "pending_verification": True})
                continue
            document = self.store.get_document(doc_id)
            if document is None or document.owner_user_id != acting_user.id:
                logger.warning("email_attachment_denied", doc_id=doc_id, user_id=acting_user.id)
                continue
            details.append(
                {
                    "id": document.id,
                    "filename": document.filename,
                    "size": document.size,
                    "size_human": document.size_human,
                    "mime_type": document.mime_type,
                    "type": document.document_type,
                    "download_url": "/api/documents/%s/download" % document.id,
                }
            )
        return details

    def prepare_email(
        self,
        parameters: Mapping[str, Any],
        *,
        session_id: Optional[str] = None,
        acting_user: Optional[User] = None,
    ) -> Dict[str, Any]:
        """Build a reviewable email draft; nothing is sent here."""
        recipient = parameters.get("to") or parameters.get("recipient") or "Unbekannt"
        subject = parameters.get("subject") or "Kein Betreff"
        body = str(parameters.get("body") or "")
        entries = parse_attachment_ids(parameters.get("attachments"))
        attachments = self._attachment_details(entries, acting_user)

        email_details = {
            "recipient": recipient,
            "subject": subject,
            "body": body,
            "body_preview": body_preview(body),
            "body_length": len(body),
            "attachments": attachments,
            "attachment_count": len(attachments),
            "ready_to_send": True,
            "requires_user_authentication": acting_user is None,
            "prepared_at": datetime.utcnow().isoformat(),
            "_original_params": dict(parameters),
            "_user_id": acting_user.id if acting_user else None,
        }
        logger.info(
            "email_prepared",
            attachment_count=len(attachments),
            has_user=acting_user is not None,
        )
        attachment_info = " (%d Anhänge)" % len(attachments) if attachments else ""
        self.status.add_status(
            session_id,
            '📧 E-Mail vorbereitet an %s - Betreff: "%s"%s (wartet auf Freigabe)'
            % (recipient, str(subject)[:50], attachment_info),
        )
        return {
            "tool": "send_email",
            "status": "prepared",
            "requires_user_authentication": acting_user is None,
            "email_details": email_details,
        }

    # Email, phase 2

    async def send_prepared_email(
        self,
        email_details: Optional[Mapping[str, Any]],
        *,
        session_id: Optional[str] = None,
        acting_user: Optional[User] = None,
    ) -> Dict[str, Any]:
        """Send a previously prepared email after human confirmation."""
        if not email_details or "_original_params" not in email_details:
            raise ToolExecutionError("send_email", "email details not found or incomplete")

        user = acting_user
        if user is None and email_details.get("_user_id"):
            user = self.store.get_user(email_details["_user_id"])
        if user is None:
            raise MissingUserContext("user context required for sending email")

        params = email_details["_original_params"]
        attachment_paths: List[str] = []
        for attachment in email_details.get("attachments") or []:
            doc_id = attachment_document_id(attachment)
            document = self.store.get_document(doc_id) if doc_id else None
            if document is None or document.owner_user_id != user.id:
                logger.warning("email_attachment_skipped", doc_id=doc_id, user_id=user.id)
                continue
            attachment_paths.append(document.path)

        recipient = params.get("to") or params.get("recipient") or email_details.get("recipient")
        subject = params.get("subject") or email_details.get("subject") or ""
        body = params.get("body") or email_details.get("body") or ""
        sent = await asyncio.to_thread(
            self.email_service.send,
            recipient,
            subject,
            body,
            attachments=attachment_paths,
            reply_to=user.email,
        )
        if not sent:
            raise ToolExecutionError("send_email", "mailer rejected the message")

        self.status.add_status(session_id, "✅ E-Mail erfolgreich versendet an %s" % recipient)
        return {
            "tool": "send_email",
            "status": "sent",
            "recipient": recipient,
            "subject": subject,
            "attachment_count": len(attachment_paths),
            "sent_at": datetime.utcnow().isoformat(),
            "result": "sent",
        }


__all__ = [
    "CONTACT_FINDER_TOOL",
    "DOCUMENT_LIST_TOOL",
    "EMAIL_TOOLS",
    "OPTIONAL_TOOLS",
    "SEARCH_VARIANTS_TOOL",
    "ToolInvoker",
    "ToolRegistry",
    "UserDocumentListTool",
    "attachment_document_id",
    "body_preview",
    "contact_found",
    "parse_attachment_ids",
]
