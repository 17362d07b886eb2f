from __future__ import annotations

from typing import Any, Iterable, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource is in a state that does not allow the operation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NotExecutable(ConflictError):
    """Workflow status or approval precondition failed; nothing was advanced."""

    def __init__(self, workflow_id: str, status: str, *, reason: str | None = None) -> None:
        message = reason or f"workflow {workflow_id} cannot be executed from status '{status}'"
        super().__init__(message, detail={"workflow_id": workflow_id, "status": status})
        self.workflow_id = workflow_id
        self.status = status


class ToolExecutionError(ServerError):
    """A named tool call failed."""

    def __init__(self, tool: str, cause: BaseException | str) -> None:
        text = str(cause)
        super().__init__(
            f"tool '{tool}' failed: {text}",
            detail={"tool": tool, "cause": text},
        )
        self.tool = tool
        self.cause = cause


class TransientAgentError(ServiceError):
    """Agent failure classified as retryable (rate limit, 5xx, empty content)."""
    status_code = 503
    error_code = "unavailable"


class AgentExhausted(ServiceError):
    """All agent attempts, including the degraded fallback, failed."""
    status_code = 503
    error_code = "unavailable"

    def __init__(self, attempts: int, last_error: BaseException | str | None = None) -> None:
        text = str(last_error) if last_error is not None else "unknown error"
        super().__init__(
            f"agent unavailable after {attempts} attempts: {text}",
            detail={"attempts": attempts, "last_error": text},
        )
        self.attempts = attempts
        self.last_error = last_error


class ContactsNotFound(NotFoundError):
    """Every contact-finder candidate was tried without a usable contact."""

    def __init__(self, attempts: int, candidates: Iterable[str] = ()) -> None:
        tried = list(candidates)
        super().__init__(
            f"no contact data found after {attempts} attempts",
            detail={"attempts": attempts, "candidates": tried},
        )
        self.attempts = attempts
        self.candidates = tried


class MissingUserContext(ServiceError):
    """A user-scoped action could not resolve the acting user."""
    status_code = 401
    error_code = "unauthorized"


class NoSearchCriteria(ValidationError):
    """Search variant generation needs a job title or at least one skill."""

    def __init__(self) -> None:
        super().__init__("no job title or skills available to build search variants")


class UnresolvedPlaceholderError(ValidationError):
    """Tool parameters still contain placeholders after resolution."""

    def __init__(self, placeholders: list[str], available_keys: list[Any]) -> None:
        super().__init__(
            "unresolved placeholders: "
            + ", ".join("{{%s}}" % p for p in placeholders)
            + "; available context keys: "
            + ", ".join(str(k) for k in available_keys),
            detail={"placeholders": placeholders, "available_keys": available_keys},
        )
        self.placeholders = placeholders
        self.available_keys = available_keys


class PlanParseError(ValidationError):
    """Agent response could not be turned into a valid workflow plan."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "NotExecutable",
    "ToolExecutionError",
    "TransientAgentError",
    "AgentExhausted",
    "ContactsNotFound",
    "MissingUserContext",
    "NoSearchCriteria",
    "UnresolvedPlaceholderError",
    "PlanParseError",
]
