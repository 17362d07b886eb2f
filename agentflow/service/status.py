from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from agentflow.logging import get_logger

logger = get_logger(__name__)


class StatusChannel:
    """Append-only, session-scoped progress log that clients poll."""

    def __init__(self, store: Any) -> None:
        self.store = store

    def add_status(self, session_id: Optional[str], message: str) -> None:
        if not session_id:
            # Runs without a session (e.g. scheduler dry-runs) have nobody polling
            logger.debug("status_without_session", message=message)
            return
        self.store.add_status(session_id, message)
        logger.debug("status_added", session_id=session_id, message=message)

    def clear_statuses(self, session_id: str) -> int:
        return self.store.clear_statuses(session_id)

    def get_statuses(
        self, session_id: str, since: Optional[datetime] = None
    ) -> List[Dict[str, str]]:
        """Ordered ``{timestamp, message}`` entries created strictly after ``since``."""
        return [s.as_dict() for s in self.store.list_statuses(session_id, since)]


__all__ = ["StatusChannel"]
