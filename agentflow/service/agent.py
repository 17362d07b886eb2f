from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from agentflow.logging import get_logger
from agentflow.service.errors import AgentExhausted, TransientAgentError
from agentflow.service.llm import DEFAULT_SYSTEM_PROMPT
from agentflow.service.retry import RetryPolicy, is_transient_error
from agentflow.service.status import StatusChannel

logger = get_logger(__name__)

DEFAULT_LITE_AFTER_FAILURES = 3
DEFAULT_PRIMARY_COOLDOWN_SECONDS = 60.0
LITE_SWITCH_DELAY_SECONDS = 1.0

Messages = Union[str, List[Dict[str, str]]]


@dataclass
class _RunState:
    failures: int = 0
    lite_active: bool = False
    lite_since: float = 0.0


class AgentCaller:
    """Calls the language-model capability with retry and degraded-mode fallback.

    After ``lite_after_failures`` consecutive failures within one session the
    caller switches to the lite agent; once ``primary_cooldown_seconds`` have
    passed it probes the primary agent again.
    """

    def __init__(
        self,
        primary: Any,
        lite: Any = None,
        *,
        status: Optional[StatusChannel] = None,
        retry_policy: Optional[RetryPolicy] = None,
        lite_after_failures: int = DEFAULT_LITE_AFTER_FAILURES,
        primary_cooldown_seconds: float = DEFAULT_PRIMARY_COOLDOWN_SECONDS,
        lite_switch_delay_seconds: float = LITE_SWITCH_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.primary = primary
        self.lite = lite
        self.status = status
        self.retry = retry_policy or RetryPolicy()
        self.lite_after_failures = max(1, lite_after_failures)
        self.primary_cooldown_seconds = primary_cooldown_seconds
        self.lite_switch_delay_seconds = lite_switch_delay_seconds
        self._clock = clock
        self._states: Dict[Optional[str], _RunState] = {}

    def reset(self, session_id: Optional[str]) -> None:
        """Forget failure counts and lite mode for a session (start of a run)."""
        self._states.pop(session_id, None)

    def is_degraded(self, session_id: Optional[str]) -> bool:
        state = self._states.get(session_id)
        return bool(state and state.lite_active)

    def _state_for(self, session_id: Optional[str]) -> _RunState:
        return self._states.setdefault(session_id, _RunState())

    def _status(self, session_id: Optional[str], message: str) -> None:
        if self.status is not None:
            self.status.add_status(session_id, message)

    @staticmethod
    def _as_messages(messages: Messages) -> List[Dict[str, str]]:
        if isinstance(messages, str):
            return [
                {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": messages},
            ]
        return list(messages)

    async def _invoke(self, agent: Any, messages: List[Dict[str, str]]) -> str:
        if inspect.iscoroutinefunction(agent.call):
            response = await agent.call(messages)
        else:
            response = await asyncio.to_thread(agent.call, messages)
        content = response.get("content") if isinstance(response, dict) else response
        if not isinstance(content, str) or not content.strip():
            raise TransientAgentError("agent response does not contain any content")
        return content

    async def _call_once(self, messages: List[Dict[str, str]], session_id: Optional[str]) -> str:
        state = self._state_for(session_id)

        if state.lite_active and self._clock() - state.lite_since >= self.primary_cooldown_seconds:
            try:
                content = await self._invoke(self.primary, messages)
            except Exception as exc:
                logger.info("agent_primary_probe_failed", session_id=session_id, error=str(exc))
                state.lite_since = self._clock()
            else:
                state.lite_active = False
                state.failures = 0
                logger.info("agent_primary_restored", session_id=session_id)
                self._status(session_id, "✅ Primäres Modell wieder verfügbar")
                return content

        if state.lite_active:
            self._status(session_id, "🪶 Nutze Lite-Modell (Fallback)")
            content = await self._invoke(self.lite, messages)
            state.failures = 0
            return content

        try:
            content = await self._invoke(self.primary, messages)
        except Exception as exc:
            state.failures += 1
            logger.warning(
                "agent_call_failed",
                session_id=session_id,
                failures=state.failures,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if self.lite is None or state.failures < self.lite_after_failures:
                raise
            state.lite_active = True
            state.lite_since = self._clock()
            logger.warning("agent_switch_to_lite", session_id=session_id, failures=state.failures)
            self._status(
                session_id,
                f"🔄 Wechsle zu Lite-Modell nach {state.failures} Fehlversuchen",
            )
            await self.retry.sleep(self.lite_switch_delay_seconds)
            content = await self._invoke(self.lite, messages)
        state.failures = 0
        return content

    async def call(
        self,
        messages: Messages,
        *,
        session_id: Optional[str] = None,
        acting_user: Any = None,
    ) -> str:
        """Return the agent's text content or raise ``AgentExhausted``."""
        prepared = self._as_messages(messages)

        def _announce_retry(attempt: int, ceiling: int, exc: BaseException) -> None:
            self._status(
                session_id,
                f"⚠️ Agent nicht erreichbar (Versuch {attempt}/{ceiling}), "
                f"neuer Versuch in {int(self.retry.delay_seconds)}s",
            )

        outcome = await self.retry.attempt(
            lambda: self._call_once(prepared, session_id),
            is_transient_error,
            on_retry=_announce_retry,
        )
        if outcome.ok:
            return outcome.value
        logger.error(
            "agent_call_exhausted",
            session_id=session_id,
            user_id=getattr(acting_user, "id", None),
            attempts=outcome.attempts,
            transient=outcome.transient,
            error=str(outcome.error),
        )
        if not outcome.transient:
            raise outcome.error
        self._status(session_id, f"❌ Agent nach {outcome.attempts} Versuchen nicht erreichbar")
        raise AgentExhausted(outcome.attempts, outcome.error)


__all__ = ["AgentCaller"]
