from __future__ import annotations

from typing import List, Optional

from openai import OpenAI

from agentflow.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "Du bist ein zuverlässiger Assistent, der Workflow-Schritte ausführt. "
    "Antworte präzise und mit konkreten Werten."
)


class LLMService:
    """Chat-completion capability: ``call(messages) -> {content, usage}``.

    Without an API key the service echoes the last message back, which keeps
    local development and tests deterministic.
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.2,
        name: str = "primary",
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.name = name
        self.client = client or (OpenAI(api_key=api_key, base_url=base_url) if api_key else None)

    @property
    def is_stub(self) -> bool:
        return self.client is None

    def call(self, messages: List[dict]) -> dict:
        if self.client is not None:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
            )
            choices = getattr(completion, "choices", None) or []
            first_choice = next(iter(choices), None)
            if not first_choice:
                logger.warning("llm_completion_without_choices", model=self.model)
                content = ""
            else:
                content = first_choice.message.content or ""
            usage = getattr(completion, "usage", None)
            return {
                "content": content,
                "usage": {
                    "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                    "completion_tokens": getattr(usage, "completion_tokens", 0),
                    "total_tokens": getattr(usage, "total_tokens", 0),
                },
            }
        fallback = messages[-1]["content"] if messages else ""
        return {
            "content": f"[stub model={self.model}] {fallback}",
            "usage": {
                "prompt_tokens": len(fallback.split()),
                "completion_tokens": max(5, min(20, len(fallback.split()))),
            },
        }


__all__ = ["DEFAULT_SYSTEM_PROMPT", "LLMService"]
