from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from agentflow.logging import get_logger
from agentflow.service.errors import TransientAgentError

logger = get_logger(__name__)

T = TypeVar("T")

# Message fragments that mark an agent failure as retryable
TRANSIENT_ERROR_PATTERNS = (
    "response does not contain",
    "rate limit",
    "timeout",
    "timed out",
    "503",
    "429",
    "500",
    "temporarily unavailable",
    "quota exceeded",
    "too many requests",
    "resource exhausted",
    "overloaded",
)


def is_transient_error(error: BaseException) -> bool:
    if isinstance(error, (TransientAgentError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    attempts: int
    ok: bool = True


@dataclass(frozen=True)
class Failure:
    error: BaseException
    attempts: int
    transient: bool
    ok: bool = False


Outcome = Union[Success[Any], Failure]


class RetryPolicy:
    """Fixed-delay retry loop returning a tagged ``Success``/``Failure``.

    Only errors classified as transient are retried; the sleep is an
    ``asyncio.sleep`` so other runs keep making progress while one waits.
    """

    def __init__(
        self,
        max_attempts: int = 25,
        delay_seconds: float = 60.0,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Optional[Callable[[int, int, BaseException], None]] = None,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.delay_seconds = max(0.0, float(delay_seconds))
        self.sleep = sleep
        self.on_retry = on_retry

    async def attempt(
        self,
        fn: Callable[[], Any],
        is_transient: Callable[[BaseException], bool] = is_transient_error,
        max_attempts: Optional[int] = None,
        delay: Optional[float] = None,
        on_retry: Optional[Callable[[int, int, BaseException], None]] = None,
    ) -> Outcome:
        ceiling = max(1, int(max_attempts or self.max_attempts))
        wait = self.delay_seconds if delay is None else max(0.0, float(delay))
        last_error: Optional[BaseException] = None
        for attempt in range(1, ceiling + 1):
            try:
                value = fn()
                if inspect.isawaitable(value):
                    value = await value
                return Success(value=value, attempts=attempt)
            except Exception as exc:
                last_error = exc
                transient = is_transient(exc)
                if not transient:
                    logger.warning(
                        "retry_non_transient_failure",
                        attempt=attempt,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    return Failure(error=exc, attempts=attempt, transient=False)
                if attempt >= ceiling:
                    break
                logger.warning(
                    "retry_transient_failure",
                    attempt=attempt,
                    max_attempts=ceiling,
                    delay_seconds=wait,
                    error=str(exc),
                )
                notify = on_retry or self.on_retry
                if notify is not None:
                    notify(attempt, ceiling, exc)
                await self.sleep(wait)
        logger.error("retry_attempts_exhausted", attempts=ceiling, error=str(last_error))
        return Failure(error=last_error, attempts=ceiling, transient=True)


__all__ = [
    "Failure",
    "Outcome",
    "RetryPolicy",
    "Success",
    "TRANSIENT_ERROR_PATTERNS",
    "is_transient_error",
]
