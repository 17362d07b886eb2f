from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from agentflow.config import get_settings, reset_settings_cache
from agentflow.logging import get_logger
from agentflow.service.agent import AgentCaller
from agentflow.service.decision import SmartDecisionEvaluator
from agentflow.service.email import EmailService
from agentflow.service.job_search import TOOL_NAME as JOB_SEARCH_TOOL
from agentflow.service.job_search import JobSearchTool
from agentflow.service.llm import LLMService
from agentflow.service.planner import WorkflowPlanner
from agentflow.service.retry import RetryPolicy
from agentflow.service.scheduler import Scheduler
from agentflow.service.status import StatusChannel
from agentflow.service.strategy import SearchPolicy, SearchStrategy
from agentflow.service.tools import (
    DOCUMENT_LIST_TOOL,
    ToolInvoker,
    ToolRegistry,
    UserDocumentListTool,
)
from agentflow.service.workflow import WorkflowEngine, WorkflowExecutor
from agentflow.storage.memory import MemoryStore
from agentflow.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app and the scheduler."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=settings.shared_fs_root)
                if settings.use_memory_store
                else PostgresStore(settings.database_url, fs_root=settings.shared_fs_root)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.status = StatusChannel(self.store)

        self.llm = LLMService(
            settings.model_path,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            temperature=settings.agent_temperature,
        )
        self.lite_llm = (
            LLMService(
                settings.lite_model_path,
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                temperature=settings.agent_temperature,
                name="lite",
            )
            if settings.lite_model_path
            else None
        )
        if self.llm.is_stub:
            logger.warning("runtime_agent_stub_mode", model=settings.model_path)

        self.agent = AgentCaller(
            self.llm,
            self.lite_llm,
            status=self.status,
            retry_policy=RetryPolicy(
                settings.agent_max_attempts, settings.agent_retry_delay_seconds
            ),
            lite_after_failures=settings.agent_lite_after_failures,
            primary_cooldown_seconds=settings.agent_primary_cooldown_seconds,
        )

        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

        self.strategy = SearchStrategy(SearchPolicy.from_settings(settings))
        self.job_search = JobSearchTool(
            settings.job_search_base_url,
            settings.job_search_api_key,
            page_size=settings.job_search_page_size,
            timeout_seconds=settings.job_search_timeout_seconds,
        )
        self.registry = ToolRegistry()
        self.registry.register(JOB_SEARCH_TOOL, self.job_search)
        self.registry.register(DOCUMENT_LIST_TOOL, UserDocumentListTool(self.store))

        self.tools = ToolInvoker(
            self.registry,
            self.agent,
            store=self.store,
            status=self.status,
            strategy=self.strategy,
            email_service=self.email,
        )
        self.decisions = SmartDecisionEvaluator(self.strategy, self.status)
        self.executor = WorkflowExecutor(
            self.store,
            status=self.status,
            agent=self.agent,
            tools=self.tools,
            decisions=self.decisions,
            recovery_attempts=settings.step_recovery_attempts,
            recovery_backoff_seconds=settings.step_recovery_backoff_seconds,
            max_failed_steps=settings.max_failed_steps,
            interrupted_after_seconds=settings.interrupted_run_timeout_seconds,
        )
        self.planner = WorkflowPlanner(self.agent)
        self.engine = WorkflowEngine(
            self.store,
            planner=self.planner,
            executor=self.executor,
            tools=self.tools,
            status=self.status,
        )
        self.scheduler = Scheduler(
            self.store, self.executor, batch_limit=settings.scheduler_batch_limit
        )
        logger.info("runtime_init_completed", tools=self.registry.names())

    async def aclose(self) -> None:
        await self.job_search.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime and a locked second check during creation.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
