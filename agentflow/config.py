from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from agentflow.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow engine and its collaborators."""

    database_url: str = env_field(
        "postgresql://localhost:5432/agentflow", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/agentflow", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, stub agent).",
    )
    # Agent settings
    model_path: str = env_field("gpt-4o-mini", "MODEL_PATH")
    lite_model_path: str | None = env_field(
        "gpt-4o-mini", "LITE_MODEL_PATH", description="Degraded-mode model used after repeated failures"
    )
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    agent_temperature: float = env_field(0.2, "AGENT_TEMPERATURE")
    # Retry / fallback policy. Defaults are policy, not derived from data.
    agent_max_attempts: int = env_field(25, "AGENT_MAX_ATTEMPTS")
    agent_retry_delay_seconds: float = env_field(60, "AGENT_RETRY_DELAY_SECONDS")
    agent_lite_after_failures: int = env_field(3, "AGENT_LITE_AFTER_FAILURES")
    agent_primary_cooldown_seconds: float = env_field(
        60, "AGENT_PRIMARY_COOLDOWN_SECONDS"
    )
    step_recovery_attempts: int = env_field(2, "STEP_RECOVERY_ATTEMPTS")
    step_recovery_backoff_seconds: float = env_field(2, "STEP_RECOVERY_BACKOFF_SECONDS")
    max_failed_steps: int = env_field(
        3, "MAX_FAILED_STEPS", description="Optional-tool failures are tolerated below this count"
    )
    # Search quality policy
    search_quality_threshold: int = env_field(30, "SEARCH_QUALITY_THRESHOLD")
    search_radius_steps: list[int] = env_field(
        [0, 10, 20, 50, 100], "SEARCH_RADIUS_STEPS"
    )
    search_exact_match_bonus: int = env_field(20, "SEARCH_EXACT_MATCH_BONUS")
    search_late_priority_threshold: int = env_field(50, "SEARCH_LATE_PRIORITY_THRESHOLD")
    search_late_priority_penalty: int = env_field(30, "SEARCH_LATE_PRIORITY_PENALTY")
    # Scheduler
    scheduler_batch_limit: int = env_field(10, "SCHEDULER_BATCH_LIMIT")
    interrupted_run_timeout_seconds: int = env_field(3600, "INTERRUPTED_RUN_TIMEOUT_SECONDS")
    # Job board API
    job_search_base_url: str = env_field(
        "https://rest.arbeitsagentur.de/jobboerse/jobsuche-service",
        "JOB_SEARCH_BASE_URL",
    )
    job_search_api_key: str = env_field("jobboerse-jobsuche", "JOB_SEARCH_API_KEY")
    job_search_page_size: int = env_field(5, "JOB_SEARCH_PAGE_SIZE")
    job_search_timeout_seconds: float = env_field(30.0, "JOB_SEARCH_TIMEOUT_SECONDS")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AgentFlow", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    app_host: str = env_field("0.0.0.0", "APP_HOST")
    app_port: int = env_field(8000, "APP_PORT")
    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        return value

    @field_validator("search_radius_steps", mode="before")
    @classmethod
    def _parse_radius_steps(cls, value: Any) -> Any:
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",") if p.strip()]
            return [int(p) for p in parts]
        return value

    @field_validator("search_radius_steps")
    @classmethod
    def _validate_radius_steps(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("SEARCH_RADIUS_STEPS must contain at least one radius")
        if any(r < 0 for r in value):
            raise ValueError("search radii must be non-negative")
        return value

    @field_validator("agent_max_attempts", "step_recovery_attempts")
    @classmethod
    def _validate_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("attempt ceilings must be at least 1")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
