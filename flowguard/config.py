from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow control-plane."""

    database_url: str = env_field(
        "postgresql://localhost:5432/flowguard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_memory_fallback: bool = env_field(
        True,
        "ALLOW_MEMORY_FALLBACK",
        description="Degrade to the in-memory checkpoint store when Postgres is unreachable",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Resource governor limits
    max_tokens: float = env_field(100_000, "MAX_TOKENS", ge=0)
    max_api_calls: float = env_field(200, "MAX_API_CALLS", ge=0)
    max_runtime_ms: float = env_field(30 * 60 * 1000, "MAX_RUNTIME_MS", ge=0)
    soft_limit_mode: bool = env_field(
        False,
        "SOFT_LIMIT_MODE",
        description="Invoke the limit callback instead of failing the run",
    )
    enable_resource_persistence: bool = env_field(
        False,
        "ENABLE_RESOURCE_PERSISTENCE",
        description="Persist resource counters so they survive a process restart",
    )

    # Checkpoint store retry policy
    checkpointer_max_retries: int = env_field(3, "CHECKPOINTER_MAX_RETRIES", ge=0)
    checkpointer_retry_delay_ms: int = env_field(
        500, "CHECKPOINTER_RETRY_DELAY_MS", ge=0
    )
    checkpoint_audit_versions: int = env_field(
        10,
        "CHECKPOINT_AUDIT_VERSIONS",
        ge=0,
        description="Number of superseded checkpoint versions retained for audit",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    db_connect_timeout_s: float = env_field(15.0, "DB_CONNECT_TIMEOUT_S", gt=0)

    # Cycle detection
    cycle_threshold: int = env_field(3, "CYCLE_THRESHOLD", ge=1)
    history_size: int = env_field(50, "HISTORY_SIZE", ge=2)
    history_state_window: int = env_field(
        5,
        "HISTORY_STATE_WINDOW",
        ge=0,
        description="How many recent history entries keep their full state snapshot",
    )

    # Loop guards
    max_iterations: int = env_field(
        0,
        "MAX_ITERATIONS",
        ge=0,
        description="Fail a run after this many committed steps; 0 disables the guard",
    )
    progress_field: str = env_field(
        "",
        "PROGRESS_FIELD",
        description="Dot path into the state that must keep changing; empty disables the guard",
    )
    max_iterations_without_progress: int = env_field(
        3, "MAX_ITERATIONS_WITHOUT_PROGRESS", ge=1
    )
    min_required_iterations: int = env_field(0, "MIN_REQUIRED_ITERATIONS", ge=0)

    graceful_shutdown_timeout_ms: int = env_field(
        10_000, "GRACEFUL_SHUTDOWN_TIMEOUT_MS", ge=0
    )
    default_component: str = env_field("proposal_generation", "DEFAULT_COMPONENT")

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

    @field_validator("database_url")
    @classmethod
    def _validate_database_url(cls, value: str) -> str:
        if not value.startswith(("postgresql://", "postgres://")):
            raise ValueError("DATABASE_URL must be a postgresql:// connection string")
        return value

    @field_validator("db_pool_max_size")
    @classmethod
    def _validate_pool_size(cls, value: int, info) -> int:
        min_size = info.data.get("db_pool_min_size", 1)
        if value < min_size:
            raise ValueError("DB_POOL_MAX_SIZE must be >= DB_POOL_MIN_SIZE")
        return value

    def resource_limits(self) -> dict[str, float]:
        """Limits keyed by the resource names the governor tracks."""

        return {
            "tokens": float(self.max_tokens),
            "api_calls": float(self.max_api_calls),
            "time": float(self.max_runtime_ms),
        }


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
