from __future__ import annotations

import os
from enum import Enum
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from turnkernel.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environment; production disables every local bypass."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


class RetrievalBackendKind(str, Enum):
    """Where retrieval stores live."""

    LOCAL = "local"
    OPENAI = "openai"


# Hard cap for concurrent tool execution inside one loop iteration
MAX_TOOL_WORKERS = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration, built once and handed to every component."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Model provider
    openai_api_key: Optional[str] = env_field(None, "OPENAI_API_KEY")
    openai_base_url: Optional[str] = env_field(None, "OPENAI_BASE_URL")
    model: str = env_field("gpt-4o-mini", "MODEL")
    punctuate_model: Optional[str] = env_field(None, "PUNCTUATE_MODEL")
    punctuate_max_chars: int = env_field(5000, "PUNCTUATE_MAX_CHARS", ge=1)
    upstream_retries: int = env_field(
        1,
        "UPSTREAM_RETRIES",
        ge=0,
        le=3,
        description="Extra attempts for idempotent upstream reads on server faults",
    )

    # Gatekeeper
    admin_token: Optional[str] = env_field(None, "ADMIN_TOKEN")
    dev_tools_bypass: bool = env_field(
        False,
        "DEV_TOOLS_BYPASS",
        description="Allow function tools without a credential from loopback callers outside production",
    )

    # Retrieval stores
    retrieval_backend: RetrievalBackendKind = env_field(
        RetrievalBackendKind.LOCAL, "RETRIEVAL_BACKEND"
    )
    stores_root: str = env_field("./stores", "STORES_ROOT")
    vector_store_id_canon: Optional[str] = env_field(None, "VECTOR_STORE_ID_CANON")
    vector_store_id_threads: Optional[str] = env_field(None, "VECTOR_STORE_ID_THREADS")
    vector_store_id_manifest: Optional[str] = env_field(None, "VECTOR_STORE_ID_MANIFEST")
    vector_store_id_legacy: Optional[str] = env_field(None, "VECTOR_STORE_ID")
    canon_max_results: int = env_field(8, "CANON_MAX_RESULTS", ge=1, le=50)
    threads_max_results: int = env_field(8, "THREADS_MAX_RESULTS", ge=1, le=50)
    manifest_max_results: int = env_field(8, "MANIFEST_MAX_RESULTS", ge=1, le=50)
    max_stores_per_turn: int = env_field(2, "MAX_STORES_PER_TURN", ge=1, le=4)
    validate_stores_on_startup: bool = env_field(False, "VALIDATE_STORES_ON_STARTUP")

    # Persistence and telemetry
    state_root: str = env_field("./state", "STATE_ROOT")
    use_memory_repository: bool = env_field(False, "USE_MEMORY_REPOSITORY")
    tap_max_bytes: int = env_field(25 * 1024 * 1024, "TAP_MAX_BYTES", ge=1024)

    # Responder
    tool_loop_max_rounds: int = env_field(6, "TOOL_LOOP_MAX_ROUNDS", ge=1, le=9)
    tool_workers: int = env_field(4, "TOOL_WORKERS", ge=1)
    tool_timeout_seconds: float = env_field(30.0, "TOOL_TIMEOUT_SECONDS", gt=0)
    stream_queue_size: int = env_field(64, "STREAM_QUEUE_SIZE", ge=1)

    # Ingress
    max_messages: int = env_field(200, "MAX_MESSAGES", ge=1)
    max_message_chars: int = env_field(32000, "MAX_MESSAGE_CHARS", ge=1)
    inbound_max_bytes: int = env_field(1024 * 1024, "INBOUND_MAX_BYTES", ge=1024)

    # Directory lister
    fs_list_root: str = env_field(".", "FS_LIST_ROOT")
    fs_list_max_entries: int = env_field(200, "FS_LIST_MAX_ENTRIES", ge=1)

    cors_allow_origins: Optional[List[str]] = env_field(None, "CORS_ALLOW_ORIGINS")

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

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("retrieval_backend")
    @classmethod
    def _validate_retrieval_backend(cls, value: RetrievalBackendKind) -> RetrievalBackendKind:
        return RetrievalBackendKind(value)

    @field_validator(
        "openai_api_key",
        "admin_token",
        "vector_store_id_canon",
        "vector_store_id_threads",
        "vector_store_id_manifest",
        "vector_store_id_legacy",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("tool_workers")
    @classmethod
    def _cap_tool_workers(cls, value: int) -> int:
        if value > MAX_TOOL_WORKERS:
            logger.warning("tool_workers_capped", requested=value, cap=MAX_TOOL_WORKERS)
            return MAX_TOOL_WORKERS
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


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
