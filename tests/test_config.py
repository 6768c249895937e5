import pytest
from pydantic import ValidationError

from turnkernel.config import (
    MAX_TOOL_WORKERS,
    Environment,
    RetrievalBackendKind,
    Settings,
    get_settings,
    reset_settings_cache,
)


def test_defaults():
    settings = Settings()
    assert settings.environment == Environment.DEVELOPMENT
    assert settings.retrieval_backend == RetrievalBackendKind.LOCAL
    assert settings.tool_loop_max_rounds == 6
    assert settings.max_stores_per_turn == 2
    assert settings.is_production is False


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("TOOL_LOOP_MAX_ROUNDS", "3")
    monkeypatch.setenv("VECTOR_STORE_ID", "vs_legacy")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    settings = Settings.from_env()
    assert settings.is_production
    assert settings.tool_loop_max_rounds == 3
    assert settings.vector_store_id_legacy == "vs_legacy"
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_blank_secrets_become_none(monkeypatch):
    monkeypatch.setenv("ADMIN_TOKEN", "   ")
    monkeypatch.setenv("VECTOR_STORE_ID_CANON", "")
    settings = Settings.from_env()
    assert settings.admin_token is None
    assert settings.vector_store_id_canon is None


@pytest.mark.parametrize("rounds", [0, 10])
def test_tool_loop_bound_enforced(rounds):
    with pytest.raises(ValidationError):
        Settings(tool_loop_max_rounds=rounds)


def test_tool_workers_capped():
    assert Settings(tool_workers=MAX_TOOL_WORKERS + 10).tool_workers == MAX_TOOL_WORKERS


def test_unknown_environment_rejected():
    with pytest.raises(ValidationError):
        Settings(environment="staging")


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("MODEL", "other-model")
    reset_settings_cache()
    assert get_settings().model == "other-model"
