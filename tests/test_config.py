"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError

from cognitive_workflow.config import (
    AppConfig,
    EmbeddingProviderType,
    LogLevel,
    get_development_config,
    get_testing_config,
    load_config,
    reset_config,
    validate_config,
)


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestAppConfig:
    """Environment variables and validators."""

    def test_from_env_reads_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("COGNITIVE_WORKFLOW_PORT", "9001")
        monkeypatch.setenv("COGNITIVE_WORKFLOW_INTENT_MIN_CONFIDENCE", "0.6")
        monkeypatch.setenv("COGNITIVE_WORKFLOW_EMBEDDING_PROVIDER", "hashing")
        monkeypatch.setenv("COGNITIVE_WORKFLOW_MAX_CONCURRENT_NODES", "4")
        monkeypatch.setenv("COGNITIVE_WORKFLOW_CORS_ORIGINS", "http://a.test,http://b.test")

        config = AppConfig.from_env()

        assert config.port == 9001
        assert config.intent_min_confidence == 0.6
        assert config.embedding_provider == EmbeddingProviderType.HASHING
        assert config.max_concurrent_nodes == 4
        assert config.cors_origins == ["http://a.test", "http://b.test"]

    def test_load_config_reads_env_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("COGNITIVE_WORKFLOW_NODE_TIMEOUT", raising=False)
        env_file = tmp_path / "test.env"
        env_file.write_text("COGNITIVE_WORKFLOW_NODE_TIMEOUT=12.5\n")

        try:
            config = load_config(str(env_file))
        finally:
            monkeypatch.delenv("COGNITIVE_WORKFLOW_NODE_TIMEOUT", raising=False)

        assert config.node_timeout == 12.5

    @pytest.mark.parametrize("field,value", [
        ("intent_min_confidence", 1.5),
        ("intent_top_k", 0),
        ("port", 70000),
        ("node_timeout", 0),
        ("max_concurrent_nodes", 0),
        ("database_url", "oracle://db"),
    ])
    def test_invalid_values_are_rejected(self, field, value):
        with pytest.raises(ValidationError):
            AppConfig(**{field: value})

    def test_http_provider_requires_api_key(self):
        with pytest.raises(ValueError, match="API key"):
            validate_config(AppConfig(database_url="sqlite:///:memory:"))

        validate_config(AppConfig(database_url="sqlite:///:memory:", ai_api_key="key"))

    def test_presets(self):
        testing = get_testing_config()
        development = get_development_config()

        assert testing.database_url == "sqlite:///:memory:"
        assert testing.embedding_provider == EmbeddingProviderType.HASHING
        assert testing.reload_catalog_on_startup is False
        assert development.log_level == LogLevel.DEBUG
        validate_config(testing)

    def test_uvicorn_config(self):
        config = AppConfig(port=8123, log_level=LogLevel.WARNING)

        assert config.get_uvicorn_config()["port"] == 8123
        assert config.get_uvicorn_config()["log_level"] == "warning"
