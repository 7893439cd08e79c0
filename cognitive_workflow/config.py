"""Configuration for the Cognitive Workflow Engine.

Every ``AppConfig`` field can be set from a ``COGNITIVE_WORKFLOW_<FIELD>``
environment variable; list fields take comma-separated values.
"""

import os
import typing
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "COGNITIVE_WORKFLOW_"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EmbeddingProviderType(str, Enum):
    """Where embeddings and completions come from."""
    HTTP = "http"
    HASHING = "hashing"


class AppConfig(BaseModel):
    """Application settings."""

    app_name: str = "Cognitive Workflow Engine"
    app_version: str = "1.0.0"
    debug: bool = False

    host: str = "0.0.0.0"
    port: int = Field(default=8000, description="HTTP port")
    reload: bool = Field(default=False, description="Auto-reload the server on code changes")

    database_url: str = Field(
        default="sqlite:///./cognitive_workflow.db",
        description="Catalog and report database"
    )
    database_echo: bool = False

    # AI provider
    embedding_provider: EmbeddingProviderType = EmbeddingProviderType.HTTP
    ai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible API base URL")
    ai_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    completion_model: str = "gpt-4o-mini"
    ai_request_timeout: float = Field(default=30.0, description="HTTP timeout for provider calls, seconds")
    hashing_dimensions: int = Field(default=256, description="Vector size of the hashing embedder")

    # Intent detection
    intent_min_confidence: float = Field(default=0.75, description="Minimum score for a confident match")
    intent_top_k: int = Field(default=3, description="Candidate intents kept per request")

    # Execution
    node_timeout: float = Field(default=60.0, description="Default AI call timeout per node, seconds")
    run_timeout: Optional[float] = Field(default=300.0, description="Whole-run timeout, seconds")
    max_concurrent_nodes: Optional[int] = Field(default=None, description="Nodes running at once within one workflow run")

    reload_catalog_on_startup: bool = True
    persist_reports: bool = Field(default=True, description="Store report trees in the database")

    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s %(levelname)-8s %(name)s [%(request_id)s] %(message)s"
    log_file: Optional[str] = None
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    health_check_timeout: float = 5.0
    slow_request_threshold: float = 5.0
    enable_performance_monitoring: bool = True

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_methods: List[str] = Field(default_factory=lambda: ["GET", "POST"])

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")

        scheme = v.split('://')[0].lower().split('+')[0]
        if scheme not in ('sqlite', 'postgresql', 'mysql'):
            raise ValueError(f"Unsupported database scheme: {scheme}")
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('intent_min_confidence')
    @classmethod
    def validate_min_confidence(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("Intent confidence threshold must be between 0 and 1")
        return v

    @field_validator('intent_top_k', 'hashing_dimensions', 'max_concurrent_nodes')
    @classmethod
    def validate_at_least_one(cls, v):
        if v is not None and v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('node_timeout', 'run_timeout', 'ai_request_timeout')
    @classmethod
    def validate_timeouts(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.lower().startswith('sqlite')

    def get_database_connect_args(self) -> Dict[str, Any]:
        # SQLite connections are shared between the event loop and worker threads.
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppConfig':
        """Build a configuration from ``COGNITIVE_WORKFLOW_*`` variables.

        Unset or empty variables keep the field default. Values are passed to
        pydantic as strings, so the usual lax coercion and the field
        validators apply.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or raw == "":
                continue
            if typing.get_origin(field.annotation) is list:
                values[name] = [item.strip() for item in raw.split(',') if item.strip()]
            else:
                values[name] = raw
        return cls(**values)


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, reading the environment once."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load ``config_file`` (or ``./.env``) into the environment, then rebuild the configuration.

    Variables already set in the environment win over the file.
    """
    global _config
    from dotenv import load_dotenv

    env_file = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def _ensure_directory(path: str, what: str, errors: List[str]) -> None:
    directory = os.path.dirname(path)
    if not directory or os.path.exists(directory):
        return
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        errors.append(f"Cannot create {what} directory {directory}: {e}")


def validate_config(config: AppConfig) -> None:
    """Check settings that depend on the environment. Raises ValueError listing every problem."""
    errors: List[str] = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        _ensure_directory(config.database_url.replace("sqlite:///", ""), "database", errors)
    if config.log_file:
        _ensure_directory(config.log_file, "log", errors)
    if config.embedding_provider == EmbeddingProviderType.HTTP and not config.ai_api_key:
        errors.append("An AI API key is required for the http provider")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        embedding_provider=EmbeddingProviderType.HASHING,
        intent_min_confidence=0.5,
    )


def get_production_config() -> AppConfig:
    return AppConfig(
        log_structured=True,
        cors_origins=[],
    )


def get_testing_config() -> AppConfig:
    """In-memory database and offline embeddings."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        embedding_provider=EmbeddingProviderType.HASHING,
        reload_catalog_on_startup=False,
        run_timeout=30.0,
        node_timeout=10.0,
    )
