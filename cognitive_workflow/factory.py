"""Application factory: wires the core components and builds the FastAPI app."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import Engine, text

from .config import AppConfig, EmbeddingProviderType, get_config, validate_config
from .core.ai_provider import AIProvider, HashingEmbeddingProvider, HttpAIProvider
from .core.error_recovery import HealthChecker
from .core.intent_catalog import IntentCatalog, IntentMatcher
from .core.intent_detection import IntentDetectionService
from .core.logging import get_logger, setup_logging
from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware
from .core.node_executor import NodeExecutor
from .core.observability import CompositeReportSink, LoggingReportSink, ReportSink
from .core.orchestrator import CognitiveOrchestrator
from .core.registry import NodesRegistry, WorkflowsRegistry
from .core.transform_registry import TransformRegistry
from .core.workflow_engine import WorkflowEngine
from .storage.catalog_store import CatalogStore, DatabaseReportSink, reload_catalog
from .storage.database import build_engine, create_tables, get_session_factory
from .transforms import register_builtin_transforms
from .api.endpoints import router, init_dependencies

logger = get_logger(__name__)


class ApplicationState:
    """Container for the components of one running application."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.db_engine: Optional[Engine] = None
        self.store: Optional[CatalogStore] = None
        self.provider: Optional[AIProvider] = None
        self.transforms: Optional[TransformRegistry] = None
        self.nodes: Optional[NodesRegistry] = None
        self.workflows: Optional[WorkflowsRegistry] = None
        self.catalog: Optional[IntentCatalog] = None
        self.matcher: Optional[IntentMatcher] = None
        self.detection: Optional[IntentDetectionService] = None
        self.engine: Optional[WorkflowEngine] = None
        self.orchestrator: Optional[CognitiveOrchestrator] = None
        self.health_checker: Optional[HealthChecker] = None


def create_provider(config: AppConfig) -> AIProvider:
    """Build the AI provider selected by the configuration."""
    if config.embedding_provider == EmbeddingProviderType.HASHING:
        return HashingEmbeddingProvider(dim=config.hashing_dimensions)
    return HttpAIProvider(
        base_url=config.ai_base_url,
        api_key=config.ai_api_key,
        embedding_model=config.embedding_model,
        completion_model=config.completion_model,
        request_timeout=config.ai_request_timeout,
    )


def build_components(
    config: AppConfig,
    provider: Optional[AIProvider] = None,
    db_engine: Optional[Engine] = None,
) -> ApplicationState:
    """Construct every core component; nothing is shared through module globals."""
    state = ApplicationState()
    state.config = config

    state.db_engine = db_engine or build_engine(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args(),
    )
    create_tables(state.db_engine)
    state.store = CatalogStore(get_session_factory(state.db_engine))

    state.provider = provider or create_provider(config)
    state.transforms = TransformRegistry()
    register_builtin_transforms(state.transforms)

    state.nodes = NodesRegistry()
    state.workflows = WorkflowsRegistry()
    state.catalog = IntentCatalog()

    sinks: list = [LoggingReportSink()]
    if config.persist_reports:
        sinks.append(DatabaseReportSink(state.store))
    sink: ReportSink = CompositeReportSink(*sinks)

    state.matcher = IntentMatcher(state.catalog, state.provider, embedding_timeout=config.ai_request_timeout)
    state.detection = IntentDetectionService(
        state.matcher,
        min_confidence=config.intent_min_confidence,
        top_k=config.intent_top_k,
    )
    state.engine = WorkflowEngine(
        state.nodes,
        state.workflows,
        NodeExecutor(state.transforms, provider=state.provider, default_timeout=config.node_timeout),
        run_timeout=config.run_timeout,
        max_concurrent_nodes=config.max_concurrent_nodes,
    )
    state.orchestrator = CognitiveOrchestrator(state.detection, state.engine, sink=sink)
    state.health_checker = setup_health_checks(state, config)

    logger.info("Core components initialized")
    return state


def setup_health_checks(state: ApplicationState, config: AppConfig) -> HealthChecker:
    """Register component health checks."""
    health_checker = HealthChecker()

    def check_database():
        with state.db_engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"message": "Database connection successful"}

    def check_registries():
        return {
            "message": "Registries operational",
            "nodes": len(state.nodes),
            "workflows": len(state.workflows),
        }

    def check_intent_catalog():
        if len(state.catalog) == 0:
            raise RuntimeError("Intent catalog is empty")
        return {"message": "Intent catalog loaded", "intents": len(state.catalog)}

    health_checker.register_check("database", check_database, timeout=config.health_check_timeout)
    health_checker.register_check("registries", check_registries, timeout=config.health_check_timeout)
    health_checker.register_check("intent_catalog", check_intent_catalog, timeout=config.health_check_timeout)
    return health_checker


def create_lifespan_handler(config: AppConfig, state: ApplicationState):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        if config.reload_catalog_on_startup:
            reload_catalog(state.store, state.nodes, state.workflows, state.catalog)
        if len(state.catalog):
            usage = await state.matcher.prepare()
            logger.info(f"Embedded intent reference utterances ({usage.total_tokens} tokens)")

        init_dependencies(
            orchestrator=state.orchestrator,
            nodes=state.nodes,
            workflows=state.workflows,
            catalog=state.catalog,
            store=state.store,
            health_checker=state.health_checker,
        )
        logger.info("Application startup completed successfully")

        yield

        logger.info(f"Shutting down {config.app_name}")
        if isinstance(state.provider, HttpAIProvider):
            await state.provider.aclose()

    return lifespan


def create_app(config: Optional[AppConfig] = None, state: Optional[ApplicationState] = None) -> FastAPI:
    """Create and configure a FastAPI application instance."""
    if config is None:
        config = get_config()

    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.log_structured,
        max_size=config.log_max_size,
        backup_count=config.log_backup_count
    )

    if state is None:
        validate_config(config)
        state = build_components(config)

    app = FastAPI(
        title=config.app_name,
        description="Routes natural-language requests to workflows and runs them as node graphs",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, state)
    )
    app.state.components = state

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)

    app.add_middleware(ErrorHandlingMiddleware)
    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint for basic liveness."""
        return {
            "message": f"{config.app_name} is running",
            "version": config.app_version,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app
