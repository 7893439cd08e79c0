"""Core cognitive workflow components."""

from .exceptions import (
    WorkflowEngineError,
    NotFoundError,
    ConflictError,
    GraphValidationError,
    SchemaMismatchError,
    ProviderError,
    EmbeddingUnavailableError,
    ExecutionTimeoutError,
    ExecutionError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .registry import InstancesRegistry, NodesRegistry, WorkflowsRegistry
from .ai_provider import AIProvider, HttpAIProvider, HashingEmbeddingProvider
from .intent_catalog import IntentCatalog, IntentMatcher
from .intent_detection import IntentDetectionService
from .transform_registry import TransformRegistry
from .node_executor import NodeExecutor
from .observability import ReportBuilder, ReportSink, LoggingReportSink, InMemoryReportSink, CompositeReportSink
from .workflow_engine import WorkflowEngine
from .orchestrator import CognitiveOrchestrator, RouteResult

__all__ = [
    "WorkflowEngineError",
    "NotFoundError",
    "ConflictError",
    "GraphValidationError",
    "SchemaMismatchError",
    "ProviderError",
    "EmbeddingUnavailableError",
    "ExecutionTimeoutError",
    "ExecutionError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "InstancesRegistry",
    "NodesRegistry",
    "WorkflowsRegistry",
    "AIProvider",
    "HttpAIProvider",
    "HashingEmbeddingProvider",
    "IntentCatalog",
    "IntentMatcher",
    "IntentDetectionService",
    "TransformRegistry",
    "NodeExecutor",
    "ReportBuilder",
    "ReportSink",
    "LoggingReportSink",
    "InMemoryReportSink",
    "CompositeReportSink",
    "WorkflowEngine",
    "CognitiveOrchestrator",
    "RouteResult",
]
