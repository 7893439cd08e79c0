"""Pytest configuration and fixtures."""

import asyncio
import re
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from cognitive_workflow.core.ai_provider import CompletionResponse, EmbeddingResponse
from cognitive_workflow.core.exceptions import ProviderError
from cognitive_workflow.core.intent_catalog import IntentCatalog, IntentMatcher
from cognitive_workflow.core.node_executor import NodeExecutor
from cognitive_workflow.core.observability import InMemoryReportSink
from cognitive_workflow.core.registry import NodesRegistry, WorkflowsRegistry
from cognitive_workflow.core.transform_registry import TransformRegistry
from cognitive_workflow.core.workflow_engine import WorkflowEngine
from cognitive_workflow.models.core import (
    EdgeDefinition,
    NodeInstance,
    NodeReference,
    RetryPolicy,
    ShapeType,
    TransformCapability,
    TokenUsage,
    WorkflowInstance,
)
from cognitive_workflow.storage.catalog_store import CatalogStore
from cognitive_workflow.storage.database import build_engine, create_tables, get_session_factory
from cognitive_workflow.transforms import register_builtin_transforms

_WORD = re.compile(r"[a-z0-9']+")


class KeywordEmbeddingProvider:
    """Deterministic provider for tests.

    Every distinct word gets its own axis, so cosine similarity is word
    overlap. Completions come from ``completions`` (a callable or a fixed
    string) and can be delayed or made to fail.
    """

    def __init__(self, dim: int = 128):
        self.dim = dim
        self.vocabulary: Dict[str, int] = {}
        self.embed_calls: List[str] = []
        self.complete_calls: List[Dict[str, Any]] = []
        self.embed_error: Optional[Exception] = None
        self.completions: Union[str, Callable[[str], Any]] = "ok"
        self.completion_delay: float = 0.0
        self.completion_errors: List[Exception] = []

    def vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dim
        for word in _WORD.findall(text.lower()):
            index = self.vocabulary.setdefault(word, len(self.vocabulary))
            vector[index % self.dim] += 1.0
        return vector

    async def embed(self, text: str) -> EmbeddingResponse:
        self.embed_calls.append(text)
        if self.embed_error is not None:
            raise self.embed_error
        return EmbeddingResponse(
            vector=self.vector(text),
            token_usage=TokenUsage(prompt_tokens=len(text.split())),
        )

    async def complete(self, prompt: str, context: Optional[Dict[str, Any]] = None,
                       model: Optional[str] = None) -> CompletionResponse:
        self.complete_calls.append({"prompt": prompt, "context": context or {}, "model": model})
        if self.completion_delay:
            await asyncio.sleep(self.completion_delay)
        if self.completion_errors:
            raise self.completion_errors.pop(0)
        value = self.completions(prompt) if callable(self.completions) else self.completions
        return CompletionResponse(
            value=value,
            token_usage=TokenUsage(prompt_tokens=len(prompt.split()), completion_tokens=3),
        )


def transform_node(node_id: str, function_name: str, input_shape: Optional[Dict[str, ShapeType]] = None,
                   output_shape: Optional[Dict[str, ShapeType]] = None, version: str = "1.0.0",
                   retry: Optional[RetryPolicy] = None, description: str = "", **parameters) -> NodeInstance:
    """Build a transform node; extra keyword arguments become transform parameters."""
    return NodeInstance(
        id=node_id,
        version=version,
        description=description,
        input_shape=input_shape or {},
        output_shape=output_shape or {},
        capability=TransformCapability(function_name=function_name, parameters=parameters),
        retry=retry or RetryPolicy(),
    )


def workflow(workflow_id: str, node_ids: List[str], edges: Optional[List[tuple]] = None,
             output_node: Optional[str] = None, version: str = "1.0.0", **kwargs) -> WorkflowInstance:
    """Build a workflow from node ids and ``(from, to)`` or ``(from, to, {edge fields})`` tuples."""
    edge_definitions = []
    for edge in edges or []:
        extra = edge[2] if len(edge) > 2 else {}
        edge_definitions.append(EdgeDefinition(from_node=edge[0], to_node=edge[1], **extra))
    return WorkflowInstance(
        id=workflow_id,
        version=version,
        nodes=[NodeReference(node_id=node_id) for node_id in node_ids],
        edges=edge_definitions,
        output_node=output_node,
        **kwargs
    )


@pytest.fixture
def provider():
    """Keyword embedding provider."""
    return KeywordEmbeddingProvider()


@pytest.fixture
def transforms():
    """Transform registry with the built-in transforms."""
    registry = TransformRegistry()
    register_builtin_transforms(registry)
    return registry


@pytest.fixture
def nodes_registry():
    return NodesRegistry()


@pytest.fixture
def workflows_registry():
    return WorkflowsRegistry()


@pytest.fixture
def intent_catalog():
    return IntentCatalog()


@pytest.fixture
def matcher(intent_catalog, provider):
    return IntentMatcher(intent_catalog, provider)


@pytest.fixture
def report_sink():
    return InMemoryReportSink()


@pytest.fixture
def executor(transforms, provider):
    """Node executor backed by the test provider."""
    return NodeExecutor(transforms, provider=provider, default_timeout=5.0)


@pytest.fixture
def engine(nodes_registry, workflows_registry, executor, report_sink):
    """Workflow engine emitting to the in-memory sink."""
    return WorkflowEngine(nodes_registry, workflows_registry, executor, run_timeout=10.0, sink=report_sink)


@pytest.fixture
def db_engine():
    """In-memory SQLite database with all tables created."""
    engine = build_engine("sqlite:///:memory:")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def catalog_store(db_engine):
    return CatalogStore(get_session_factory(db_engine))
