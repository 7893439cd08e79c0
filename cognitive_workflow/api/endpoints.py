"""FastAPI REST endpoints for the cognitive workflow engine."""

from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.error_recovery import HealthChecker
from ..core.exceptions import (
    EmbeddingUnavailableError,
    WorkflowEngineError,
    create_error_response,
    http_status_for,
)
from ..core.intent_catalog import IntentCatalog
from ..core.logging import get_logger
from ..core.orchestrator import CognitiveOrchestrator, RouteResult
from ..core.registry import NodesRegistry, WorkflowsRegistry
from ..models.core import InstanceKind, NodeStatus, RouteOutcome, TokenUsage
from ..models.observability import ObservabilityReport
from ..storage.catalog_store import CatalogStore, reload_catalog

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["cognitive-workflow"])

# Global instances (initialized by the application factory)
_orchestrator: Optional[CognitiveOrchestrator] = None
_nodes: Optional[NodesRegistry] = None
_workflows: Optional[WorkflowsRegistry] = None
_catalog: Optional[IntentCatalog] = None
_store: Optional[CatalogStore] = None
_health_checker: Optional[HealthChecker] = None


def init_dependencies(
    orchestrator: CognitiveOrchestrator,
    nodes: NodesRegistry,
    workflows: WorkflowsRegistry,
    catalog: IntentCatalog,
    store: Optional[CatalogStore] = None,
    health_checker: Optional[HealthChecker] = None,
):
    """Initialize the global dependencies."""
    global _orchestrator, _nodes, _workflows, _catalog, _store, _health_checker
    _orchestrator = orchestrator
    _nodes = nodes
    _workflows = workflows
    _catalog = catalog
    _store = store
    _health_checker = health_checker


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_orchestrator() -> CognitiveOrchestrator:
    return _require(_orchestrator, "Orchestrator")


def get_nodes_registry() -> NodesRegistry:
    return _require(_nodes, "Nodes registry")


def get_workflows_registry() -> WorkflowsRegistry:
    return _require(_workflows, "Workflows registry")


def get_intent_catalog() -> IntentCatalog:
    return _require(_catalog, "Intent catalog")


def get_catalog_store() -> CatalogStore:
    return _require(_store, "Catalog store")


def get_health_checker() -> HealthChecker:
    return _require(_health_checker, "Health checker")


# Request/Response models
class RouteRequest(BaseModel):
    """Request model for routing a free-text request."""
    text: str = Field(..., description="Natural-language request")
    input: Dict[str, Any] = Field(default_factory=dict, description="Extra input for the workflow's root nodes")
    timeout: Optional[float] = Field(None, gt=0, description="Run timeout in seconds")
    include_report: bool = Field(default=False, description="Return the full observability report")


class RouteResponse(BaseModel):
    """Response model for a routed request."""
    request_id: str
    outcome: RouteOutcome
    intent_id: Optional[str] = None
    score: Optional[float] = None
    workflow_id: Optional[str] = None
    run_id: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    node_statuses: Dict[str, NodeStatus] = Field(default_factory=dict)
    token_usage: TokenUsage
    error: Optional[Dict[str, Any]] = None
    report: Optional[ObservabilityReport] = None

    @classmethod
    def from_result(cls, result: RouteResult, include_report: bool = False) -> "RouteResponse":
        workflow_result = result.workflow_result
        return cls(
            request_id=result.request_id,
            outcome=result.outcome,
            intent_id=result.detection.intent.id if result.detection.intent else None,
            score=result.detection.score,
            workflow_id=result.detection.workflow_id,
            run_id=workflow_result.run_id if workflow_result else None,
            output=result.output,
            node_statuses={
                node_id: node.status for node_id, node in workflow_result.node_results.items()
            } if workflow_result else {},
            token_usage=result.token_usage,
            error=result.error,
            report=result.report if include_report else None,
        )


class InstanceSummary(BaseModel):
    id: str
    version: str
    kind: InstanceKind
    enabled: bool
    active: bool
    description: str = ""


class IntentSummary(BaseModel):
    id: str
    label: str
    description: str = ""
    workflow_id: str
    workflow_version: Optional[str] = None
    utterance_count: int


class ReloadResponse(BaseModel):
    message: str
    counts: Dict[str, int]


def _error_response(e: WorkflowEngineError) -> JSONResponse:
    return JSONResponse(status_code=http_status_for(e), content=create_error_response(e))


# Endpoints

@router.post(
    "/route",
    response_model=RouteResponse,
    summary="Route a request to a workflow and run it",
    description="Detect the intent of the request text, run the matching workflow and return its outcome"
)
async def route_request(
    request: RouteRequest,
    orchestrator: CognitiveOrchestrator = Depends(get_orchestrator)
):
    """
    Route and run a natural-language request.

    A request without a confident intent returns outcome ``no_match`` with
    status 200. An unreachable embedding capability returns 503.
    """
    try:
        result = await orchestrator.route_and_run(request.text, extra_input=request.input, timeout=request.timeout)
    except EmbeddingUnavailableError as e:
        logger.warning(f"Embedding capability unavailable: {e.message}")
        return _error_response(e)
    except WorkflowEngineError as e:
        logger.warning(f"Workflow engine error during routing: {str(e)}")
        return _error_response(e)

    logger.info(f"Request {result.request_id} finished with outcome {result.outcome.value}")
    return RouteResponse.from_result(result, include_report=request.include_report)


@router.get(
    "/instances",
    response_model=List[InstanceSummary],
    summary="List registered instances",
    description="List node and workflow instances, optionally filtered by kind or enabled state"
)
async def list_instances(
    kind: Optional[InstanceKind] = Query(None, description="Only list this kind"),
    enabled_only: bool = Query(False, description="Only list enabled versions"),
    nodes: NodesRegistry = Depends(get_nodes_registry),
    workflows: WorkflowsRegistry = Depends(get_workflows_registry),
) -> List[InstanceSummary]:
    registries = [nodes, workflows] if kind is None else [nodes if kind == InstanceKind.NODE else workflows]
    summaries = []
    for registry in registries:
        for definition in registry.list(enabled_only=enabled_only):
            summaries.append(InstanceSummary(
                id=definition.id,
                version=definition.version,
                kind=definition.kind,
                enabled=definition.enabled,
                active=registry.active_version(definition.id) == definition.version,
                description=definition.description,
            ))
    return summaries


@router.get(
    "/instances/{kind}/{instance_id}",
    summary="Resolve one instance",
    description="Return the full definition; without a version the active or latest enabled one"
)
async def get_instance(
    kind: InstanceKind,
    instance_id: str,
    version: Optional[str] = Query(None, description="Exact version"),
    nodes: NodesRegistry = Depends(get_nodes_registry),
    workflows: WorkflowsRegistry = Depends(get_workflows_registry),
):
    registry = nodes if kind == InstanceKind.NODE else workflows
    try:
        definition = registry.resolve(instance_id, version)
    except WorkflowEngineError as e:
        return _error_response(e)
    return definition.model_dump(mode="json")


@router.get(
    "/intents",
    response_model=List[IntentSummary],
    summary="List intents",
    description="List the intents of the current catalog snapshot"
)
async def list_intents(catalog: IntentCatalog = Depends(get_intent_catalog)) -> List[IntentSummary]:
    return [
        IntentSummary(
            id=intent.id,
            label=intent.label,
            description=intent.description,
            workflow_id=intent.workflow_id,
            workflow_version=intent.workflow_version,
            utterance_count=len(intent.utterances),
        )
        for intent in catalog
    ]


@router.post(
    "/catalog/reload",
    response_model=ReloadResponse,
    summary="Reload the catalog",
    description="Replace registries and intents with the contents of the catalog store"
)
async def reload_catalog_endpoint(
    store: CatalogStore = Depends(get_catalog_store),
    nodes: NodesRegistry = Depends(get_nodes_registry),
    workflows: WorkflowsRegistry = Depends(get_workflows_registry),
    catalog: IntentCatalog = Depends(get_intent_catalog),
):
    try:
        counts = reload_catalog(store, nodes, workflows, catalog)
    except WorkflowEngineError as e:
        logger.error(f"Catalog reload failed: {str(e)}")
        return _error_response(e)
    return ReloadResponse(message="Catalog reloaded", counts=counts)


@router.get(
    "/reports/{report_id}",
    response_model=ObservabilityReport,
    summary="Get a stored report tree"
)
async def get_report(report_id: str, store: CatalogStore = Depends(get_catalog_store)):
    try:
        report = store.load_report(report_id)
    except WorkflowEngineError as e:
        return _error_response(e)
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "ReportNotFound", "message": f"Report '{report_id}' not found"}
        )
    return report


@router.get(
    "/health",
    summary="Component health",
    description="Run all registered health checks"
)
async def health(health_checker: HealthChecker = Depends(get_health_checker)):
    results = await health_checker.run_all_checks()
    status_code = 200 if results["overall_status"] == "healthy" else 503
    return JSONResponse(status_code=status_code, content=results)
