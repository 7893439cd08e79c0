"""Observability report models.

A report is one envelope with a payload discriminated by ``stage``. Reports
compose into a tree that mirrors the call graph of a request:

    route_and_run
    ├── intent_detection
    └── workflow_execution
        ├── node_execution (topological order)
        └── ...

Reports are frozen; they are built with ``ReportBuilder`` and only exist in
this form once finalized.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Dict, Iterator, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

from .core import NodeStatus, RouteOutcome, TokenUsage, WorkflowRunStatus


class StageKind(str, Enum):
    """Stages that produce a report."""
    INTENT_DETECTION = "intent_detection"
    NODE_EXECUTION = "node_execution"
    WORKFLOW_EXECUTION = "workflow_execution"
    ROUTE_AND_RUN = "route_and_run"


class SimilarIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent_id: str
    label: str
    workflow_id: str
    score: float


class IntentDetectionPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: Literal[StageKind.INTENT_DETECTION] = StageKind.INTENT_DETECTION
    input_request: str = ""
    matched: bool = False
    intent_id: Optional[str] = None
    workflow_id: Optional[str] = None
    score: Optional[float] = None
    threshold: Optional[float] = None
    similar_intents: List[SimilarIntent] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class NodeExecutionPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: Literal[StageKind.NODE_EXECUTION] = StageKind.NODE_EXECUTION
    node_id: str = ""
    node_version: Optional[str] = None
    capability: Optional[str] = None
    status: NodeStatus = NodeStatus.PENDING
    attempts: int = 0
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class WorkflowExecutionPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: Literal[StageKind.WORKFLOW_EXECUTION] = StageKind.WORKFLOW_EXECUTION
    run_id: str = ""
    workflow_id: str = ""
    workflow_version: Optional[str] = None
    status: Optional[WorkflowRunStatus] = None
    execution_order: List[str] = Field(default_factory=list)
    node_statuses: Dict[str, NodeStatus] = Field(default_factory=dict)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class RouteAndRunPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: Literal[StageKind.ROUTE_AND_RUN] = StageKind.ROUTE_AND_RUN
    request_text: str = ""
    outcome: Optional[RouteOutcome] = None
    workflow_id: Optional[str] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


ReportPayload = Annotated[
    Union[IntentDetectionPayload, NodeExecutionPayload, WorkflowExecutionPayload, RouteAndRunPayload],
    Field(discriminator="stage"),
]

PAYLOAD_TYPES = {
    StageKind.INTENT_DETECTION: IntentDetectionPayload,
    StageKind.NODE_EXECUTION: NodeExecutionPayload,
    StageKind.WORKFLOW_EXECUTION: WorkflowExecutionPayload,
    StageKind.ROUTE_AND_RUN: RouteAndRunPayload,
}


class ObservabilityReport(BaseModel):
    """Finalized trace of one stage plus its finalized sub-stages."""
    model_config = ConfigDict(frozen=True)

    report_id: str = Field(..., description="Unique report identifier")
    parent_id: Optional[str] = Field(None, description="Composing report, if any")
    name: str = Field(..., description="Human readable stage name")
    started_at: datetime = Field(..., description="Stage start timestamp (UTC)")
    duration: timedelta = Field(..., description="Wall-clock duration of the stage")
    success: bool = Field(..., description="Whether the stage completed successfully")
    error: Optional[Dict[str, Any]] = Field(None, description="Error details when the stage failed")
    payload: ReportPayload
    children: List["ObservabilityReport"] = Field(default_factory=list)

    @property
    def stage(self) -> StageKind:
        return self.payload.stage

    def walk(self) -> Iterator["ObservabilityReport"]:
        """Depth-first iteration over this report and its descendants."""
        yield self
        for child in self.children:
            yield from child.walk()

    def find(self, stage: StageKind) -> List["ObservabilityReport"]:
        return [report for report in self.walk() if report.stage == stage]


ObservabilityReport.model_rebuild()
