"""Data models for the cognitive workflow engine."""

from .core import (
    InstanceKind,
    ShapeType,
    NodeStatus,
    WorkflowRunStatus,
    RouteOutcome,
    TokenUsage,
    RetryPolicy,
    AICallCapability,
    TransformCapability,
    InstanceDefinition,
    NodeInstance,
    NodeReference,
    EdgeDefinition,
    WorkflowInstance,
    IntentDefinition,
    IntentMatch,
    NodeOutput,
    NodeResult,
    WorkflowResult,
    IntentDetectionResult,
    parse_instance,
    version_key,
)
from .observability import (
    StageKind,
    ObservabilityReport,
    IntentDetectionPayload,
    NodeExecutionPayload,
    WorkflowExecutionPayload,
    RouteAndRunPayload,
)

__all__ = [
    "InstanceKind",
    "ShapeType",
    "NodeStatus",
    "WorkflowRunStatus",
    "RouteOutcome",
    "TokenUsage",
    "RetryPolicy",
    "AICallCapability",
    "TransformCapability",
    "InstanceDefinition",
    "NodeInstance",
    "NodeReference",
    "EdgeDefinition",
    "WorkflowInstance",
    "IntentDefinition",
    "IntentMatch",
    "NodeOutput",
    "NodeResult",
    "WorkflowResult",
    "IntentDetectionResult",
    "parse_instance",
    "version_key",
    "StageKind",
    "ObservabilityReport",
    "IntentDetectionPayload",
    "NodeExecutionPayload",
    "WorkflowExecutionPayload",
    "RouteAndRunPayload",
]
