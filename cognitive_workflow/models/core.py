"""Core Pydantic models for the cognitive workflow engine."""

import re
from datetime import timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field, field_validator, model_validator


_VERSION_PATTERN = re.compile(r'^(\d+)\.(\d+)\.(\d+)$')
_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.-]+$')


def version_key(version: str) -> Tuple[int, int, int]:
    """Sortable key for a ``MAJOR.MINOR.PATCH`` version string."""
    match = _VERSION_PATTERN.match(version)
    if not match:
        raise ValueError(f"Invalid semantic version: {version!r}")
    return tuple(int(part) for part in match.groups())


def _validate_identifier(value: str, what: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{what} cannot be empty")
    value = value.strip()
    if not _ID_PATTERN.match(value):
        raise ValueError(f"{what} must contain only alphanumeric characters, dots, underscores, and hyphens")
    return value


class InstanceKind(str, Enum):
    """Closed set of instance kinds held by the registries."""
    NODE = "node"
    WORKFLOW = "workflow"


class ShapeType(str, Enum):
    """Field types usable in node input/output shapes."""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    ANY = "any"


class NodeStatus(str, Enum):
    """Per-node state within a workflow run."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class WorkflowRunStatus(str, Enum):
    """Overall status of a workflow run."""
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RouteOutcome(str, Enum):
    """Outcome of routing a request and running the selected workflow."""
    NO_MATCH = "no_match"
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TokenUsage(BaseModel):
    """AI consumption attributable to one stage."""
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(default=0, ge=0, description="Tokens sent to the provider")
    completion_tokens: int = Field(default=0, ge=0, description="Tokens generated by the provider")

    @computed_field
    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )

    @classmethod
    def zero(cls) -> "TokenUsage":
        return cls()


class RetryPolicy(BaseModel):
    """Retry policy the workflow engine applies to transient node failures."""
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=1, ge=1, description="Total attempts including the first")
    backoff_seconds: float = Field(default=0.0, ge=0.0, description="Base delay between attempts")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff factor")


class AICallCapability(BaseModel):
    """Node capability delegating to the AI provider's completion call."""
    model_config = ConfigDict(frozen=True)

    type: Literal["ai_call"] = "ai_call"
    prompt_template: str = Field(..., description="Prompt rendered with str.format(**input)")
    system_prompt: Optional[str] = Field(None, description="Optional system instruction")
    output_field: str = Field(default="text", description="Output field receiving the completion")
    parse_json: bool = Field(default=False, description="Parse the completion as a JSON object")
    model: Optional[str] = Field(None, description="Provider model override")
    timeout_seconds: Optional[float] = Field(None, description="Per-call timeout in seconds")

    @field_validator('prompt_template')
    @classmethod
    def validate_prompt_template(cls, template):
        if not template or not template.strip():
            raise ValueError("Prompt template cannot be empty")
        return template

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, timeout):
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be positive")
        return timeout


class TransformCapability(BaseModel):
    """Node capability calling a deterministic function from the transform registry."""
    model_config = ConfigDict(frozen=True)

    type: Literal["transform"] = "transform"
    function_name: str = Field(..., description="Name of the registered transform")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Keyword parameters for the transform")

    @field_validator('function_name')
    @classmethod
    def validate_function_name(cls, function_name):
        if not function_name or not function_name.strip():
            raise ValueError("Function name cannot be empty")
        return function_name.strip()


Capability = Annotated[Union[AICallCapability, TransformCapability], Field(discriminator="type")]


class InstanceDefinition(BaseModel):
    """Common envelope of every registry instance."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Logical identifier")
    version: str = Field(default="1.0.0", description="Semantic version MAJOR.MINOR.PATCH")
    kind: InstanceKind = Field(..., description="Instance kind discriminator")
    enabled: bool = Field(default=True, description="Whether the instance is runnable")
    description: str = Field(default="", description="Human readable description")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        return _validate_identifier(id_value, "Instance ID")

    @field_validator('version')
    @classmethod
    def validate_version(cls, version):
        version_key(version)
        return version

    @property
    def key(self) -> Tuple[str, str]:
        return self.id, self.version


class NodeInstance(InstanceDefinition):
    """One executable step: declared shapes plus the capability it delegates to."""
    kind: Literal[InstanceKind.NODE] = InstanceKind.NODE
    input_shape: Dict[str, ShapeType] = Field(default_factory=dict, description="Expected input fields")
    output_shape: Dict[str, ShapeType] = Field(default_factory=dict, description="Produced output fields")
    capability: Capability = Field(..., description="AI call or deterministic transform")
    retry: RetryPolicy = Field(default_factory=RetryPolicy, description="Retry policy for transient failures")

    @model_validator(mode='after')
    def validate_ai_output_field(self):
        if isinstance(self.capability, AICallCapability) and not self.capability.parse_json and self.output_shape:
            if self.capability.output_field not in self.output_shape:
                raise ValueError(
                    f"AI output field '{self.capability.output_field}' is not declared in the output shape"
                )
        return self


class NodeReference(BaseModel):
    """Reference from a workflow to a node instance; no version means late binding."""
    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., description="Referenced node instance id")
    node_version: Optional[str] = Field(None, description="Pinned version, or None for the active one")

    @field_validator('node_id')
    @classmethod
    def validate_node_id(cls, node_id):
        return _validate_identifier(node_id, "Node ID")

    @field_validator('node_version')
    @classmethod
    def validate_node_version(cls, node_version):
        if node_version is not None:
            version_key(node_version)
        return node_version


class EdgeDefinition(BaseModel):
    """Data dependency between two nodes of a workflow, optionally gated."""
    model_config = ConfigDict(frozen=True)

    from_node: str = Field(..., description="Upstream node ID")
    to_node: str = Field(..., description="Downstream node ID")
    condition: Optional[str] = Field(None, description="Gating predicate evaluated on computed outputs")
    mapping: Dict[str, str] = Field(
        default_factory=dict,
        description="Upstream output field -> downstream input field; empty passes every field through"
    )

    @field_validator('from_node', 'to_node')
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @model_validator(mode='after')
    def validate_edge(self):
        if self.from_node == self.to_node:
            raise ValueError("Self-referencing edges are not allowed")
        return self


class WorkflowInstance(InstanceDefinition):
    """Directed acyclic graph of node references."""
    kind: Literal[InstanceKind.WORKFLOW] = InstanceKind.WORKFLOW
    nodes: List[NodeReference] = Field(..., description="Node references in declaration order")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Data dependency edges")
    output_node: Optional[str] = Field(None, description="Node whose output is the workflow output")

    @model_validator(mode='after')
    def validate_graph_structure(self):
        if not self.nodes:
            raise ValueError("Workflow must contain at least one node")

        node_ids = [ref.node_id for ref in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")

        declared = set(node_ids)
        for edge in self.edges:
            if edge.from_node not in declared:
                raise ValueError(f"Edge references non-existent source node: {edge.from_node}")
            if edge.to_node not in declared:
                raise ValueError(f"Edge references non-existent target node: {edge.to_node}")

        if self.output_node is not None and self.output_node not in declared:
            raise ValueError(f"Output node '{self.output_node}' does not exist in nodes")

        # raises on cycles
        self.topological_order()
        return self

    @property
    def node_ids(self) -> List[str]:
        return [ref.node_id for ref in self.nodes]

    @property
    def terminal_node(self) -> str:
        """The designated output node, or the last declared sink."""
        if self.output_node:
            return self.output_node
        sources = {edge.from_node for edge in self.edges}
        sinks = [node_id for node_id in self.node_ids if node_id not in sources]
        return sinks[-1]

    def reference(self, node_id: str) -> NodeReference:
        for ref in self.nodes:
            if ref.node_id == node_id:
                return ref
        raise KeyError(node_id)

    def incoming_edges(self, node_id: str) -> List[EdgeDefinition]:
        return [edge for edge in self.edges if edge.to_node == node_id]

    def upstream(self, node_id: str) -> List[str]:
        seen: List[str] = []
        for edge in self.incoming_edges(node_id):
            if edge.from_node not in seen:
                seen.append(edge.from_node)
        return seen

    def downstream(self, node_id: str) -> List[str]:
        seen: List[str] = []
        for edge in self.edges:
            if edge.from_node == node_id and edge.to_node not in seen:
                seen.append(edge.to_node)
        return seen

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ties resolved by declaration order."""
        declared = self.node_ids
        position = {node_id: index for index, node_id in enumerate(declared)}
        remaining = {node_id: len(self.upstream(node_id)) for node_id in declared}

        order: List[str] = []
        ready = [node_id for node_id in declared if remaining[node_id] == 0]
        while ready:
            ready.sort(key=position.__getitem__)
            current = ready.pop(0)
            order.append(current)
            for child in self.downstream(current):
                remaining[child] -= 1
                if remaining[child] == 0:
                    ready.append(child)

        if len(order) != len(declared):
            cyclic = sorted(node_id for node_id in declared if node_id not in order)
            raise ValueError(f"Workflow graph contains a cycle through: {', '.join(cyclic)}")
        return order


AnyInstance = Annotated[Union[NodeInstance, WorkflowInstance], Field(discriminator="kind")]
instance_adapter: TypeAdapter = TypeAdapter(AnyInstance)


def parse_instance(record: Dict[str, Any]) -> InstanceDefinition:
    """Build the right instance model from a catalog record using its ``kind``."""
    return instance_adapter.validate_python(record)


class IntentDefinition(BaseModel):
    """Labeled category of requests bound to a workflow."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Intent identifier")
    label: str = Field(..., description="Human readable label")
    description: str = Field(default="", description="What the intent covers")
    utterances: List[str] = Field(default_factory=list, description="Reference utterances")
    embeddings: List[List[float]] = Field(default_factory=list, description="Precomputed reference embeddings")
    workflow_id: str = Field(..., description="Workflow this intent routes to")
    workflow_version: Optional[str] = Field(None, description="Pinned workflow version")

    @field_validator('id', 'workflow_id')
    @classmethod
    def validate_ids(cls, value):
        return _validate_identifier(value, "Identifier")

    @model_validator(mode='after')
    def validate_references(self):
        if not self.utterances and not self.embeddings:
            raise ValueError(f"Intent '{self.id}' needs at least one reference utterance or embedding")
        return self


class IntentMatch(BaseModel):
    """One scored candidate returned by the matcher."""
    model_config = ConfigDict(frozen=True)

    intent: IntentDefinition
    score: float = Field(..., ge=0.0, le=1.0)


class NodeOutput(BaseModel):
    """Successful output of one node execution."""
    model_config = ConfigDict(frozen=True)

    value: Dict[str, Any] = Field(default_factory=dict)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class NodeResult(BaseModel):
    """Final record of one node within a workflow run."""
    node_id: str
    node_version: Optional[str] = None
    status: NodeStatus = NodeStatus.PENDING
    output: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    reason: Optional[str] = Field(None, description="Why a node was skipped or failed without running")
    attempts: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    duration: timedelta = timedelta(0)


class WorkflowResult(BaseModel):
    """Aggregated result of one workflow run, partial results included."""
    run_id: str
    workflow_id: str
    workflow_version: str
    status: WorkflowRunStatus
    output: Optional[Dict[str, Any]] = None
    node_results: Dict[str, NodeResult] = Field(default_factory=dict)
    execution_order: List[str] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    error: Optional[Dict[str, Any]] = None

    def nodes_with_status(self, status: NodeStatus) -> List[str]:
        return [node_id for node_id, result in self.node_results.items() if result.status == status]

    @property
    def failed_nodes(self) -> List[str]:
        return self.nodes_with_status(NodeStatus.FAILED)

    @property
    def succeeded_nodes(self) -> List[str]:
        return self.nodes_with_status(NodeStatus.SUCCEEDED)


class IntentDetectionResult(BaseModel):
    """Routing decision: either a confident intent or a no-match outcome."""
    request_text: str
    matched: bool
    intent: Optional[IntentDefinition] = None
    score: Optional[float] = None
    workflow_id: Optional[str] = None
    workflow_version: Optional[str] = None
    threshold: float
    candidates: List[IntentMatch] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def no_confident_match(self) -> bool:
        return not self.matched
