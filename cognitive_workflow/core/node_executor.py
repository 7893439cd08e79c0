"""Node instance executor: validate, dispatch to the capability, validate again."""

import asyncio
import inspect
import json
import threading
import time
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, StrictBool, StrictFloat, StrictInt, StrictStr, ValidationError, create_model

from ..models.core import AICallCapability, NodeInstance, NodeOutput, ShapeType, TokenUsage, TransformCapability
from .ai_provider import AIProvider
from .exceptions import (
    ConfigurationError,
    ExecutionError,
    ExecutionTimeoutError,
    SchemaMismatchError,
    WorkflowEngineError,
)
from .logging import get_logger
from .transform_registry import TransformRegistry

logger = get_logger(__name__)


_SHAPE_TYPES: Dict[ShapeType, Any] = {
    ShapeType.STRING: StrictStr,
    ShapeType.INTEGER: StrictInt,
    ShapeType.NUMBER: Union[StrictInt, StrictFloat],
    ShapeType.BOOLEAN: StrictBool,
    ShapeType.OBJECT: Dict[str, Any],
    ShapeType.ARRAY: list,
    ShapeType.ANY: Any,
}


@lru_cache(maxsize=512)
def _shape_model(name: str, shape: Tuple[Tuple[str, ShapeType], ...]) -> Type[BaseModel]:
    fields = {field: (_SHAPE_TYPES[shape_type], ...) for field, shape_type in shape}
    return create_model(name, __config__=ConfigDict(extra="allow"), **fields)


def shapes_compatible(produced: ShapeType, expected: ShapeType) -> bool:
    """Whether a produced field type can feed an expected field type."""
    if ShapeType.ANY in (produced, expected):
        return True
    if produced == expected:
        return True
    return produced == ShapeType.INTEGER and expected == ShapeType.NUMBER


def validate_shape(node: NodeInstance, data: Any, direction: str) -> Dict[str, Any]:
    """Validate ``data`` against the node's input or output shape.

    Raises:
        SchemaMismatchError: If ``data`` is not a mapping or violates the shape
    """
    shape = node.input_shape if direction == "input" else node.output_shape
    if not isinstance(data, dict):
        raise SchemaMismatchError(
            f"Node '{node.id}' {direction} must be an object, got {type(data).__name__}",
            node_id=node.id,
            direction=direction,
        )
    if not shape:
        return data

    model = _shape_model(f"{node.id}_{direction}".replace("-", "_").replace(".", "_"), tuple(sorted(shape.items())))
    try:
        model.model_validate(data)
    except ValidationError as e:
        violations = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
        raise SchemaMismatchError(
            f"Node '{node.id}' {direction} does not match its declared shape: {'; '.join(violations)}",
            node_id=node.id,
            direction=direction,
            violations=violations,
        )
    return data


class CapabilityBinding:
    """A node's capability, resolved once per node version."""

    capability_type = ""

    def __init__(self, node: NodeInstance):
        self.node = node

    async def invoke(self, data: Dict[str, Any]) -> Tuple[Any, TokenUsage]:
        raise NotImplementedError


class AICallBinding(CapabilityBinding):
    capability_type = "ai_call"

    def __init__(self, node: NodeInstance, provider: Optional[AIProvider], default_timeout: Optional[float]):
        super().__init__(node)
        self.capability: AICallCapability = node.capability
        self.provider = provider
        self.timeout = self.capability.timeout_seconds or default_timeout

    def render_prompt(self, data: Dict[str, Any]) -> str:
        try:
            return self.capability.prompt_template.format_map(data)
        except (KeyError, IndexError) as e:
            raise SchemaMismatchError(
                f"Prompt of node '{self.node.id}' references missing input field {e}",
                node_id=self.node.id,
                direction="input",
            )

    async def invoke(self, data: Dict[str, Any]) -> Tuple[Any, TokenUsage]:
        if self.provider is None:
            raise ConfigurationError(f"Node '{self.node.id}' needs an AI provider but none is configured",
                                     config_key="ai_provider")

        prompt = self.render_prompt(data)
        context: Dict[str, Any] = {}
        if self.capability.system_prompt:
            context["system_prompt"] = self.capability.system_prompt
        if self.capability.parse_json:
            context["response_format"] = "json"

        call = self.provider.complete(prompt, context=context, model=self.capability.model)
        try:
            if self.timeout:
                response = await asyncio.wait_for(call, timeout=self.timeout)
            else:
                response = await call
        except asyncio.TimeoutError:
            raise ExecutionTimeoutError(
                f"AI call of node '{self.node.id}' timed out after {self.timeout} seconds",
                node_id=self.node.id,
                timeout=self.timeout,
            )

        value = response.value
        if self.capability.parse_json:
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except json.JSONDecodeError as e:
                    raise SchemaMismatchError(
                        f"Node '{self.node.id}' expected a JSON completion: {e}",
                        node_id=self.node.id,
                        direction="output",
                    )
        else:
            value = {self.capability.output_field: value}
        return value, response.token_usage


class TransformBinding(CapabilityBinding):
    capability_type = "transform"

    def __init__(self, node: NodeInstance, function: Callable):
        super().__init__(node)
        self.capability: TransformCapability = node.capability
        self.function = function
        self.is_async = inspect.iscoroutinefunction(function)

    async def invoke(self, data: Dict[str, Any]) -> Tuple[Any, TokenUsage]:
        if self.is_async:
            value = await self.function(dict(data), **self.capability.parameters)
        else:
            value = await asyncio.to_thread(self.function, dict(data), **self.capability.parameters)
        return value, TokenUsage.zero()


class NodeExecutor:
    """Executes a single node instance.

    No retries happen here: timeouts and provider failures are raised to the
    workflow engine, which decides whether a retry is safe.
    """

    def __init__(
        self,
        transforms: TransformRegistry,
        provider: Optional[AIProvider] = None,
        default_timeout: Optional[float] = None,
    ):
        self.transforms = transforms
        self.provider = provider
        self.default_timeout = default_timeout
        self._bindings: Dict[Tuple[str, str], CapabilityBinding] = {}
        self._bindings_lock = threading.Lock()

    def bind(self, node: NodeInstance) -> CapabilityBinding:
        """Resolve the node's capability once per (id, version) definition."""
        with self._bindings_lock:
            binding = self._bindings.get(node.key)
            if binding is not None and binding.node is node:
                return binding

            if isinstance(node.capability, AICallCapability):
                binding = AICallBinding(node, self.provider, self.default_timeout)
            elif isinstance(node.capability, TransformCapability):
                binding = TransformBinding(node, self.transforms.get_transform(node.capability.function_name))
            else:
                raise ConfigurationError(f"Unsupported capability on node '{node.id}'", config_key="capability")

            self._bindings[node.key] = binding
            return binding

    async def execute(self, node: NodeInstance, input_data: Dict[str, Any]) -> NodeOutput:
        """Run ``node`` on ``input_data``.

        Raises:
            SchemaMismatchError: Input or output violates the declared shape
            ExecutionTimeoutError: The AI call exceeded its timeout
            ExecutionError: The capability failed; ``cause`` holds the original error
        """
        started = time.perf_counter()
        data = validate_shape(node, input_data, "input")

        try:
            binding = self.bind(node)
            value, usage = await binding.invoke(data)
        except (SchemaMismatchError, ExecutionTimeoutError):
            raise
        except WorkflowEngineError as e:
            raise ExecutionError(
                f"Node '{node.id}' failed: {e.message}",
                node_id=node.id,
                cause=e,
                execution_time=time.perf_counter() - started,
            ) from e
        except Exception as e:
            raise ExecutionError(
                f"Node '{node.id}' failed: {e}",
                node_id=node.id,
                cause=e,
                execution_time=time.perf_counter() - started,
            ) from e

        output = validate_shape(node, value, "output")
        logger.debug(f"Node '{node.id}' v{node.version} completed in {time.perf_counter() - started:.3f}s")
        return NodeOutput(value=output, token_usage=usage)
