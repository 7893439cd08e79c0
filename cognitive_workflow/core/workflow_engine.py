"""Workflow execution engine: runs a workflow's node graph as concurrent asyncio tasks."""

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..models.core import (
    EdgeDefinition,
    NodeInstance,
    NodeResult,
    NodeStatus,
    TokenUsage,
    WorkflowInstance,
    WorkflowResult,
    WorkflowRunStatus,
)
from ..models.observability import StageKind
from .error_recovery import RetryConfig, retry_async
from .exceptions import GraphValidationError, NotFoundError, SchemaMismatchError, error_details
from .logging import get_logger, log_with_context, reset_logging_context, set_logging_context
from .node_executor import NodeExecutor, shapes_compatible
from .observability import ReportBuilder, ReportSink
from .registry import NodesRegistry, WorkflowsRegistry

logger = get_logger(__name__)


_CONDITION_BUILTINS = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
    'isinstance': isinstance,
    'min': min,
    'max': max,
    'abs': abs,
    'any': any,
    'all': all,
}


@dataclass
class ExecutionContext:
    """Scratch space of one workflow run. Owned by the engine invocation that created it."""
    run_id: str
    workflow: WorkflowInstance
    nodes: Dict[str, NodeInstance]
    order: List[str]
    initial_input: Dict[str, Any]
    builder: ReportBuilder
    cancel_event: asyncio.Event
    slots: Optional[asyncio.Semaphore] = None  # caps nodes running at once within this run
    results: Dict[str, NodeResult] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cancel_reason: Optional[str] = None

    @property
    def position(self) -> Dict[str, int]:
        return {node_id: index for index, node_id in enumerate(self.order)}


def check_edge_compatibility(workflow: WorkflowInstance, nodes: Dict[str, NodeInstance]) -> List[str]:
    """Static shape check of every edge of ``workflow`` against the resolved nodes.

    Only fields both sides declare are compared. A dependent node's required
    inputs are checked only when every upstream node declares its output shape.
    """
    violations: List[str] = []
    for node_id in workflow.node_ids:
        target = nodes[node_id]
        incoming = workflow.incoming_edges(node_id)
        if not incoming:
            continue

        provided: Dict[str, Any] = {}
        fully_declared = True
        for edge in incoming:
            source = nodes[edge.from_node]
            if not source.output_shape:
                fully_declared = False
                continue
            for source_field, target_field in _edge_fields(edge, source):
                produced = source.output_shape.get(source_field)
                if produced is None:
                    violations.append(
                        f"{edge.from_node} -> {node_id}: mapped field '{source_field}' is not produced by '{edge.from_node}'"
                    )
                    continue
                provided[target_field] = produced
                expected = target.input_shape.get(target_field)
                if expected is not None and not shapes_compatible(produced, expected):
                    violations.append(
                        f"{edge.from_node} -> {node_id}: field '{target_field}' is {produced.value}, "
                        f"expected {expected.value}"
                    )

        if fully_declared:
            for input_field in target.input_shape:
                if input_field not in provided:
                    violations.append(f"{node_id}: required input '{input_field}' is not produced upstream")
    return violations


def _edge_fields(edge: EdgeDefinition, source: NodeInstance):
    if edge.mapping:
        return list(edge.mapping.items())
    return [(name, name) for name in source.output_shape]


class WorkflowEngine:
    """Executes workflow instances resolved from the registries.

    Independent branches run concurrently; a node becomes ready only once all
    its upstream nodes are terminal. Node failures fail their transitive
    dependents without executing them, while unrelated branches continue.
    ``max_concurrent_nodes`` caps the nodes running at once within one run;
    every run gets its own limit.
    """

    def __init__(
        self,
        nodes: NodesRegistry,
        workflows: WorkflowsRegistry,
        executor: NodeExecutor,
        run_timeout: Optional[float] = None,
        max_concurrent_nodes: Optional[int] = None,
        sink: Optional[ReportSink] = None,
    ):
        self.nodes = nodes
        self.workflows = workflows
        self.executor = executor
        self.run_timeout = run_timeout
        self.sink = sink
        self.max_concurrent_nodes = max_concurrent_nodes

    def new_report(self, parent: Optional[ReportBuilder] = None) -> ReportBuilder:
        if parent is not None:
            return parent.child(StageKind.WORKFLOW_EXECUTION, "workflow_execution")
        return ReportBuilder(StageKind.WORKFLOW_EXECUTION, "workflow_execution")

    async def run(
        self,
        workflow_id: str,
        initial_input: Optional[Dict[str, Any]] = None,
        version: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> WorkflowResult:
        """Run a workflow and emit its report to the sink."""
        builder = self.new_report()
        try:
            return await self.execute(
                workflow_id, initial_input, builder,
                version=version, cancel_event=cancel_event, timeout=timeout,
            )
        finally:
            if self.sink is not None and builder.finalized:
                self.sink.emit(builder.report)

    async def execute(
        self,
        workflow_id: str,
        initial_input: Optional[Dict[str, Any]],
        builder: ReportBuilder,
        version: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> WorkflowResult:
        """Run a workflow, recording into ``builder``; the builder is always finalized.

        Raises:
            NotFoundError: The workflow or one of its nodes cannot be resolved
            SchemaMismatchError: Two connected nodes have incompatible shapes
            GraphValidationError: The graph is cyclic
        """
        run_id = str(uuid.uuid4())
        builder.update(run_id=run_id, workflow_id=workflow_id, workflow_version=version)
        token = set_logging_context(run_id=run_id, workflow_id=workflow_id)
        try:
            try:
                ctx = self._prepare(run_id, workflow_id, version, initial_input, builder, cancel_event)
            except Exception as e:
                logger.error(f"Cannot start workflow '{workflow_id}': {e}")
                builder.fail(e)
                builder.finalize()
                raise

            log_with_context(
                logger, logging.INFO,
                f"Starting workflow '{workflow_id}' v{ctx.workflow.version}",
                execution_order=ctx.order,
            )

            try:
                await self._schedule(ctx, timeout if timeout is not None else self.run_timeout)
            except asyncio.CancelledError:
                ctx.cancel_reason = "cancelled"
                result = self._build_result(ctx)
                self._finish_report(ctx, result)
                logger.warning(f"Workflow run {run_id} was cancelled by its caller")
                raise

            result = self._build_result(ctx)
            self._finish_report(ctx, result)
            log_with_context(
                logger, logging.INFO,
                f"Workflow '{workflow_id}' finished with status {result.status.value}",
                status=result.status.value,
                failed_nodes=result.failed_nodes,
                total_tokens=result.token_usage.total_tokens,
            )
            return result
        finally:
            reset_logging_context(token)

    def _prepare(
        self,
        run_id: str,
        workflow_id: str,
        version: Optional[str],
        initial_input: Optional[Dict[str, Any]],
        builder: ReportBuilder,
        cancel_event: Optional[asyncio.Event],
    ) -> ExecutionContext:
        workflow = self.workflows.resolve(workflow_id, version)
        if not workflow.enabled:
            raise NotFoundError(
                f"Workflow '{workflow_id}' version {workflow.version} is disabled",
                instance_id=workflow_id,
                version=workflow.version,
            )
        builder.update(workflow_version=workflow.version)

        # "latest" is resolved on every run
        nodes: Dict[str, NodeInstance] = {}
        for ref in workflow.nodes:
            try:
                node = self.nodes.resolve(ref.node_id, ref.node_version)
            except NotFoundError as e:
                raise e.add_context(workflow_id=workflow_id)
            if not node.enabled:
                raise NotFoundError(
                    f"Node '{ref.node_id}' version {node.version} is disabled",
                    instance_id=ref.node_id,
                    version=node.version,
                    context={"workflow_id": workflow_id},
                )
            nodes[ref.node_id] = node

        try:
            order = workflow.topological_order()
        except ValueError as e:
            raise GraphValidationError(str(e), validation_errors=[str(e)], workflow_id=workflow_id)

        violations = check_edge_compatibility(workflow, nodes)
        if violations:
            raise SchemaMismatchError(
                f"Workflow '{workflow_id}' connects incompatible nodes: {'; '.join(violations)}",
                direction="input",
                violations=violations,
                context={"workflow_id": workflow_id},
            )

        ctx = ExecutionContext(
            run_id=run_id,
            workflow=workflow,
            nodes=nodes,
            order=order,
            initial_input=dict(initial_input or {}),
            builder=builder,
            cancel_event=cancel_event or asyncio.Event(),
            slots=asyncio.Semaphore(self.max_concurrent_nodes) if self.max_concurrent_nodes else None,
        )
        for node_id in order:
            ctx.results[node_id] = NodeResult(node_id=node_id, node_version=nodes[node_id].version)
        return ctx

    async def _schedule(self, ctx: ExecutionContext, timeout: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None
        running: Dict[asyncio.Task, str] = {}
        cancel_waiter = asyncio.ensure_future(ctx.cancel_event.wait())

        try:
            while True:
                if ctx.cancel_event.is_set():
                    ctx.cancel_reason = "cancelled"
                    break
                if deadline is not None and loop.time() >= deadline:
                    ctx.cancel_reason = "timeout"
                    break

                self._start_ready_nodes(ctx, running)
                if not running:
                    break

                remaining = None if deadline is None else max(deadline - loop.time(), 0)
                done, _ = await asyncio.wait(
                    set(running) | {cancel_waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    if task is not cancel_waiter:
                        running.pop(task)
                        task.result()
        finally:
            cancel_waiter.cancel()
            if running:
                logger.warning(f"Cancelling {len(running)} in-flight node(s): {', '.join(running.values())}")
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)

    def _start_ready_nodes(self, ctx: ExecutionContext, running: Dict[asyncio.Task, str]) -> None:
        """Move every pending node whose upstream is terminal to a terminal state or a running task."""
        for node_id in ctx.order:
            result = ctx.results[node_id]
            if result.status != NodeStatus.PENDING:
                continue
            upstream = ctx.workflow.upstream(node_id)
            if not all(ctx.results[parent].status.is_terminal for parent in upstream):
                continue

            result.status = NodeStatus.READY
            failed = [parent for parent in upstream if ctx.results[parent].status == NodeStatus.FAILED]
            if failed:
                self._settle(ctx, node_id, NodeStatus.FAILED, f"upstream node '{failed[0]}' failed")
                continue
            skipped = [parent for parent in upstream if ctx.results[parent].status == NodeStatus.SKIPPED]
            if skipped:
                self._settle(ctx, node_id, NodeStatus.SKIPPED, f"upstream node '{skipped[0]}' was skipped")
                continue

            try:
                gate = self._first_closed_edge(ctx, node_id)
            except Exception as e:
                self._settle(ctx, node_id, NodeStatus.FAILED, f"edge condition could not be evaluated: {e}", error=e)
                continue
            if gate is not None:
                self._settle(
                    ctx, node_id, NodeStatus.SKIPPED,
                    f"condition '{gate.condition}' on edge {gate.from_node} -> {node_id} is false",
                )
                continue

            data = self._collect_input(ctx, node_id)
            task = asyncio.ensure_future(self._run_node(ctx, node_id, data))
            running[task] = node_id

    def _first_closed_edge(self, ctx: ExecutionContext, node_id: str) -> Optional[EdgeDefinition]:
        for edge in ctx.workflow.incoming_edges(node_id):
            if edge.condition and not self._evaluate_condition(edge.condition, edge.from_node, ctx):
                return edge
        return None

    def _evaluate_condition(self, condition: str, from_node: str, ctx: ExecutionContext) -> bool:
        """Evaluate a gating predicate against outputs computed so far.

        Available names: ``output`` (the upstream node's output), ``outputs``
        (all computed outputs by node id), ``input`` (the run's initial input).
        """
        eval_context = {
            'output': ctx.outputs.get(from_node, {}),
            'outputs': dict(ctx.outputs),
            'input': ctx.initial_input,
            **_CONDITION_BUILTINS,
        }
        return bool(eval(condition, {"__builtins__": {}}, eval_context))

    def _collect_input(self, ctx: ExecutionContext, node_id: str) -> Dict[str, Any]:
        upstream = ctx.workflow.upstream(node_id)
        if not upstream:
            return dict(ctx.initial_input)

        position = ctx.position
        data: Dict[str, Any] = {}
        edges = sorted(ctx.workflow.incoming_edges(node_id), key=lambda edge: position[edge.from_node])
        for edge in edges:
            output = ctx.outputs.get(edge.from_node, {})
            if edge.mapping:
                data.update({target: output[source] for source, target in edge.mapping.items() if source in output})
            else:
                data.update(output)
        return data

    def _settle(
        self,
        ctx: ExecutionContext,
        node_id: str,
        status: NodeStatus,
        reason: str,
        error: Optional[BaseException] = None,
    ) -> None:
        """Terminal state for a node decided without running it."""
        result = ctx.results[node_id]
        result.status = status
        result.reason = reason
        if error is not None:
            result.error = error_details(error)
        logger.info(f"Node '{node_id}' {status.value}: {reason}")

        report = ctx.builder.child(
            StageKind.NODE_EXECUTION, node_id,
            node_id=node_id,
            node_version=result.node_version,
            capability=ctx.nodes[node_id].capability.type,
            status=status,
            reason=reason,
        )
        if error is not None:
            report.fail(error)
        ctx.builder.attach(report.finalize(success=status != NodeStatus.FAILED), order=ctx.position[node_id])

    async def _run_node(self, ctx: ExecutionContext, node_id: str, data: Dict[str, Any]) -> None:
        node = ctx.nodes[node_id]
        result = ctx.results[node_id]
        report = ctx.builder.child(
            StageKind.NODE_EXECUTION, node_id,
            node_id=node_id,
            node_version=node.version,
            capability=node.capability.type,
            input=data,
        )
        started = time.perf_counter()

        def on_attempt(attempt: int) -> None:
            result.attempts = attempt
            if attempt > 1:
                logger.info(f"Node '{node_id}' attempt {attempt}/{node.retry.max_attempts}")

        try:
            async with ctx.slots or contextlib.nullcontext():
                result.status = NodeStatus.RUNNING
                output = await retry_async(
                    lambda: self.executor.execute(node, data),
                    RetryConfig.from_policy(node.retry),
                    f"node '{node_id}'",
                    on_attempt=on_attempt,
                )
        except asyncio.CancelledError as e:
            result.status = NodeStatus.FAILED
            result.reason = "cancelled"
            result.error = {"exception_type": "CancelledError", "message": "cancelled"}
            report.fail(e)
            raise
        except Exception as e:
            result.status = NodeStatus.FAILED
            result.reason = "execution failed"
            result.error = error_details(e)
            report.fail(e)
            log_with_context(
                logger, logging.ERROR,
                f"Node '{node_id}' failed after {result.attempts} attempt(s): {e}",
                node_id=node_id,
                error_type=type(e).__name__,
            )
        else:
            result.status = NodeStatus.SUCCEEDED
            result.output = output.value
            result.token_usage = output.token_usage
            ctx.outputs[node_id] = output.value
            report.add_token_usage(output.token_usage)
            report.update(output=output.value)
        finally:
            result.duration = timedelta(seconds=time.perf_counter() - started)
            report.update(status=result.status, attempts=result.attempts, reason=result.reason)
            ctx.builder.attach(
                report.finalize(success=result.status == NodeStatus.SUCCEEDED),
                order=ctx.position[node_id],
            )

    def _build_result(self, ctx: ExecutionContext) -> WorkflowResult:
        terminal = ctx.workflow.terminal_node
        terminal_result = ctx.results[terminal]
        error = None

        if ctx.cancel_reason is not None:
            status = WorkflowRunStatus.CANCELLED
            error = {"message": f"Run {ctx.cancel_reason}", "reason": ctx.cancel_reason}
        elif terminal_result.status != NodeStatus.SUCCEEDED:
            status = WorkflowRunStatus.FAILED
            error = terminal_result.error or {
                "message": f"Output node '{terminal}' produced no value",
                "reason": terminal_result.reason,
            }
        elif any(result.status == NodeStatus.FAILED for result in ctx.results.values()):
            status = WorkflowRunStatus.PARTIAL
        else:
            status = WorkflowRunStatus.SUCCEEDED

        usage = TokenUsage.zero()
        for result in ctx.results.values():
            usage = usage + result.token_usage

        return WorkflowResult(
            run_id=ctx.run_id,
            workflow_id=ctx.workflow.id,
            workflow_version=ctx.workflow.version,
            status=status,
            output=terminal_result.output if terminal_result.status == NodeStatus.SUCCEEDED else None,
            node_results={node_id: ctx.results[node_id] for node_id in ctx.order},
            execution_order=list(ctx.order),
            token_usage=usage,
            error=error,
        )

    def _finish_report(self, ctx: ExecutionContext, result: WorkflowResult) -> None:
        ctx.builder.update(
            status=result.status,
            execution_order=result.execution_order,
            node_statuses={node_id: node.status for node_id, node in result.node_results.items()},
        )
        ctx.builder.add_token_usage(result.token_usage)
        ctx.builder.finalize(success=result.status in (WorkflowRunStatus.SUCCEEDED, WorkflowRunStatus.PARTIAL))
