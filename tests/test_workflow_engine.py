"""Tests for the workflow execution engine."""

import asyncio

import pytest

from cognitive_workflow.core.exceptions import NotFoundError, ProviderError, SchemaMismatchError
from cognitive_workflow.core.workflow_engine import WorkflowEngine, check_edge_compatibility
from cognitive_workflow.models.core import (
    AICallCapability,
    NodeInstance,
    NodeStatus,
    RetryPolicy,
    ShapeType,
    WorkflowRunStatus,
)
from cognitive_workflow.models.observability import StageKind

from conftest import transform_node, workflow


@pytest.fixture
def calls():
    """Names of recording transforms in invocation order."""
    return []


@pytest.fixture
def recorder(transforms, calls):
    """Register a transform that records its name and returns fixed output."""
    def register(name, output=None):
        def record(data, **kwargs):
            calls.append(name)
            return dict(output or {name: True})

        transforms.register_transform(name, record)
        return name

    return register


def boom(data, **kwargs):
    raise RuntimeError("boom")


class TestLinearRuns:
    """Sequential graphs."""

    async def test_linear_workflow_succeeds(self, engine, nodes_registry, workflows_registry, report_sink):
        nodes_registry.register(transform_node(
            "normalize", "normalize_text",
            input_shape={"request": ShapeType.STRING}, output_shape={"text": ShapeType.STRING},
        ))
        nodes_registry.register(transform_node(
            "count", "word_count",
            input_shape={"text": ShapeType.STRING}, output_shape={"word_count": ShapeType.INTEGER},
        ))
        workflows_registry.register(workflow("flow", ["normalize", "count"], [("normalize", "count")]))

        result = await engine.run("flow", {"request": "Hello   World"})

        assert result.status == WorkflowRunStatus.SUCCEEDED
        assert result.output == {"word_count": 2, "char_count": 11}
        assert result.execution_order == ["normalize", "count"]
        assert result.node_results["normalize"].output == {"text": "hello world"}
        assert result.node_results["count"].attempts == 1

        assert len(report_sink.reports) == 1
        report = report_sink.last
        assert report.stage == StageKind.WORKFLOW_EXECUTION
        assert report.success is True
        assert report.payload.run_id == result.run_id
        assert [child.name for child in report.children] == ["normalize", "count"]
        assert all(child.parent_id == report.report_id for child in report.children)

    async def test_middle_failure_fails_dependents_without_running_them(
        self, engine, nodes_registry, workflows_registry, transforms, recorder, calls
    ):
        """A -> B -> C with B failing: A's output is kept, C never runs."""
        recorder("a")
        transforms.register_transform("boom", boom)
        recorder("c")
        for node_id, function in (("a", "a"), ("b", "boom"), ("c", "c")):
            nodes_registry.register(transform_node(node_id, function))
        workflows_registry.register(workflow("flow", ["a", "b", "c"], [("a", "b"), ("b", "c")]))

        result = await engine.run("flow", {})

        assert result.status == WorkflowRunStatus.FAILED
        assert result.output is None
        assert result.node_results["a"].status == NodeStatus.SUCCEEDED
        assert result.node_results["a"].output == {"a": True}
        assert result.node_results["b"].status == NodeStatus.FAILED
        assert result.node_results["b"].error["exception_type"] == "ExecutionError"
        assert result.node_results["c"].status == NodeStatus.FAILED
        assert result.node_results["c"].reason == "upstream node 'b' failed"
        assert result.node_results["c"].attempts == 0
        assert calls == ["a"]

    async def test_failed_branch_outside_output_path_is_partial(
        self, engine, nodes_registry, workflows_registry, transforms, recorder
    ):
        recorder("a")
        recorder("c")
        transforms.register_transform("boom", boom)
        for node_id, function in (("a", "a"), ("b", "boom"), ("c", "c")):
            nodes_registry.register(transform_node(node_id, function))
        workflows_registry.register(workflow("flow", ["a", "b", "c"], [("a", "c")], output_node="c"))

        result = await engine.run("flow", {})

        assert result.status == WorkflowRunStatus.PARTIAL
        assert result.output == {"c": True}
        assert result.failed_nodes == ["b"]

    async def test_edge_mapping_renames_fields(self, engine, nodes_registry, workflows_registry):
        nodes_registry.register(transform_node("double", "simple_math", operation="multiply", operand=2))
        nodes_registry.register(transform_node("increment", "simple_math", operation="add", operand=1))
        workflows_registry.register(workflow(
            "flow", ["double", "increment"],
            [("double", "increment", {"mapping": {"result": "value"}})],
        ))

        result = await engine.run("flow", {"value": 5})

        assert result.node_results["increment"].output["result"] == 11


class TestConcurrentBranches:
    """Independent nodes run concurrently; joins wait for every parent."""

    async def test_independent_roots_overlap_and_join_waits(
        self, engine, nodes_registry, workflows_registry, transforms
    ):
        events = []
        b_started = asyncio.Event()

        async def slow_a(data, **kwargs):
            events.append("a-start")
            # only completes if b runs while a is in flight
            await asyncio.wait_for(b_started.wait(), timeout=2.0)
            events.append("a-end")
            return {"left": 1}

        async def fast_b(data, **kwargs):
            events.append("b-start")
            b_started.set()
            events.append("b-end")
            return {"right": 2}

        async def join(data, **kwargs):
            events.append("c-start")
            return {"total": data["left"] + data["right"]}

        transforms.register_transform("slow_a", slow_a)
        transforms.register_transform("fast_b", fast_b)
        transforms.register_transform("join", join)
        nodes_registry.register(transform_node("a", "slow_a"))
        nodes_registry.register(transform_node("b", "fast_b"))
        nodes_registry.register(transform_node("c", "join"))
        workflows_registry.register(workflow("flow", ["a", "b", "c"], [("a", "c"), ("b", "c")]))

        result = await engine.run("flow", {})

        assert result.status == WorkflowRunStatus.SUCCEEDED
        assert result.output == {"total": 3}
        assert events.index("b-start") < events.index("a-end")
        assert events[-1] == "c-start"

    async def test_join_fails_when_one_parent_fails(
        self, engine, nodes_registry, workflows_registry, transforms, recorder, calls
    ):
        recorder("a")
        recorder("c")
        transforms.register_transform("boom", boom)
        for node_id, function in (("a", "a"), ("b", "boom"), ("c", "c")):
            nodes_registry.register(transform_node(node_id, function))
        workflows_registry.register(workflow("flow", ["a", "b", "c"], [("a", "c"), ("b", "c")]))

        result = await engine.run("flow", {})

        assert result.status == WorkflowRunStatus.FAILED
        assert result.node_results["a"].status == NodeStatus.SUCCEEDED
        assert result.node_results["c"].status == NodeStatus.FAILED
        assert "c" not in calls

    async def test_report_children_follow_topological_order(
        self, engine, nodes_registry, workflows_registry, transforms, report_sink
    ):
        """B finishes first but A is declared first."""
        async def slow(data, **kwargs):
            await asyncio.sleep(0.05)
            return {"slow": True}

        async def fast(data, **kwargs):
            return {"fast": True}

        transforms.register_transform("slow", slow)
        transforms.register_transform("fast", fast)
        nodes_registry.register(transform_node("a", "slow"))
        nodes_registry.register(transform_node("b", "fast"))
        nodes_registry.register(transform_node("c", "fast"))
        workflows_registry.register(workflow("flow", ["a", "b", "c"], [("a", "c"), ("b", "c")]))

        await engine.run("flow", {})

        children = report_sink.last.children
        assert [child.name for child in children] == ["a", "b", "c"]
        assert all(child.stage == StageKind.NODE_EXECUTION for child in children)

    async def test_concurrency_limit(self, nodes_registry, workflows_registry, executor, recorder):
        recorder("a")
        recorder("b")
        nodes_registry.register(transform_node("a", "a"))
        nodes_registry.register(transform_node("b", "b"))
        workflows_registry.register(workflow("flow", ["a", "b"], output_node="b"))
        engine = WorkflowEngine(nodes_registry, workflows_registry, executor, max_concurrent_nodes=1)

        result = await engine.run("flow", {})

        assert result.status == WorkflowRunStatus.SUCCEEDED

    async def test_concurrency_limit_is_per_run(self, nodes_registry, workflows_registry, executor, transforms):
        """Two runs with a limit of one node each still run side by side."""
        entered = set()
        both_running = asyncio.Event()

        async def rendezvous(data, **kwargs):
            entered.add(data["run"])
            if len(entered) == 2:
                both_running.set()
            await asyncio.wait_for(both_running.wait(), timeout=1.0)
            return {"met": True}

        transforms.register_transform("rendezvous", rendezvous)
        nodes_registry.register(transform_node("meet", "rendezvous"))
        workflows_registry.register(workflow("flow", ["meet"]))
        engine = WorkflowEngine(nodes_registry, workflows_registry, executor, max_concurrent_nodes=1)

        first, second = await asyncio.gather(engine.run("flow", {"run": 1}), engine.run("flow", {"run": 2}))

        assert first.status == WorkflowRunStatus.SUCCEEDED
        assert second.status == WorkflowRunStatus.SUCCEEDED
        assert entered == {1, 2}


class TestConditionalEdges:
    """Gating predicates on edges."""

    @pytest.fixture
    def gated_flow(self, nodes_registry, workflows_registry, recorder):
        recorder("gated")
        recorder("after")
        nodes_registry.register(transform_node("compute", "simple_math", operation="add", operand=1))
        nodes_registry.register(transform_node("gated", "gated"))
        nodes_registry.register(transform_node("after", "after"))
        workflows_registry.register(workflow(
            "flow", ["compute", "gated", "after"],
            [("compute", "gated", {"condition": "output['result'] > 10"}), ("gated", "after")],
            output_node="compute",
        ))

    async def test_false_condition_skips_node_and_dependents(self, engine, gated_flow, calls):
        result = await engine.run("flow", {"value": 1})

        assert result.status == WorkflowRunStatus.SUCCEEDED
        assert result.node_results["gated"].status == NodeStatus.SKIPPED
        assert result.node_results["after"].status == NodeStatus.SKIPPED
        assert "is false" in result.node_results["gated"].reason
        assert calls == []

    async def test_true_condition_runs_node(self, engine, gated_flow, calls):
        result = await engine.run("flow", {"value": 20})

        assert result.node_results["gated"].status == NodeStatus.SUCCEEDED
        assert calls == ["gated", "after"]

    async def test_condition_error_fails_node(self, engine, nodes_registry, workflows_registry, recorder, calls):
        recorder("gated")
        nodes_registry.register(transform_node("compute", "simple_math"))
        nodes_registry.register(transform_node("gated", "gated"))
        workflows_registry.register(workflow(
            "flow", ["compute", "gated"],
            [("compute", "gated", {"condition": "output['missing'] > 1"})],
        ))

        result = await engine.run("flow", {"value": 1})

        assert result.node_results["gated"].status == NodeStatus.FAILED
        assert "could not be evaluated" in result.node_results["gated"].reason
        assert result.status == WorkflowRunStatus.FAILED
        assert calls == []

    async def test_condition_can_read_initial_input(self, engine, nodes_registry, workflows_registry, recorder):
        recorder("gated")
        nodes_registry.register(transform_node("compute", "simple_math"))
        nodes_registry.register(transform_node("gated", "gated"))
        workflows_registry.register(workflow(
            "flow", ["compute", "gated"],
            [("compute", "gated", {"condition": "input.get('mode') == 'full'"})],
        ))

        skipped = await engine.run("flow", {"value": 1, "mode": "quick"})
        ran = await engine.run("flow", {"value": 1, "mode": "full"})

        assert skipped.node_results["gated"].status == NodeStatus.SKIPPED
        assert ran.node_results["gated"].status == NodeStatus.SUCCEEDED


class TestCancellation:
    """Cancellation and run timeouts."""

    async def test_cancel_after_first_node_prevents_second(
        self, engine, nodes_registry, workflows_registry, transforms, recorder, calls, report_sink
    ):
        cancel = asyncio.Event()

        async def first(data, **kwargs):
            cancel.set()
            return {"first": True}

        transforms.register_transform("first", first)
        recorder("second")
        nodes_registry.register(transform_node("a", "first"))
        nodes_registry.register(transform_node("b", "second"))
        workflows_registry.register(workflow("flow", ["a", "b"], [("a", "b")]))

        result = await engine.run("flow", {}, cancel_event=cancel)

        assert result.status == WorkflowRunStatus.CANCELLED
        assert result.node_results["a"].status == NodeStatus.SUCCEEDED
        assert result.node_results["a"].output == {"first": True}
        assert result.node_results["b"].status == NodeStatus.PENDING
        assert calls == []
        assert report_sink.last.payload.status == WorkflowRunStatus.CANCELLED

    async def test_run_timeout_cancels_in_flight_nodes(
        self, engine, nodes_registry, workflows_registry, transforms
    ):
        async def sleepy(data, **kwargs):
            await asyncio.sleep(5)
            return {}

        transforms.register_transform("sleepy", sleepy)
        nodes_registry.register(transform_node("slow", "sleepy"))
        workflows_registry.register(workflow("flow", ["slow"]))

        result = await engine.run("flow", {}, timeout=0.05)

        assert result.status == WorkflowRunStatus.CANCELLED
        assert result.error["reason"] == "timeout"
        assert result.node_results["slow"].status == NodeStatus.FAILED
        assert result.node_results["slow"].reason == "cancelled"

    async def test_caller_cancellation_still_emits_report(
        self, engine, nodes_registry, workflows_registry, transforms, report_sink
    ):
        async def sleepy(data, **kwargs):
            await asyncio.sleep(5)
            return {}

        transforms.register_transform("sleepy", sleepy)
        nodes_registry.register(transform_node("slow", "sleepy"))
        workflows_registry.register(workflow("flow", ["slow"]))

        task = asyncio.ensure_future(engine.run("flow", {}))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert report_sink.last.payload.status == WorkflowRunStatus.CANCELLED
        assert report_sink.last.children[0].payload.status == NodeStatus.FAILED


class TestRetries:
    """Engine-level retries of transient failures."""

    async def test_transient_failure_is_retried(self, engine, nodes_registry, workflows_registry, transforms):
        attempts = []

        def flaky(data, **kwargs):
            attempts.append(1)
            if len(attempts) < 3:
                raise ProviderError("busy", transient=True)
            return {"ok": True}

        transforms.register_transform("flaky", flaky)
        nodes_registry.register(transform_node("flaky", "flaky", retry=RetryPolicy(max_attempts=3)))
        workflows_registry.register(workflow("flow", ["flaky"]))

        result = await engine.run("flow", {})

        assert result.status == WorkflowRunStatus.SUCCEEDED
        assert result.node_results["flaky"].attempts == 3

    async def test_transient_failure_gives_up_after_max_attempts(
        self, engine, nodes_registry, workflows_registry, transforms
    ):
        def always_busy(data, **kwargs):
            raise ProviderError("busy", transient=True)

        transforms.register_transform("always_busy", always_busy)
        nodes_registry.register(transform_node("busy", "always_busy", retry=RetryPolicy(max_attempts=2)))
        workflows_registry.register(workflow("flow", ["busy"]))

        result = await engine.run("flow", {})

        assert result.status == WorkflowRunStatus.FAILED
        assert result.node_results["busy"].attempts == 2

    async def test_permanent_failure_is_not_retried(self, engine, nodes_registry, workflows_registry, transforms):
        transforms.register_transform("boom", boom)
        nodes_registry.register(transform_node("boom", "boom", retry=RetryPolicy(max_attempts=3)))
        workflows_registry.register(workflow("flow", ["boom"]))

        result = await engine.run("flow", {})

        assert result.node_results["boom"].attempts == 1


class TestResolution:
    """Late binding and refusal to start."""

    async def test_unpinned_node_follows_active_version(self, engine, nodes_registry, workflows_registry, recorder):
        recorder("v1", {"version": 1})
        recorder("v2", {"version": 2})
        nodes_registry.register(transform_node("step", "v1", version="1.0.0"))
        workflows_registry.register(workflow("flow", ["step"]))

        first = await engine.run("flow", {})
        nodes_registry.register(transform_node("step", "v2", version="2.0.0"), activate=True)
        second = await engine.run("flow", {})

        assert first.output == {"version": 1}
        assert second.output == {"version": 2}
        assert second.node_results["step"].node_version == "2.0.0"

    async def test_newer_node_version_is_picked_up_without_activation(
        self, engine, nodes_registry, workflows_registry, recorder
    ):
        recorder("v1", {"version": 1})
        recorder("v2", {"version": 2})
        nodes_registry.register(transform_node("step", "v1", version="1.0.0"))
        workflows_registry.register(workflow("flow", ["step"]))

        await engine.run("flow", {})
        nodes_registry.register(transform_node("step", "v2", version="1.1.0"))
        result = await engine.run("flow", {})

        assert result.output == {"version": 2}

    async def test_missing_workflow(self, engine, report_sink):
        with pytest.raises(NotFoundError):
            await engine.run("ghost", {})

        assert report_sink.last.success is False

    async def test_missing_node(self, engine, workflows_registry):
        workflows_registry.register(workflow("flow", ["ghost"]))

        with pytest.raises(NotFoundError):
            await engine.run("flow", {})

    async def test_disabled_workflow_is_refused(self, engine, nodes_registry, workflows_registry, recorder):
        recorder("a")
        nodes_registry.register(transform_node("a", "a"))
        workflows_registry.register(workflow("flow", ["a"]))
        workflows_registry.deprecate("flow", "1.0.0")

        with pytest.raises(NotFoundError):
            await engine.run("flow", {})
        with pytest.raises(NotFoundError):
            await engine.run("flow", {}, version="1.0.0")

    async def test_incompatible_shapes_fail_before_running(
        self, engine, nodes_registry, workflows_registry, recorder, calls
    ):
        recorder("a", {"text": "x"})
        recorder("b")
        nodes_registry.register(transform_node("a", "a", output_shape={"text": ShapeType.STRING}))
        nodes_registry.register(transform_node("b", "b", input_shape={"text": ShapeType.INTEGER}))
        workflows_registry.register(workflow("flow", ["a", "b"], [("a", "b")]))

        with pytest.raises(SchemaMismatchError):
            await engine.run("flow", {})

        assert calls == []

    def test_edge_compatibility_reports_missing_inputs(self):
        nodes = {
            "a": transform_node("a", "a", output_shape={"text": ShapeType.STRING}),
            "b": transform_node("b", "b", input_shape={"keywords": ShapeType.ARRAY}),
        }

        violations = check_edge_compatibility(workflow("flow", ["a", "b"], [("a", "b")]), nodes)

        assert violations == ["b: required input 'keywords' is not produced upstream"]


class TestTokenUsage:
    async def test_ai_node_usage_is_aggregated(self, engine, nodes_registry, workflows_registry, provider):
        provider.completions = "short"
        nodes_registry.register(NodeInstance(
            id="summarize",
            input_shape={"request": ShapeType.STRING},
            output_shape={"summary": ShapeType.STRING},
            capability=AICallCapability(prompt_template="Summarize {request}", output_field="summary"),
        ))
        workflows_registry.register(workflow("flow", ["summarize"]))

        result = await engine.run("flow", {"request": "the text"})

        assert result.output == {"summary": "short"}
        assert result.token_usage.prompt_tokens == 3
        assert result.token_usage.completion_tokens == 3
        assert result.node_results["summarize"].token_usage == result.token_usage
