"""Tests for routing requests to workflows."""

import asyncio

import pytest

from cognitive_workflow.core.exceptions import ConfigurationError, EmbeddingUnavailableError, ProviderError
from cognitive_workflow.core.intent_detection import IntentDetectionService
from cognitive_workflow.core.orchestrator import CognitiveOrchestrator
from cognitive_workflow.core.workflow_engine import WorkflowEngine
from cognitive_workflow.models.core import IntentDefinition, NodeStatus, RouteOutcome, ShapeType
from cognitive_workflow.models.observability import StageKind

from conftest import transform_node, workflow


def boom(data, **kwargs):
    raise RuntimeError("boom")


async def sleepy(data, **kwargs):
    await asyncio.sleep(5)
    return {}


@pytest.fixture
def orchestrator(intent_catalog, matcher, nodes_registry, workflows_registry, executor, transforms, report_sink):
    """Orchestrator over a small catalog of working and broken workflows."""
    transforms.register_transform("boom", boom)
    transforms.register_transform("sleepy", sleepy)

    nodes_registry.register(transform_node(
        "normalize", "normalize_text",
        input_shape={"request": ShapeType.STRING}, output_shape={"text": ShapeType.STRING},
    ))
    nodes_registry.register(transform_node("count", "word_count", input_shape={"text": ShapeType.STRING}))
    nodes_registry.register(transform_node("boom", "boom"))
    nodes_registry.register(transform_node("sleepy", "sleepy"))

    workflows_registry.register(workflow("counting", ["normalize", "count"], [("normalize", "count")]))
    workflows_registry.register(workflow(
        "counting-with-side-branch", ["normalize", "boom", "count"],
        [("normalize", "count")], output_node="count",
    ))
    workflows_registry.register(workflow("waiting", ["sleepy"]))

    intent_catalog.reload([
        IntentDefinition(id="count-words", label="Count words",
                         utterances=["count the words", "how many words"], workflow_id="counting"),
        IntentDefinition(id="side-branch", label="Side branch",
                         utterances=["count with side branch"], workflow_id="counting-with-side-branch"),
        IntentDefinition(id="wait", label="Wait", utterances=["wait forever"], workflow_id="waiting"),
        IntentDefinition(id="broken", label="Broken",
                         utterances=["run the broken flow"], workflow_id="missing-flow"),
    ])

    detection = IntentDetectionService(matcher, min_confidence=0.75, top_k=3)
    engine = WorkflowEngine(nodes_registry, workflows_registry, executor)
    return CognitiveOrchestrator(detection, engine, sink=report_sink)


class TestRouteAndRun:
    """End-to-end routing outcomes."""

    async def test_matched_request_runs_workflow(self, orchestrator, report_sink):
        result = await orchestrator.route_and_run("count the words")

        assert result.outcome == RouteOutcome.SUCCEEDED
        assert result.detection.intent.id == "count-words"
        assert result.output == {"word_count": 3, "char_count": 15}
        assert result.error is None

        assert len(report_sink.reports) == 1
        report = report_sink.last
        assert report is result.report
        assert report.stage == StageKind.ROUTE_AND_RUN
        assert report.success is True
        assert report.payload.outcome == RouteOutcome.SUCCEEDED
        assert [child.stage for child in report.children] == [
            StageKind.INTENT_DETECTION, StageKind.WORKFLOW_EXECUTION,
        ]
        assert [node.name for node in report.children[1].children] == ["normalize", "count"]

    async def test_token_usage_rolls_up(self, orchestrator, matcher):
        await matcher.prepare()
        result = await orchestrator.route_and_run("count the words")

        detection_usage = result.report.children[0].payload.token_usage
        workflow_usage = result.report.children[1].payload.token_usage
        assert result.token_usage == detection_usage + workflow_usage
        assert result.token_usage.prompt_tokens == 3

    async def test_root_nodes_receive_request_and_extra_input(self, orchestrator):
        result = await orchestrator.route_and_run("count the words", extra_input={"locale": "en"})

        normalize = result.report.find(StageKind.NODE_EXECUTION)[0]
        assert normalize.payload.input == {"request": "count the words", "locale": "en"}

    async def test_unmatched_request_is_no_match(self, orchestrator, report_sink):
        result = await orchestrator.route_and_run("completely unrelated gibberish")

        assert result.outcome == RouteOutcome.NO_MATCH
        assert result.workflow_result is None
        assert result.output is None
        assert report_sink.last.success is True
        assert [child.stage for child in report_sink.last.children] == [StageKind.INTENT_DETECTION]

    async def test_unresolvable_workflow_is_failed_outcome(self, orchestrator, report_sink):
        result = await orchestrator.route_and_run("run the broken flow")

        assert result.outcome == RouteOutcome.FAILED
        assert result.error["exception_type"] == "NotFoundError"
        assert report_sink.last.success is False
        assert report_sink.last.children[1].success is False

    async def test_side_branch_failure_is_partial(self, orchestrator):
        result = await orchestrator.route_and_run("count with side branch")

        assert result.outcome == RouteOutcome.PARTIAL_FAILURE
        assert result.output["word_count"] == 4
        assert result.workflow_result.node_results["boom"].status == NodeStatus.FAILED
        assert result.report.success is True

    async def test_timeout_is_cancelled_outcome(self, orchestrator):
        result = await orchestrator.route_and_run("wait forever", timeout=0.05)

        assert result.outcome == RouteOutcome.CANCELLED
        assert result.report.success is False

    async def test_embedding_outage_propagates(self, orchestrator, matcher, provider, report_sink):
        await matcher.prepare()
        provider.embed_error = ProviderError("connection refused", transient=True)

        with pytest.raises(EmbeddingUnavailableError):
            await orchestrator.route_and_run("count the words")

        assert len(report_sink.reports) == 1
        assert report_sink.last.success is False
        assert report_sink.last.children[0].success is False

    async def test_detection_error_still_emits_failed_report(self, orchestrator, intent_catalog, report_sink):
        """Stored embeddings with the wrong dimension fail detection but not reporting."""
        intent_catalog.reload([
            IntentDefinition(id="tiny", label="Tiny", embeddings=[[1.0, 0.0, 0.0]], workflow_id="counting"),
        ])

        with pytest.raises(ConfigurationError):
            await orchestrator.route_and_run("hello there")

        assert len(report_sink.reports) == 1
        report = report_sink.last
        assert report.success is False
        assert report.error["exception_type"] == "ConfigurationError"
        assert [child.stage for child in report.children] == [StageKind.INTENT_DETECTION]
        assert report.children[0].success is False
