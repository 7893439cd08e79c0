"""Tests for report building and sinks."""

import logging
from datetime import timedelta

import pytest

from cognitive_workflow.core.exceptions import NotFoundError
from cognitive_workflow.core.observability import (
    CompositeReportSink,
    InMemoryReportSink,
    LoggingReportSink,
    ReportBuilder,
)
from cognitive_workflow.models.core import TokenUsage
from cognitive_workflow.models.observability import StageKind


def finished(name, stage=StageKind.NODE_EXECUTION):
    return ReportBuilder(stage, name, node_id=name).finalize(success=True)


class TestReportBuilder:
    """Building and freezing report trees."""

    def test_finalize_freezes_builder(self):
        builder = ReportBuilder(StageKind.INTENT_DETECTION, "intent_detection", input_request="hi")
        report = builder.finalize(success=True)

        assert builder.finalized
        assert builder.report is report
        assert report.payload.input_request == "hi"
        assert report.duration.total_seconds() >= 0
        with pytest.raises(RuntimeError):
            builder.update(matched=True)
        with pytest.raises(RuntimeError):
            builder.finalize()

    def test_started_at_is_timezone_aware_utc(self):
        report = finished("a")

        assert report.started_at.tzinfo is not None
        assert report.started_at.utcoffset() == timedelta(0)

    def test_report_requires_finalize(self):
        with pytest.raises(RuntimeError):
            _ = ReportBuilder(StageKind.ROUTE_AND_RUN, "route_and_run").report

    def test_children_are_ordered_by_order_key(self):
        root = ReportBuilder(StageKind.WORKFLOW_EXECUTION, "workflow_execution")
        root.attach(finished("c"), order=2)
        root.attach(finished("a"), order=0)
        root.attach(finished("b"), order=1)

        report = root.finalize()

        assert [child.name for child in report.children] == ["a", "b", "c"]
        assert [child.name for child in report.find(StageKind.NODE_EXECUTION)] == ["a", "b", "c"]

    def test_failure_is_recorded(self):
        builder = ReportBuilder(StageKind.WORKFLOW_EXECUTION, "workflow_execution")
        builder.fail(NotFoundError("Workflow 'x' is not registered", instance_id="x"))

        report = builder.finalize()

        assert report.success is False
        assert report.error["error_code"] == "NotFoundError"
        assert report.error["context"] == {"instance_id": "x"}

    def test_token_usage_accumulates(self):
        builder = ReportBuilder(StageKind.ROUTE_AND_RUN, "route_and_run")
        builder.add_token_usage(TokenUsage(prompt_tokens=2))
        builder.add_token_usage(TokenUsage(prompt_tokens=1, completion_tokens=4))

        assert builder.finalize().payload.token_usage.total_tokens == 7


class TestSinks:
    def test_in_memory_sink_keeps_most_recent(self):
        sink = InMemoryReportSink(capacity=2)
        for name in ("a", "b", "c"):
            sink.emit(finished(name))

        assert [report.name for report in sink.reports] == ["b", "c"]
        assert sink.last.name == "c"

    def test_composite_sink_survives_failing_sink(self):
        class BrokenSink:
            def emit(self, report):
                raise RuntimeError("disk full")

        memory = InMemoryReportSink()
        CompositeReportSink(BrokenSink(), memory).emit(finished("a"))

        assert memory.last.name == "a"

    def test_logging_sink_writes_one_record(self, caplog):
        with caplog.at_level(logging.INFO, logger="cognitive_workflow.observability"):
            LoggingReportSink().emit(finished("a"))

        records = [record for record in caplog.records if record.name == "cognitive_workflow.observability"]
        assert len(records) == 1
        assert records[0].extra_fields["report"]["name"] == "a"
