"""Building observability reports and handing them to sinks."""

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from ..models.core import TokenUsage
from ..models.observability import PAYLOAD_TYPES, ObservabilityReport, StageKind
from .exceptions import error_details
from .logging import get_logger, log_with_context

logger = get_logger(__name__)


class ReportBuilder:
    """Mutable, in-progress report for one stage.

    ``finalize`` stamps the duration and returns the frozen
    ``ObservabilityReport``; the builder cannot be changed afterwards.
    Children are attached as finalized reports and ordered by their
    ``order`` key, not by attach time.
    """

    def __init__(self, stage: StageKind, name: str, parent_id: Optional[str] = None, **payload: Any):
        self.stage = stage
        self.name = name
        self.report_id = str(uuid.uuid4())
        self.parent_id = parent_id
        self.started_at = datetime.now(timezone.utc)
        self._started = time.perf_counter()
        self._payload: Dict[str, Any] = dict(payload)
        self._children: List[Tuple[int, int, ObservabilityReport]] = []
        self._error: Optional[Dict[str, Any]] = None
        self._report: Optional[ObservabilityReport] = None

    @property
    def finalized(self) -> bool:
        return self._report is not None

    def update(self, **fields: Any) -> "ReportBuilder":
        self._ensure_open()
        self._payload.update(fields)
        return self

    def add_token_usage(self, usage: TokenUsage) -> "ReportBuilder":
        self._ensure_open()
        self._payload["token_usage"] = self._payload.get("token_usage", TokenUsage.zero()) + usage
        return self

    def child(self, stage: StageKind, name: str, **payload: Any) -> "ReportBuilder":
        return ReportBuilder(stage, name, parent_id=self.report_id, **payload)

    def attach(self, report: ObservabilityReport, order: Optional[int] = None) -> "ReportBuilder":
        """Attach a finalized child report."""
        self._ensure_open()
        sequence = len(self._children)
        self._children.append((sequence if order is None else order, sequence, report))
        return self

    def fail(self, error: BaseException) -> "ReportBuilder":
        self._ensure_open()
        self._error = error_details(error)
        return self

    def finalize(self, success: Optional[bool] = None) -> ObservabilityReport:
        """Stamp the duration and freeze the report."""
        self._ensure_open()
        duration = timedelta(seconds=time.perf_counter() - self._started)
        children = [report for _, _, report in sorted(self._children, key=lambda item: (item[0], item[1]))]
        self._report = ObservabilityReport(
            report_id=self.report_id,
            parent_id=self.parent_id,
            name=self.name,
            started_at=self.started_at,
            duration=duration,
            success=self._error is None if success is None else success,
            error=self._error,
            payload=PAYLOAD_TYPES[self.stage](**self._payload),
            children=children,
        )
        return self._report

    @property
    def report(self) -> ObservabilityReport:
        if self._report is None:
            raise RuntimeError(f"Report '{self.name}' has not been finalized")
        return self._report

    def _ensure_open(self) -> None:
        if self._report is not None:
            raise RuntimeError(f"Report '{self.name}' is finalized and cannot be modified")


@runtime_checkable
class ReportSink(Protocol):
    """Receives one complete report tree per request."""

    def emit(self, report: ObservabilityReport) -> None:
        ...


class LoggingReportSink:
    """Writes each report tree as one structured log record."""

    def __init__(self, logger_name: str = "cognitive_workflow.observability", level: int = logging.INFO):
        self.logger = get_logger(logger_name)
        self.level = level

    def emit(self, report: ObservabilityReport) -> None:
        log_with_context(
            self.logger, self.level,
            f"{report.stage.value} report '{report.name}' "
            f"({'success' if report.success else 'failure'}, {report.duration.total_seconds():.3f}s)",
            report=report.model_dump(mode="json"),
        )


class InMemoryReportSink:
    """Keeps the most recent report trees in memory."""

    def __init__(self, capacity: int = 100):
        self.capacity = capacity
        self.reports: List[ObservabilityReport] = []

    def emit(self, report: ObservabilityReport) -> None:
        self.reports.append(report)
        if len(self.reports) > self.capacity:
            del self.reports[: len(self.reports) - self.capacity]

    @property
    def last(self) -> Optional[ObservabilityReport]:
        return self.reports[-1] if self.reports else None


class CompositeReportSink:
    """Fans a report out to several sinks; one failing sink does not block the others."""

    def __init__(self, *sinks: ReportSink):
        self.sinks = list(sinks)

    def emit(self, report: ObservabilityReport) -> None:
        for sink in self.sinks:
            try:
                sink.emit(report)
            except Exception as e:
                logger.error(f"Report sink {type(sink).__name__} failed: {e}")
