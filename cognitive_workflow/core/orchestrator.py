"""Request entry point: detect the intent, run its workflow, emit one report tree."""

import asyncio
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..models.core import IntentDetectionResult, RouteOutcome, TokenUsage, WorkflowResult, WorkflowRunStatus
from ..models.observability import ObservabilityReport, StageKind
from .exceptions import WorkflowEngineError, error_details
from .intent_detection import IntentDetectionService
from .logging import get_logger, reset_logging_context, set_logging_context
from .observability import ReportBuilder, ReportSink
from .workflow_engine import WorkflowEngine

logger = get_logger(__name__)


_OUTCOMES = {
    WorkflowRunStatus.SUCCEEDED: RouteOutcome.SUCCEEDED,
    WorkflowRunStatus.PARTIAL: RouteOutcome.PARTIAL_FAILURE,
    WorkflowRunStatus.FAILED: RouteOutcome.FAILED,
    WorkflowRunStatus.CANCELLED: RouteOutcome.CANCELLED,
}


class RouteResult(BaseModel):
    """Outcome of one routed request."""
    request_id: str
    request_text: str
    outcome: RouteOutcome
    detection: IntentDetectionResult
    workflow_result: Optional[WorkflowResult] = None
    report: ObservabilityReport
    error: Optional[Dict[str, Any]] = None

    @property
    def output(self) -> Optional[Dict[str, Any]]:
        return self.workflow_result.output if self.workflow_result else None

    @property
    def token_usage(self) -> TokenUsage:
        return self.report.payload.token_usage


class CognitiveOrchestrator:
    """Routes free-text requests to workflows.

    The workflow's root nodes receive ``{"request": request_text}`` merged
    with any extra input the caller passes.
    """

    def __init__(
        self,
        detection: IntentDetectionService,
        engine: WorkflowEngine,
        sink: Optional[ReportSink] = None,
    ):
        self.detection = detection
        self.engine = engine
        self.sink = sink

    async def route_and_run(
        self,
        request_text: str,
        extra_input: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> RouteResult:
        """Detect the intent of ``request_text`` and run the matching workflow.

        A request without a confident intent is a ``no_match`` outcome, not an
        error. Workflow resolution and shape errors become a ``failed``
        outcome. The report tree is emitted to the sink exactly once.

        Raises:
            EmbeddingUnavailableError: The embedding capability is unreachable; retry later
            ConfigurationError: Stored intent embeddings do not fit the embedder

        Errors raised during detection still emit a failed report tree.
        """
        request_id = str(uuid.uuid4())
        root = ReportBuilder(StageKind.ROUTE_AND_RUN, "route_and_run", request_text=request_text)
        token = set_logging_context(request_id=request_id)
        try:
            return await self._route(request_id, request_text, extra_input, cancel_event, timeout, root)
        finally:
            reset_logging_context(token)
            if self.sink is not None and root.finalized:
                self.sink.emit(root.report)

    async def _route(
        self,
        request_id: str,
        request_text: str,
        extra_input: Optional[Dict[str, Any]],
        cancel_event: Optional[asyncio.Event],
        timeout: Optional[float],
        root: ReportBuilder,
    ) -> RouteResult:
        detection_report = self.detection.new_report(root)
        try:
            detection = await self.detection.run_detection(request_text, detection_report)
        except (Exception, asyncio.CancelledError) as e:
            if not detection_report.finalized:
                detection_report.fail(e)
                detection_report.finalize()
            root.attach(detection_report.report, order=0)
            if isinstance(e, asyncio.CancelledError):
                root.update(outcome=RouteOutcome.CANCELLED)
            root.fail(e)
            root.finalize()
            raise
        root.attach(detection_report.report, order=0)
        root.add_token_usage(detection.token_usage)

        if not detection.matched:
            logger.info("Request did not match any intent confidently")
            root.update(outcome=RouteOutcome.NO_MATCH)
            report = root.finalize(success=True)
            return RouteResult(
                request_id=request_id,
                request_text=request_text,
                outcome=RouteOutcome.NO_MATCH,
                detection=detection,
                report=report,
            )

        root.update(workflow_id=detection.workflow_id)
        initial_input = {"request": request_text, **(extra_input or {})}
        workflow_report = self.engine.new_report(root)
        workflow_result = None
        failure = None
        error = None
        try:
            workflow_result = await self.engine.execute(
                detection.workflow_id, initial_input, workflow_report,
                version=detection.workflow_version,
                cancel_event=cancel_event,
                timeout=timeout,
            )
        except WorkflowEngineError as e:
            logger.error(f"Workflow '{detection.workflow_id}' could not run: {e.message}")
            failure = e
            error = error_details(e)
            outcome = RouteOutcome.FAILED
        except asyncio.CancelledError:
            if workflow_report.finalized:
                root.attach(workflow_report.report, order=1)
            root.update(outcome=RouteOutcome.CANCELLED)
            root.finalize(success=False)
            raise
        else:
            outcome = _OUTCOMES[workflow_result.status]
            error = workflow_result.error
            root.add_token_usage(workflow_result.token_usage)

        root.attach(workflow_report.report, order=1)
        root.update(outcome=outcome)
        if failure is not None:
            root.fail(failure)
        report = root.finalize(success=outcome in (RouteOutcome.SUCCEEDED, RouteOutcome.PARTIAL_FAILURE))

        return RouteResult(
            request_id=request_id,
            request_text=request_text,
            outcome=outcome,
            detection=detection,
            workflow_result=workflow_result,
            report=report,
            error=error,
        )
