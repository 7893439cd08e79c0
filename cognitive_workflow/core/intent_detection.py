"""Intent detection: pick the workflow a request should run."""

from typing import Optional

from ..models.core import IntentDetectionResult, TokenUsage
from ..models.observability import SimilarIntent, StageKind
from .intent_catalog import IntentMatcher
from .logging import get_logger
from .observability import ReportBuilder, ReportSink

logger = get_logger(__name__)


class IntentDetectionService:
    """Applies a confidence threshold on top of the matcher.

    A best score below ``min_confidence`` yields a no-match result rather than
    an error. Every call produces exactly one ``intent_detection`` report,
    including calls that raise.
    """

    def __init__(
        self,
        matcher: IntentMatcher,
        min_confidence: float = 0.75,
        top_k: int = 3,
        sink: Optional[ReportSink] = None,
    ):
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError("min_confidence must be between 0 and 1")
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        self.matcher = matcher
        self.min_confidence = min_confidence
        self.top_k = top_k
        self.sink = sink

    def new_report(self, parent: Optional[ReportBuilder] = None) -> ReportBuilder:
        if parent is not None:
            return parent.child(StageKind.INTENT_DETECTION, "intent_detection")
        return ReportBuilder(StageKind.INTENT_DETECTION, "intent_detection")

    async def detect(self, request_text: str) -> IntentDetectionResult:
        """Detect the intent of ``request_text`` and emit the report to the sink."""
        builder = self.new_report()
        try:
            return await self.run_detection(request_text, builder)
        finally:
            if self.sink is not None and builder.finalized:
                self.sink.emit(builder.report)

    async def run_detection(self, request_text: str, builder: ReportBuilder) -> IntentDetectionResult:
        """Detect the intent, recording into ``builder``; the builder is always finalized.

        Raises:
            EmbeddingUnavailableError: Propagated after the report is finalized as failed
        """
        builder.update(input_request=request_text, threshold=self.min_confidence, token_usage=TokenUsage.zero())

        if not request_text or not request_text.strip():
            logger.info("Blank request, no intent detected")
            builder.finalize(success=True)
            return IntentDetectionResult(request_text=request_text, matched=False, threshold=self.min_confidence)

        try:
            matches, usage = await self.matcher.match_with_usage(request_text, self.top_k)
        except Exception as e:
            logger.error(f"Intent detection failed: {e}")
            builder.fail(e)
            builder.finalize()
            raise

        builder.add_token_usage(usage)
        builder.update(similar_intents=[
            SimilarIntent(
                intent_id=match.intent.id,
                label=match.intent.label,
                workflow_id=match.intent.workflow_id,
                score=match.score,
            )
            for match in matches
        ])

        best = matches[0] if matches else None
        if best is None or best.score < self.min_confidence:
            logger.info(
                f"No confident intent match (best score "
                f"{best.score if best else 0.0:.3f} < {self.min_confidence:.3f})"
            )
            builder.update(matched=False, score=best.score if best else None)
            builder.finalize(success=True)
            return IntentDetectionResult(
                request_text=request_text,
                matched=False,
                score=best.score if best else None,
                threshold=self.min_confidence,
                candidates=matches,
                token_usage=usage,
            )

        logger.info(
            f"Detected intent '{best.intent.id}' (score {best.score:.3f}) -> workflow '{best.intent.workflow_id}'"
        )
        builder.update(
            matched=True,
            intent_id=best.intent.id,
            workflow_id=best.intent.workflow_id,
            score=best.score,
        )
        builder.finalize(success=True)
        return IntentDetectionResult(
            request_text=request_text,
            matched=True,
            intent=best.intent,
            score=best.score,
            workflow_id=best.intent.workflow_id,
            workflow_version=best.intent.workflow_version,
            threshold=self.min_confidence,
            candidates=matches,
            token_usage=usage,
        )
