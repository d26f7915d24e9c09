"""
Strategy selection and extraction orchestration.

Policy (first match wins):
1. Active template with weight >= match threshold -> TEMPLATE_MATCH (no vision call)
2. Template below threshold and vision reachable -> HYBRID
3. Vision reachable -> AI_VISION
4. Otherwise -> FALLBACK

A failing strategy degrades to the next applicable one; the reason is kept
in the result's suggested improvements. Only structurally invalid documents
raise; every other failure yields an unsuccessful FALLBACK result.
"""

import json
import logging
import sqlite3
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..confidence import ConfidenceScorer, ConfidenceThresholds
from ..extractors import (
    VISION_SERVICE,
    ExtractionRequest,
    FallbackExtractor,
    HybridExtractor,
    StrategyOutput,
    TemplateExtractor,
    VisionExtractor,
    derive_text,
)
from ..extractors.base import BaseExtractor
from ..resilience.errors import ExtractionFailedError, InvalidInputError, PipelineError
from ..resilience.kernel import ResilienceKernel
from ..schemas.document import Document, ProcessingContext, Strategy
from ..schemas.extraction import ExtractionError, ExtractionResult
from ..templates import (
    Fingerprint,
    TemplateApplier,
    TemplateMatch,
    TemplateStore,
    compute_fingerprint,
)
from ..vision.client import VisionService
from .validation import validate_document

if TYPE_CHECKING:
    from ..config import Config
    from ..monitoring import MetricsCollector
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

VISION_STRATEGIES = (Strategy.HYBRID, Strategy.AI_VISION)


class ExtractionOrchestrator:
    """Chooses, runs and degrades extraction strategies for one document at a time."""

    def __init__(
        self,
        config: "Config",
        kernel: ResilienceKernel,
        template_store: TemplateStore,
        collector: "MetricsCollector",
        state_store: "StateStore",
        vision_client: VisionService | None = None,
        scorer: ConfidenceScorer | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.kernel = kernel
        self.templates = template_store
        self.collector = collector
        self.store = state_store
        self.scorer = scorer or ConfidenceScorer(
            ConfidenceThresholds(
                auto_threshold=config.auto_threshold,
                review_threshold=config.review_threshold,
            )
        )
        self._now = now or (lambda: datetime.now(timezone.utc))

        applier = TemplateApplier(prior=config.templates.template_prior)
        self.template_extractor = TemplateExtractor(applier, self._now)
        self.fallback_extractor = FallbackExtractor()
        self.vision_extractor: VisionExtractor | None = None
        self.hybrid_extractor: HybridExtractor | None = None
        if vision_client is not None:
            self.vision_extractor = VisionExtractor(kernel, vision_client)
            self.hybrid_extractor = HybridExtractor(self.vision_extractor, applier, self._now)

        if not kernel.degradation.has(VISION_SERVICE):
            kernel.degradation.register(VISION_SERVICE, self.fallback_extractor.extract)

    # -------------------------------------------------------------------------
    # Policy
    # -------------------------------------------------------------------------

    def vision_reachable(self) -> bool:
        return self.vision_extractor is not None and self.vision_extractor.is_reachable()

    def plan(self, match: TemplateMatch | None, vision_ok: bool) -> list[Strategy]:
        """Strategies to try, in order, for a lookup outcome."""
        chain: list[Strategy] = []
        if match is not None and match.template.weight >= self.config.templates.match_threshold:
            chain.append(Strategy.TEMPLATE_MATCH)
        if vision_ok:
            if match is not None:
                chain.append(Strategy.HYBRID)
            chain.append(Strategy.AI_VISION)
        chain.append(Strategy.FALLBACK)
        return chain

    def _extractor(self, strategy: Strategy) -> BaseExtractor | None:
        return {
            Strategy.TEMPLATE_MATCH: self.template_extractor,
            Strategy.HYBRID: self.hybrid_extractor,
            Strategy.AI_VISION: self.vision_extractor,
        }.get(strategy)

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def process(
        self, document: Document, context: ProcessingContext | None = None
    ) -> ExtractionResult:
        """
        Extract tax fields from a document.

        Raises:
            InvalidInputError: the document is structurally invalid
        """
        validate_document(document, self.config.max_file_bytes)
        context = context or ProcessingContext()
        document_hash = document.content_hash

        degradations: list[str] = []
        if not context.force_reprocess:
            cached = self._cached_result(document_hash, degradations)
            self.collector.record_cache_lookup(cached is not None)
            if cached is not None:
                logger.info("Returning stored result %s for %s", cached.result_id[:8], document.filename)
                return cached

        started = time.monotonic()

        try:
            if document.size >= self.config.resilience.large_document_bytes:
                self.kernel.resource_guard.check(f"process {document.filename}")
        except PipelineError as e:
            self.collector.record_error(e, {"filename": document.filename, "stage": "resource_guard"})
            return self._failed(
                document, document_hash, started, e, degradations + [f"Deferred: {e.message}"]
            )

        text = derive_text(document)
        fingerprint = compute_fingerprint(document, text, context)
        match = self.templates.lookup(fingerprint)
        request = ExtractionRequest(
            document=document, text=text, fingerprint=fingerprint, context=context, match=match
        )

        chain = self.plan(match, self.vision_reachable())
        logger.debug(
            "Plan for %s: %s (template=%s)",
            document.filename,
            " -> ".join(s.value for s in chain),
            f"{match.template.template_id[:8]}@{match.template.weight:.2f}" if match else None,
        )

        output: StrategyOutput | None = None
        last_error: BaseException | None = None
        vision_failed = False

        for strategy in chain:
            if strategy in VISION_STRATEGIES and vision_failed:
                continue
            if not self._applicable(strategy, request):
                degradations.append(f"{strategy.value} skipped: not applicable to this document")
                continue
            try:
                output = self._run(strategy, request)
                break
            except InvalidInputError:
                raise
            except PipelineError as e:
                last_error = e
                if strategy in VISION_STRATEGIES and not isinstance(e, ExtractionFailedError):
                    vision_failed = True
                degradations.append(f"{strategy.value} failed ({e.code}): {e.message}")
                self._report(e, strategy, document)
            except Exception as e:
                logger.exception("%s extraction crashed for %s", strategy.value, document.filename)
                last_error = e
                degradations.append(f"{strategy.value} failed: {e}")
                self._report(e, strategy, document)

        if output is None:
            return self._failed(document, document_hash, started, last_error, degradations, fingerprint.key)

        if degradations:
            logger.info(
                "Degraded to %s for %s after %d failure(s)",
                output.strategy.value,
                document.filename,
                len(degradations),
            )

        return self._finish(document, document_hash, started, fingerprint, output, degradations)

    def _applicable(self, strategy: Strategy, request: ExtractionRequest) -> bool:
        if strategy == Strategy.FALLBACK:
            return True
        extractor = self._extractor(strategy)
        return extractor is not None and extractor.can_extract(request)

    def _run(self, strategy: Strategy, request: ExtractionRequest) -> StrategyOutput:
        if strategy == Strategy.FALLBACK:
            return self.kernel.degradation.execute_fallback(VISION_SERVICE, request)
        extractor = self._extractor(strategy)
        if extractor is None:
            raise ExtractionFailedError(strategy.value, "no extractor configured")
        return extractor.extract(request)

    def _finish(
        self,
        document: Document,
        document_hash: str,
        started: float,
        fingerprint: Fingerprint,
        output: StrategyOutput,
        degradations: list[str],
    ) -> ExtractionResult:
        strategy = output.strategy
        fields = output.fields
        success = bool(fields)

        # Scoring
        confidence = self.scorer.aggregate(fields, strategy)
        review_state = self.scorer.compute_review_state(confidence, fields)
        issues = self.scorer.validate_fields(fields, self._now().date())

        error = None
        if not success:
            error = ExtractionError("EXTRACTION_FAILED", "No tax fields could be extracted")

        duration_ms = (time.monotonic() - started) * 1000
        result = ExtractionResult(
            document_hash=document_hash,
            strategy=strategy,
            fields=fields,
            confidence=confidence,
            success=success,
            duration_ms=round(duration_ms, 1),
            matched_features=tuple(output.matched_features),
            suggested_improvements=tuple(degradations + output.suggested_improvements + issues),
            error=error,
            review_state=review_state.value,
            fingerprint_key=fingerprint.key,
            template_id=output.template_id,
            filename=document.filename,
        )

        # Metrics
        tax_value = result.field_value("vat_amount")
        if tax_value is None:
            tax_value = result.field_value("total_amount")
        self.collector.record_processing(
            file_name=document.filename,
            strategy=strategy.value,
            duration_ms=duration_ms,
            success=success,
            confidence=confidence,
            document_hash=document_hash,
            file_size=document.size,
            error_code=error.code if error else None,
            error_message=error.message if error else None,
            tax_amount=float(tax_value) if tax_value is not None else None,
        )
        if success:
            self.collector.record_quality(
                document_hash=document_hash,
                data_quality_score=self.scorer.quality_score(issues),
                confidence_score=confidence,
                extraction_method=strategy.value,
                validation_issues=issues,
                vat_compliant=not issues,
            )
            self._signal_templates(result, fingerprint, output)

        self._persist(result, output.text, fingerprint)
        logger.info(
            "Processed %s via %s: %d fields, confidence %.2f (%s)",
            document.filename,
            strategy.value,
            len(fields),
            confidence,
            review_state.value,
        )
        return result

    def _failed(
        self,
        document: Document,
        document_hash: str,
        started: float,
        error: BaseException | None,
        reasons: list[str],
        fingerprint_key: str | None = None,
    ) -> ExtractionResult:
        code = error.code if isinstance(error, PipelineError) else "INTERNAL_ERROR"
        message = "Document could not be processed automatically; manual entry required"
        duration_ms = (time.monotonic() - started) * 1000
        result = ExtractionResult(
            document_hash=document_hash,
            strategy=Strategy.FALLBACK,
            fields={},
            confidence=0.0,
            success=False,
            duration_ms=round(duration_ms, 1),
            suggested_improvements=tuple(reasons),
            error=ExtractionError(code, message),
            review_state="MANUAL",
            fingerprint_key=fingerprint_key,
            filename=document.filename,
        )
        self.collector.record_processing(
            file_name=document.filename,
            strategy=Strategy.FALLBACK.value,
            duration_ms=duration_ms,
            success=False,
            document_hash=document_hash,
            file_size=document.size,
            error_code=code,
            error_message=str(error) if error else message,
        )
        self._persist(result, None)
        logger.warning("Extraction failed for %s (%s)", document.filename, code)
        return result

    def _signal_templates(
        self, result: ExtractionResult, fingerprint: Fingerprint, output: StrategyOutput
    ) -> None:
        try:
            if result.strategy == Strategy.TEMPLATE_MATCH and output.template_id:
                self.templates.record_usage(output.template_id)
            elif result.strategy in VISION_STRATEGIES:
                self.templates.record_vision_success(
                    fingerprint,
                    result.fields,
                    output.text,
                    result.strategy.value,
                    template_id=output.template_id,
                )
        except PipelineError as e:
            # Result stands; the template catches up with the next document
            logger.warning("Template update for %s failed: %s", result.filename, e)
            self.collector.record_error(e, {"stage": "template_signal"})

    def _persist(
        self, result: ExtractionResult, raw_text: str | None, fingerprint: Fingerprint | None = None
    ) -> None:
        try:
            self.store.save_result(
                result_id=result.result_id,
                document_hash=result.document_hash,
                strategy=result.strategy.value,
                success=result.success,
                confidence=result.confidence,
                result_json=json.dumps(result.to_dict()),
                raw_text=raw_text,
                fingerprint_json=json.dumps(fingerprint.to_dict()) if fingerprint else None,
                created_at=result.created_at,
            )
        except sqlite3.Error as e:
            logger.error("Could not store result %s: %s", result.result_id[:8], e)
            self.collector.record_error(e, {"stage": "persist"})

    def _cached_result(self, document_hash: str, degradations: list[str]) -> ExtractionResult | None:
        """Stored successful result for the hash; an unreadable store counts as a miss."""
        try:
            record = self.store.get_latest_result(document_hash, successful_only=True)
            if record is None:
                return None
            return ExtractionResult.from_dict(json.loads(record.result_json))
        except (sqlite3.Error, KeyError, TypeError, ValueError) as e:
            logger.warning("Stored result lookup for %s failed: %r", document_hash[:12], e)
            self.collector.record_error(e, {"stage": "cache_lookup"})
            degradations.append(f"Stored result lookup failed: {e!r}")
            return None

    def _report(self, error: BaseException, strategy: Strategy, document: Document) -> None:
        # Vision errors come from kernel.execute, which reports every attempt
        if (
            strategy in VISION_STRATEGIES
            and isinstance(error, PipelineError)
            and not isinstance(error, ExtractionFailedError)
        ):
            return
        self.collector.record_error(error, {"strategy": strategy.value, "filename": document.filename})
