"""
Learning feedback loop.

A reviewer's correction is stored, applied to the template of the
document's fingerprint, and turned into an accuracy record and a quality
metric so learning progress is visible in analytics.
"""

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from ..resilience.errors import InvalidInputError
from ..schemas.correction import Correction, FeedbackType
from ..schemas.extraction import FIELD_KINDS, ExtractionResult, FieldValue
from ..templates import Fingerprint, Template, TemplateStore

if TYPE_CHECKING:
    from ..monitoring import MetricsCollector
    from ..state_store import ResultRecord, StateStore

logger = logging.getLogger(__name__)


def correction_accuracy(result: ExtractionResult, correction: Correction) -> float:
    """Share of the result's fields the reviewer left unchanged."""
    if correction.feedback == FeedbackType.CORRECT:
        return 1.0
    considered = set(result.fields) | correction.corrected_fields
    if not considered:
        return 0.0
    if correction.feedback == FeedbackType.INCORRECT and not correction.field_corrections:
        return 0.0
    return round(1.0 - len(correction.corrected_fields) / len(considered), 4)


def check_correction(correction: Correction) -> None:
    """
    Reject corrections that cannot be applied.

    Raises:
        InvalidInputError: unknown field, kind mismatch, or an empty partial correction
    """
    errors: list[str] = []
    if correction.feedback == FeedbackType.PARTIALLY_CORRECT and not correction.field_corrections:
        errors.append("PARTIALLY_CORRECT feedback needs at least one field correction")
    for fc in correction.field_corrections:
        kind = FIELD_KINDS.get(fc.field)
        if kind is None:
            errors.append(f"Unknown field: {fc.field}")
        elif fc.corrected.kind != kind:
            errors.append(f"{fc.field} expects a {kind.value} value, got {fc.corrected.kind.value}")
    if errors:
        raise InvalidInputError("Invalid correction", errors)


class LearningFeedbackLoop:
    """Applies reviewer corrections to templates and analytics."""

    def __init__(
        self,
        state_store: "StateStore",
        template_store: TemplateStore,
        collector: "MetricsCollector",
        now: Callable[[], datetime] | None = None,
    ):
        self.store = state_store
        self.templates = template_store
        self.collector = collector
        self._now = now or (lambda: datetime.now(timezone.utc))

    def submit(self, document_ref: str, correction: Correction) -> Template | None:
        """
        Apply a correction to the result identified by ``document_ref``.

        ``document_ref`` is a result ID or a document content hash (the latest
        result for that document is corrected).

        Returns:
            The updated or created template, if any.

        Raises:
            InvalidInputError: unknown reference or unusable correction
        """
        check_correction(correction)
        record = self._resolve(document_ref)
        if record is None:
            raise InvalidInputError(f"No extraction result for {document_ref!r}")

        result = ExtractionResult.from_dict(json.loads(record.result_json))
        self.store.save_correction(
            result_id=result.result_id,
            document_hash=result.document_hash,
            feedback=correction.feedback.value,
            correction_json=json.dumps(correction.to_dict()),
            created_at=correction.created_at,
        )

        template: Template | None = None
        fingerprint = (
            Fingerprint.from_dict(json.loads(record.fingerprint_json))
            if record.fingerprint_json
            else None
        )
        if fingerprint is not None:
            confirmed: dict[str, FieldValue] = dict(result.fields)
            for fc in correction.field_corrections:
                confirmed[fc.field] = fc.corrected
            template = self.templates.apply_correction(
                fingerprint,
                correction,
                text=record.raw_text or "",
                template_id=result.template_id,
                confirmed_fields=confirmed,
            )
        else:
            logger.info("Result %s has no fingerprint; template not updated", result.result_id[:8])

        accuracy = correction_accuracy(result, correction)
        self.store.record_accuracy(
            result_id=result.result_id,
            template_id=template.template_id if template else result.template_id,
            strategy=result.strategy.value,
            feedback=correction.feedback.value,
            accuracy=accuracy,
        )
        self.collector.record_quality(
            document_hash=result.document_hash,
            data_quality_score=accuracy,
            confidence_score=result.confidence,
            extraction_method=result.strategy.value,
            validation_issues=[f"corrected:{name}" for name in sorted(correction.corrected_fields)],
            vat_compliant=correction.feedback == FeedbackType.CORRECT,
        )

        logger.info(
            "Applied %s feedback to result %s (accuracy %.2f, template %s)",
            correction.feedback.value,
            result.result_id[:8],
            accuracy,
            template.template_id[:8] if template else "none",
        )
        return template

    def accuracy_summary(self, days: int = 30) -> dict[str, Any]:
        """Accuracy of corrected results over the last ``days`` days."""
        since = (self._now() - timedelta(days=days)).isoformat().replace("+00:00", "Z")
        records = self.store.get_accuracy_records(since=since)
        if not records:
            return {
                "days": days,
                "corrections": 0,
                "average_accuracy": None,
                "by_strategy": {},
                "by_feedback": {},
                "trend": "STABLE",
            }

        by_strategy: dict[str, list[float]] = {}
        by_feedback: dict[str, int] = {}
        for r in records:
            by_strategy.setdefault(r.strategy, []).append(r.accuracy)
            by_feedback[r.feedback] = by_feedback.get(r.feedback, 0) + 1

        # Records are ordered by time; compare the halves
        half = len(records) // 2
        trend = "STABLE"
        if half:
            early = sum(r.accuracy for r in records[:half]) / half
            late = sum(r.accuracy for r in records[half:]) / (len(records) - half)
            if late > early * 1.05:
                trend = "IMPROVING"
            elif late < early * 0.95:
                trend = "DECLINING"

        return {
            "days": days,
            "corrections": len(records),
            "average_accuracy": round(sum(r.accuracy for r in records) / len(records), 4),
            "by_strategy": {
                strategy: {"count": len(values), "average_accuracy": round(sum(values) / len(values), 4)}
                for strategy, values in sorted(by_strategy.items())
            },
            "by_feedback": by_feedback,
            "trend": trend,
        }

    def _resolve(self, document_ref: str) -> "ResultRecord | None":
        record = self.store.get_result(document_ref)
        if record is None:
            record = self.store.get_latest_result(document_ref)
        return record
