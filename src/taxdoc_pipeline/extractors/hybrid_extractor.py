"""
Hybrid extractor: vision extraction reconciled with a below-threshold template.

The template's values are passed to the model as hints and compared with
what it returns. Agreement raises confidence, disagreement lowers it and
leaves a note for the reviewer.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from ..resilience.errors import ExtractionFailedError
from ..schemas.document import Strategy
from ..schemas.extraction import FieldValue, same_value, with_confidence
from ..templates.patterns import TemplateApplier
from .base import BaseExtractor, ExtractionRequest, StrategyOutput
from .vision_extractor import VisionExtractor, fields_from_response

logger = logging.getLogger(__name__)

AGREEMENT_BOOST = 0.1
DISAGREEMENT_FACTOR = 0.85
TEMPLATE_ONLY_FACTOR = 0.8


def reconcile(
    vision_fields: dict[str, FieldValue], template_fields: dict[str, FieldValue]
) -> tuple[dict[str, FieldValue], list[str], list[str]]:
    """
    Merge vision and template values.

    Returns (fields, matched_features, suggested_improvements).
    """
    merged: dict[str, FieldValue] = {}
    features: list[str] = []
    notes: list[str] = []

    for name in sorted(set(vision_fields) | set(template_fields)):
        v = vision_fields.get(name)
        t = template_fields.get(name)
        if v is not None and t is not None:
            if same_value(v, t):
                boosted = min(1.0, max(v.confidence, t.confidence) + AGREEMENT_BOOST)
                merged[name] = with_confidence(v, boosted, source="hybrid")
                features.append(f"agree:{name}")
            else:
                merged[name] = with_confidence(v, v.confidence * DISAGREEMENT_FACTOR)
                notes.append(
                    f"{name}: vision read {v.display()} but template expected {t.display()}"
                )
        elif v is not None:
            merged[name] = v
        elif t is not None:
            merged[name] = with_confidence(t, t.confidence * TEMPLATE_ONLY_FACTOR)
            notes.append(f"{name}: found only by template pattern")

    return merged, features, notes


class HybridExtractor(BaseExtractor):
    """Vision run guided and checked by a learned template."""

    def __init__(
        self,
        vision: VisionExtractor,
        applier: TemplateApplier | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.vision = vision
        self.applier = applier or TemplateApplier()
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def strategy(self) -> Strategy:
        return Strategy.HYBRID

    def can_extract(self, request: ExtractionRequest) -> bool:
        return request.match is not None and self.vision.is_reachable()

    def extract(self, request: ExtractionRequest) -> StrategyOutput:
        if request.match is None:
            raise ExtractionFailedError(self.strategy.value, "no template to reconcile with")

        template = request.match.template
        now = self._now()
        hint_fields = self.applier.apply(template, request.text, now) if request.text else {}
        hints = {name: value.display() for name, value in hint_fields.items()}

        response = self.vision.infer(request, hints=hints or None)
        vision_fields, problems = fields_from_response(response, source="vision")

        # Without local text, the template can only read the transcription
        template_fields = hint_fields
        if not template_fields and response.text:
            template_fields = self.applier.apply(template, response.text, now)

        fields, features, notes = reconcile(vision_fields, template_fields)
        if not fields:
            raise ExtractionFailedError(self.strategy.value, "neither vision nor template produced fields")

        logger.debug(
            "Hybrid %s: %d vision, %d template, %d agreed",
            template.template_id[:8],
            len(vision_fields),
            len(template_fields),
            len(features),
        )
        return StrategyOutput(
            strategy=self.strategy,
            fields=fields,
            matched_features=[
                f"template:{template.template_id}",
                f"similarity:{request.match.similarity:.2f}",
                *features,
            ],
            suggested_improvements=problems + notes,
            template_id=template.template_id,
            text=response.text or request.text,
            raw={"usage": response.usage},
        )
