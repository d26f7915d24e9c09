"""
Template extractor: applies a learned template's patterns, no external call.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from ..resilience.errors import ExtractionFailedError
from ..schemas.document import Strategy
from ..templates.patterns import TemplateApplier
from .base import BaseExtractor, ExtractionRequest, StrategyOutput

logger = logging.getLogger(__name__)


class TemplateExtractor(BaseExtractor):
    """Extract fields with the matched template's label-anchored patterns."""

    def __init__(
        self,
        applier: TemplateApplier | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.applier = applier or TemplateApplier()
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def strategy(self) -> Strategy:
        return Strategy.TEMPLATE_MATCH

    def can_extract(self, request: ExtractionRequest) -> bool:
        return request.match is not None and bool(request.text.strip())

    def extract(self, request: ExtractionRequest) -> StrategyOutput:
        if request.match is None:
            raise ExtractionFailedError(self.strategy.value, "no template matched")
        if not request.text.strip():
            raise ExtractionFailedError(self.strategy.value, "document has no local text")

        template = request.match.template
        fields = self.applier.apply(template, request.text, self._now())
        if not fields:
            raise ExtractionFailedError(
                self.strategy.value, f"template {template.template_id[:8]} matched no fields"
            )

        missing = sorted(set(template.field_patterns) - set(fields))
        logger.debug(
            "Template %s extracted %d/%d fields",
            template.template_id[:8],
            len(fields),
            len(template.field_patterns),
        )
        return StrategyOutput(
            strategy=self.strategy,
            fields=fields,
            matched_features=[
                f"template:{template.template_id}",
                f"similarity:{request.match.similarity:.2f}",
                *(f"field:{name}" for name in sorted(fields)),
            ],
            suggested_improvements=[f"Template pattern for {name} did not match" for name in missing],
            template_id=template.template_id,
            text=request.text,
        )
