"""
Vision extractor: calls the vision service through the resilience kernel.
"""

import logging
from typing import Any

from ..resilience.errors import ExtractionFailedError
from ..resilience.kernel import ResilienceKernel
from ..schemas.document import Strategy
from ..schemas.extraction import FIELD_KINDS, FieldValue, make_field
from ..vision.client import VisionResponse, VisionService
from ..vision.prompts import ExtractionPrompt
from .base import BaseExtractor, ExtractionRequest, StrategyOutput

logger = logging.getLogger(__name__)

VISION_SERVICE = "vision"

# Used when the model omits a field's confidence
DEFAULT_FIELD_CONFIDENCE = 0.7


def fields_from_response(
    response: VisionResponse, source: str = "vision"
) -> tuple[dict[str, FieldValue], list[str]]:
    """Typed fields from a vision response, plus notes on unusable entries."""
    fields: dict[str, FieldValue] = {}
    problems: list[str] = []
    for name, entry in (response.structured_fields or {}).items():
        kind = FIELD_KINDS.get(name)
        if kind is None:
            continue
        if isinstance(entry, dict):
            raw: Any = entry.get("value")
            confidence = entry.get("confidence", DEFAULT_FIELD_CONFIDENCE)
        else:
            raw, confidence = entry, DEFAULT_FIELD_CONFIDENCE
        if raw in (None, ""):
            continue
        try:
            fields[name] = make_field(kind, raw, float(confidence), source)
        except (TypeError, ValueError):
            problems.append(f"Vision returned an unparseable {name}: {raw!r}")
    return fields, problems


class VisionExtractor(BaseExtractor):
    """Full vision-based extraction."""

    def __init__(
        self,
        kernel: ResilienceKernel,
        client: VisionService,
        prompt: ExtractionPrompt | None = None,
    ):
        self.kernel = kernel
        self.client = client
        self.prompt = prompt or ExtractionPrompt()

    @property
    def strategy(self) -> Strategy:
        return Strategy.AI_VISION

    def is_reachable(self) -> bool:
        return self.kernel.is_available(VISION_SERVICE)

    def can_extract(self, request: ExtractionRequest) -> bool:
        return self.is_reachable()

    def infer(self, request: ExtractionRequest, hints: dict[str, str] | None = None) -> VisionResponse:
        """One resilient inference call (breaker + timeout + retry)."""
        document = request.document
        message = self.prompt.format_user_message(
            filename=document.filename,
            mime_type=document.mime_type,
            category=document.category.value,
            text=None if document.is_image else request.text,
            hints=hints,
        )
        return self.kernel.execute(
            VISION_SERVICE,
            lambda: self.client.infer(
                document.content, document.mime_type, message, self.prompt.system_prompt
            ),
        )

    def extract(self, request: ExtractionRequest) -> StrategyOutput:
        response = self.infer(request)
        fields, problems = fields_from_response(response)
        if not fields:
            raise ExtractionFailedError(self.strategy.value, "vision returned no usable fields")

        logger.debug("Vision extracted %d fields", len(fields))
        return StrategyOutput(
            strategy=self.strategy,
            fields=fields,
            matched_features=[f"vision:{response.model}", *(f"field:{n}" for n in sorted(fields))],
            suggested_improvements=problems,
            text=response.text or request.text,
            raw={"usage": response.usage, "prompt_version": self.prompt.version},
        )
