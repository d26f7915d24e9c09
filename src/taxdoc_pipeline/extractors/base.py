"""
Base extractor interface and common types.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ..schemas.document import Document, ProcessingContext, Strategy
from ..schemas.extraction import FieldValue
from ..templates.fingerprint import Fingerprint
from ..templates.models import TemplateMatch


@dataclass(frozen=True)
class ExtractionRequest:
    """Everything a strategy may look at for one document."""

    document: Document
    text: str
    fingerprint: Fingerprint
    context: ProcessingContext | None = None
    match: TemplateMatch | None = None


@dataclass
class StrategyOutput:
    """Fields produced by one strategy run."""

    strategy: Strategy
    fields: dict[str, FieldValue] = field(default_factory=dict)
    matched_features: list[str] = field(default_factory=list)
    suggested_improvements: list[str] = field(default_factory=list)
    template_id: str | None = None
    # Text the strategy saw (vision transcription or local text)
    text: str = ""
    raw: dict[str, Any] = field(default_factory=dict)  # Debug info


class BaseExtractor(ABC):
    """
    Base class for all extraction strategies.

    Each extractor implements one strategy:
    - Learned template patterns
    - Vision inference
    - Vision reconciled with template hints
    - Regex heuristics (fallback)
    """

    @property
    @abstractmethod
    def strategy(self) -> Strategy:
        """Strategy recorded on results produced by this extractor."""
        pass

    @property
    def name(self) -> str:
        """Extractor name for logging and provenance."""
        return self.strategy.value.lower()

    @abstractmethod
    def can_extract(self, request: ExtractionRequest) -> bool:
        """
        Check if this extractor applies to the request.

        Returns:
            True if this extractor should be attempted
        """
        pass

    @abstractmethod
    def extract(self, request: ExtractionRequest) -> StrategyOutput:
        """
        Extract tax fields.

        Raises:
            PipelineError: the strategy failed; the caller degrades
        """
        pass
