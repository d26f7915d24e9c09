"""
Extraction strategies.

- TemplateExtractor: learned template patterns, no external call
- HybridExtractor: vision reconciled with a below-threshold template
- VisionExtractor: vision inference through the resilience kernel
- FallbackExtractor: regex heuristics, low confidence ceiling
"""

from .base import BaseExtractor, ExtractionRequest, StrategyOutput
from .fallback_extractor import FALLBACK_CONFIDENCE_CEILING, FallbackExtractor
from .hybrid_extractor import HybridExtractor, reconcile
from .template_extractor import TemplateExtractor
from .text import derive_text
from .vision_extractor import VISION_SERVICE, VisionExtractor, fields_from_response

__all__ = [
    "BaseExtractor",
    "ExtractionRequest",
    "StrategyOutput",
    "FALLBACK_CONFIDENCE_CEILING",
    "FallbackExtractor",
    "HybridExtractor",
    "reconcile",
    "TemplateExtractor",
    "derive_text",
    "VISION_SERVICE",
    "VisionExtractor",
    "fields_from_response",
]
