"""Vision inference boundary: Ollama client and extraction prompts."""

from .client import (
    ConcurrencyLimiter,
    OllamaVisionClient,
    VisionResponse,
    VisionService,
    parse_json_response,
)
from .prompts import PROMPT_VERSION, ExtractionPrompt

__all__ = [
    "ConcurrencyLimiter",
    "OllamaVisionClient",
    "VisionResponse",
    "VisionService",
    "parse_json_response",
    "PROMPT_VERSION",
    "ExtractionPrompt",
]
