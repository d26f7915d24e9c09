"""
Document intelligence pipeline: strategy orchestration, feedback loop and
the service facade.
"""

from .feedback import LearningFeedbackLoop, check_correction, correction_accuracy
from .orchestrator import ExtractionOrchestrator
from .service import DocumentIntelligenceService
from .validation import validate_document, validation_errors

__all__ = [
    "LearningFeedbackLoop",
    "check_correction",
    "correction_accuracy",
    "ExtractionOrchestrator",
    "DocumentIntelligenceService",
    "validate_document",
    "validation_errors",
]
