"""
Schema definitions for the pipeline.

Defines the contract between:
- Collaborators submitting documents (Document, ProcessingContext)
- Extractors and the orchestrator (ExtractionResult, typed field values)
- The learning loop (Correction, FeedbackType)
"""

from .correction import Correction, FeedbackType, FieldCorrection
from .document import (
    ALLOWED_MIME_TYPES,
    Document,
    DocumentCategory,
    ProcessingContext,
    Strategy,
)
from .extraction import (
    FIELD_KINDS,
    AmountField,
    DateField,
    ExtractionError,
    ExtractionResult,
    FieldKind,
    FieldValue,
    RateField,
    TextField,
    make_field,
    same_value,
    with_confidence,
)

__all__ = [
    "ALLOWED_MIME_TYPES",
    "Document",
    "DocumentCategory",
    "ProcessingContext",
    "Strategy",
    "FIELD_KINDS",
    "AmountField",
    "DateField",
    "TextField",
    "RateField",
    "FieldKind",
    "FieldValue",
    "ExtractionError",
    "ExtractionResult",
    "make_field",
    "same_value",
    "with_confidence",
    "Correction",
    "FeedbackType",
    "FieldCorrection",
]
