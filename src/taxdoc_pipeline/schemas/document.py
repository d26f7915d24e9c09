"""
Input document and processing context.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum


class DocumentCategory(str, Enum):
    """Which side of the VAT return a document belongs to."""

    SALES = "SALES"
    PURCHASE = "PURCHASE"


class Strategy(str, Enum):
    """Extraction strategy, ordered from most to least trusted."""

    TEMPLATE_MATCH = "TEMPLATE_MATCH"
    HYBRID = "HYBRID"
    AI_VISION = "AI_VISION"
    FALLBACK = "FALLBACK"


# MIME types accepted by the pipeline
ALLOWED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
        "image/jpeg",
        "image/png",
        "image/gif",
        "text/plain",
        "text/csv",
    }
)

SPREADSHEET_MIME_TYPES = frozenset(
    {
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
        "text/csv",
    }
)


@dataclass(frozen=True)
class Document:
    """An ingested document. Immutable for the duration of processing."""

    content: bytes = field(repr=False)
    mime_type: str
    filename: str
    category: DocumentCategory = DocumentCategory.PURCHASE
    # Caller-supplied identifier (optional)
    document_id: str | None = None

    @property
    def content_hash(self) -> str:
        """SHA256 of the raw bytes (idempotence key)."""
        return hashlib.sha256(self.content).hexdigest()

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def is_spreadsheet(self) -> bool:
        return self.mime_type in SPREADSHEET_MIME_TYPES

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass(frozen=True)
class ProcessingContext:
    """Optional business context supplied with a document."""

    known_vendor: str | None = None
    vat_number: str | None = None
    force_reprocess: bool = False
    user_id: str | None = None
