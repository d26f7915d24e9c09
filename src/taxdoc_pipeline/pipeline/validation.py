"""
Structural document validation.

Rejects documents that no strategy could ever read: empty payloads,
disallowed MIME types, unsafe file names, oversize files and payloads whose
magic bytes contradict their declared type.
"""

import logging

from ..resilience.errors import InvalidInputError
from ..schemas.document import ALLOWED_MIME_TYPES, Document

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 255

MAGIC_BYTES: dict[str, tuple[bytes, ...]] = {
    "application/pdf": (b"%PDF",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/gif": (b"GIF87a", b"GIF89a"),
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": (b"PK\x03\x04",),
    "application/vnd.ms-excel": (b"\xd0\xcf\x11\xe0",),
}

TEXT_SNIFF_BYTES = 4096


def validation_errors(document: Document, max_bytes: int) -> list[str]:
    """All structural problems with a document (empty when valid)."""
    errors: list[str] = []

    name = document.filename or ""
    if not name.strip():
        errors.append("Filename is empty")
    elif len(name) > MAX_FILENAME_LENGTH:
        errors.append(f"Filename longer than {MAX_FILENAME_LENGTH} characters")
    elif "/" in name or "\\" in name or name in (".", "..") or "\x00" in name:
        errors.append(f"Filename is not a plain file name: {name!r}")

    if not document.content:
        errors.append("Document is empty")
        return errors

    if document.mime_type not in ALLOWED_MIME_TYPES:
        errors.append(f"MIME type not allowed: {document.mime_type}")
        return errors

    if document.size > max_bytes:
        errors.append(
            f"Document is {document.size / (1024 * 1024):.1f}MB, "
            f"limit is {max_bytes / (1024 * 1024):.0f}MB"
        )

    signatures = MAGIC_BYTES.get(document.mime_type)
    if signatures and not document.content.startswith(signatures):
        errors.append(f"Content does not look like {document.mime_type}")
    elif document.mime_type.startswith("text/") and b"\x00" in document.content[:TEXT_SNIFF_BYTES]:
        errors.append("Text document contains binary data")

    return errors


def validate_document(document: Document, max_bytes: int) -> None:
    """
    Raise InvalidInputError when a document is structurally invalid.

    Raises:
        InvalidInputError: with every problem found in ``errors``
    """
    errors = validation_errors(document, max_bytes)
    if errors:
        logger.info("Rejected %s: %s", document.filename, "; ".join(errors))
        raise InvalidInputError(f"Invalid document {document.filename!r}: {errors[0]}", errors)
