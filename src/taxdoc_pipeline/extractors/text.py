"""
Local text derivation.

Text is derived without any external service: decoded plain text/CSV,
spreadsheet cells, or the PDF text layer. Images have no local text.
"""

import io
import logging

import pdfplumber
from openpyxl import load_workbook

from ..schemas.document import Document

logger = logging.getLogger(__name__)

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Cap on derived text to keep fingerprinting and regexes bounded
MAX_TEXT_CHARS = 200_000


def _pdf_text(content: bytes) -> str:
    pages: list[str] = []
    with pdfplumber.open(io.BytesIO(content)) as pdf:
        for page in pdf.pages:
            pages.append(page.extract_text() or "")
    return "\n".join(pages)


def _xlsx_text(content: bytes) -> str:
    workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        lines: list[str] = []
        for sheet in workbook.worksheets:
            for row in sheet.iter_rows(values_only=True):
                cells = ["" if v is None else str(v) for v in row]
                if any(cells):
                    lines.append("\t".join(cells).rstrip())
        return "\n".join(lines)
    finally:
        workbook.close()


def derive_text(document: Document) -> str:
    """
    Best-effort local text for a document.

    Unparseable PDFs/workbooks yield "" (logged); the pipeline then relies
    on vision or fallback heuristics.
    """
    mime = document.mime_type
    try:
        if mime.startswith("text/"):
            text = document.content.decode("utf-8-sig", errors="replace")
        elif mime == "application/pdf":
            text = _pdf_text(document.content)
        elif mime == XLSX_MIME:
            text = _xlsx_text(document.content)
        else:
            # Images and legacy .xls
            return ""
    except Exception as e:
        logger.warning("Could not derive text from %s (%s): %s", document.filename, mime, e)
        return ""

    if len(text) > MAX_TEXT_CHARS:
        logger.debug("Truncating derived text of %s to %d chars", document.filename, MAX_TEXT_CHARS)
        text = text[:MAX_TEXT_CHARS]
    return text
