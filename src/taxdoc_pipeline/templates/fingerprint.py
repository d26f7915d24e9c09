"""
Document fingerprints.

A fingerprint is a deterministic, low-cardinality signature of a document:
line-shape structure, tax keyword set, vendor hint, layout class, MIME family
and filename pattern. Many documents from the same issuer map to the same
fingerprint key; similarity scoring tolerates small layout drift.
"""

import hashlib
import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any

from ..schemas.document import Document, ProcessingContext

# Similarity weights (sum to 1.0)
STRUCTURE_WEIGHT = 0.4
KEYWORD_WEIGHT = 0.25
VENDOR_WEIGHT = 0.25
LAYOUT_WEIGHT = 0.1

# Number of leading lines that define the document structure
MAX_SHAPE_LINES = 40

TAX_KEYWORDS = frozenset(
    {
        "invoice",
        "receipt",
        "credit note",
        "vat",
        "tax",
        "total",
        "subtotal",
        "net",
        "gross",
        "amount",
        "due",
        "date",
        "quantity",
        "price",
        "country",
        "order",
        "balance",
        "rechnung",
        "mwst",
        "ust",
        "summe",
        "gesamt",
        "netto",
        "brutto",
        "beleg",
    }
)

COMPANY_SUFFIXES = ("GmbH", "AG", "KG", "Ltd", "Limited", "Inc", "LLC", "plc", "Teoranta")


def line_shape(line: str) -> str:
    """
    Character-class shape of a line with runs collapsed.

    "Invoice No: 12345" -> "Xx Xx: #". Changing amounts or dates does not
    change the shape.
    """
    out: list[str] = []
    for ch in line.strip():
        if ch.isdigit():
            cls = "#"
        elif ch.isupper():
            cls = "X"
        elif ch.isalpha():
            cls = "x"
        elif ch.isspace():
            cls = " "
        else:
            cls = ch
        if not out or out[-1] != cls:
            out.append(cls)
    return "".join(out)


def normalize_vendor(raw: str) -> str:
    text = re.sub(r"[^\w\s]", " ", raw.lower())
    return " ".join(text.split())[:60]


def _vendor_from_text(lines: list[str]) -> str | None:
    """First meaningful header line, preferring one with a company suffix."""
    for line in lines[:5]:
        if len(line) < 3 or re.match(r"^[\d\s,./\-:]+$", line):
            continue
        if any(suffix in line for suffix in COMPANY_SUFFIXES):
            return line
    for line in lines[:5]:
        if len(line) >= 3 and not re.match(r"^[\d\s,./\-:]+$", line):
            return line
    return None


def _classify_layout(lines: list[str], is_spreadsheet: bool) -> str:
    if is_spreadsheet:
        return "tabular"
    if not lines:
        return "unknown"
    columns = [len(re.split(r"\t|\s{2,}|;|,(?=\S)", line)) for line in lines]
    multi = sum(1 for c in columns if c >= 3) / len(lines)
    two = sum(1 for c in columns if c == 2) / len(lines)
    if multi > 0.3:
        return "tabular"
    if two > 0.3:
        return "two-column"
    return "single-column"


def _mime_family(mime_type: str) -> str:
    if mime_type == "application/pdf":
        return "pdf"
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith("text/plain"):
        return "text"
    return "spreadsheet"


def _filename_pattern(filename: str) -> str:
    stem = PurePath(filename).stem.lower()
    return re.sub(r"#+", "#", re.sub(r"\d", "#", stem))


def _jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    if not a and not b:
        return 0.5
    return len(a & b) / len(a | b)


@dataclass(frozen=True)
class Fingerprint:
    """Deterministic document signature."""

    structural_hash: str
    line_shapes: tuple[str, ...]
    keywords: frozenset[str]
    vendor_hint: str | None
    layout: str
    mime_family: str
    filename_pattern: str

    @property
    def key(self) -> str:
        """Exact lookup key: issuer, layout class, format and vocabulary."""
        parts = [
            self.vendor_hint or "",
            self.layout,
            self.mime_family,
            ",".join(sorted(self.keywords)),
        ]
        return hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]

    @property
    def is_informative(self) -> bool:
        """Whether there is enough signal to learn or match a template."""
        return bool(self.line_shapes) or self.vendor_hint is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "structural_hash": self.structural_hash,
            "line_shapes": list(self.line_shapes),
            "keywords": sorted(self.keywords),
            "vendor_hint": self.vendor_hint,
            "layout": self.layout,
            "mime_family": self.mime_family,
            "filename_pattern": self.filename_pattern,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Fingerprint":
        return cls(
            structural_hash=data["structural_hash"],
            line_shapes=tuple(data.get("line_shapes", [])),
            keywords=frozenset(data.get("keywords", [])),
            vendor_hint=data.get("vendor_hint"),
            layout=data.get("layout", "unknown"),
            mime_family=data.get("mime_family", "text"),
            filename_pattern=data.get("filename_pattern", ""),
        )


def compute_fingerprint(
    document: Document, text: str, context: ProcessingContext | None = None
) -> Fingerprint:
    """Compute the fingerprint of a document from its locally derived text."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    shapes = tuple(line_shape(line) for line in lines[:MAX_SHAPE_LINES])
    structural_hash = hashlib.md5("\n".join(shapes).encode()).hexdigest()

    lowered = text.lower()
    keywords = frozenset(
        kw for kw in TAX_KEYWORDS if re.search(rf"\b{re.escape(kw)}\b", lowered)
    )

    vendor: str | None = None
    if context is not None and context.known_vendor:
        vendor = context.known_vendor
    else:
        vendor = _vendor_from_text(lines)

    return Fingerprint(
        structural_hash=structural_hash,
        line_shapes=shapes,
        keywords=keywords,
        vendor_hint=normalize_vendor(vendor) if vendor else None,
        layout=_classify_layout(lines, document.is_spreadsheet),
        mime_family=_mime_family(document.mime_type),
        filename_pattern=_filename_pattern(document.filename),
    )


def similarity(a: Fingerprint, b: Fingerprint) -> float:
    """
    Weighted similarity in [0, 1].

    Different MIME families never match. Structure compares line shapes,
    keywords and vendor compare as token sets.
    """
    if a.mime_family != b.mime_family:
        return 0.0

    if a.structural_hash == b.structural_hash:
        structure = 1.0
    else:
        structure = _jaccard(frozenset(a.line_shapes), frozenset(b.line_shapes))

    keywords = _jaccard(a.keywords, b.keywords)

    if a.vendor_hint and b.vendor_hint:
        if a.vendor_hint == b.vendor_hint:
            vendor = 1.0
        else:
            vendor = _jaccard(frozenset(a.vendor_hint.split()), frozenset(b.vendor_hint.split()))
    elif a.vendor_hint or b.vendor_hint:
        vendor = 0.0
    else:
        vendor = 0.5

    layout = 1.0 if a.layout == b.layout else 0.0

    score = (
        structure * STRUCTURE_WEIGHT
        + keywords * KEYWORD_WEIGHT
        + vendor * VENDOR_WEIGHT
        + layout * LAYOUT_WEIGHT
    )
    return max(0.0, min(1.0, score))
