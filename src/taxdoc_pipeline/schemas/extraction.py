"""
Extraction result schema.

Per-field values are a tagged variant (amount, date, text, rate), each
carrying its own confidence and the source that produced it. The aggregate
result is immutable; reprocessing creates a new result.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Union

from .document import Strategy


class FieldKind(str, Enum):
    """Kinds of extracted field value."""

    AMOUNT = "amount"
    DATE = "date"
    TEXT = "text"
    RATE = "rate"


@dataclass(frozen=True)
class AmountField:
    """Monetary amount."""

    value: Decimal
    confidence: float
    source: str = ""
    currency: str | None = None
    kind: FieldKind = field(default=FieldKind.AMOUNT, init=False)

    def display(self) -> str:
        return f"{self.value:.2f}"


@dataclass(frozen=True)
class DateField:
    """Calendar date."""

    value: date
    confidence: float
    source: str = ""
    kind: FieldKind = field(default=FieldKind.DATE, init=False)

    def display(self) -> str:
        return self.value.isoformat()


@dataclass(frozen=True)
class TextField:
    """Free text (vendor name, invoice number, VAT number)."""

    value: str
    confidence: float
    source: str = ""
    kind: FieldKind = field(default=FieldKind.TEXT, init=False)

    def display(self) -> str:
        return self.value


@dataclass(frozen=True)
class RateField:
    """Percentage rate (e.g. VAT 23 -> Decimal("23"))."""

    value: Decimal
    confidence: float
    source: str = ""
    kind: FieldKind = field(default=FieldKind.RATE, init=False)

    def display(self) -> str:
        return f"{self.value.normalize():f}%"


FieldValue = Union[AmountField, DateField, TextField, RateField]


# Standard tax fields and their kinds
FIELD_KINDS: dict[str, FieldKind] = {
    "total_amount": FieldKind.AMOUNT,
    "vat_amount": FieldKind.AMOUNT,
    "net_amount": FieldKind.AMOUNT,
    "vat_rate": FieldKind.RATE,
    "invoice_date": FieldKind.DATE,
    "invoice_number": FieldKind.TEXT,
    "vendor_name": FieldKind.TEXT,
    "vat_number": FieldKind.TEXT,
}


def parse_decimal(raw: Any) -> Decimal:
    """Parse a finite decimal from str/int/float, tolerating currency symbols and % signs."""
    if isinstance(raw, (Decimal, int, float)):
        return _finite(Decimal(str(raw)), raw)
    text = str(raw).strip().replace("€", "").replace("$", "").replace("£", "")
    text = text.replace("%", "").replace(" ", "")
    if "," in text and "." in text:
        # Whichever separator comes last is the decimal separator
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        return _finite(Decimal(text), raw)
    except InvalidOperation as e:
        raise ValueError(f"Not a number: {raw!r}") from e


def _finite(value: Decimal, raw: Any) -> Decimal:
    if not value.is_finite():
        raise ValueError(f"Not a finite number: {raw!r}")
    return value


def make_field(
    kind: FieldKind, raw: Any, confidence: float, source: str = ""
) -> FieldValue:
    """
    Build a typed field value from a raw value.

    Raises:
        ValueError: raw cannot be converted to the kind
    """
    confidence = max(0.0, min(1.0, float(confidence)))
    if kind == FieldKind.AMOUNT:
        return AmountField(value=parse_decimal(raw), confidence=confidence, source=source)
    if kind == FieldKind.RATE:
        return RateField(value=parse_decimal(raw), confidence=confidence, source=source)
    if kind == FieldKind.DATE:
        if isinstance(raw, date):
            value = raw
        else:
            value = date.fromisoformat(str(raw).strip()[:10])
        return DateField(value=value, confidence=confidence, source=source)
    text = str(raw).strip()
    if not text:
        raise ValueError("Empty text value")
    return TextField(value=text, confidence=confidence, source=source)


def with_confidence(value: FieldValue, confidence: float, source: str | None = None) -> FieldValue:
    """Copy of a field value with a new confidence (and optionally source)."""
    confidence = max(0.0, min(1.0, confidence))
    if source is None:
        return replace(value, confidence=confidence)
    return replace(value, confidence=confidence, source=source)


def same_value(a: FieldValue, b: FieldValue) -> bool:
    """Compare two field values the way a reviewer would."""
    if a.kind != b.kind:
        return False
    if a.kind in (FieldKind.AMOUNT, FieldKind.RATE):
        return abs(a.value - b.value) <= Decimal("0.01")
    if a.kind == FieldKind.TEXT:
        return _norm_text(a.value) == _norm_text(b.value)
    return a.value == b.value


def _norm_text(text: str) -> str:
    return " ".join(text.lower().split())


def field_to_dict(value: FieldValue) -> dict[str, Any]:
    data = {
        "kind": value.kind.value,
        "value": str(value.value) if value.kind in (FieldKind.AMOUNT, FieldKind.RATE) else value.display(),
        "confidence": value.confidence,
        "source": value.source,
    }
    if isinstance(value, AmountField) and value.currency:
        data["currency"] = value.currency
    return data


def field_from_dict(data: dict[str, Any]) -> FieldValue:
    value = make_field(
        FieldKind(data["kind"]), data["value"], data.get("confidence", 0.0), data.get("source", "")
    )
    if data.get("currency") and isinstance(value, AmountField):
        value = replace(value, currency=data["currency"])
    return value


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ExtractionError:
    """Error attached to an unsuccessful result."""

    code: str
    message: str


@dataclass(frozen=True)
class ExtractionResult:
    """Per-document output of one processing attempt."""

    document_hash: str
    strategy: Strategy
    fields: dict[str, FieldValue]
    confidence: float
    success: bool
    duration_ms: float = 0.0
    matched_features: tuple[str, ...] = ()
    suggested_improvements: tuple[str, ...] = ()
    error: ExtractionError | None = None
    review_state: str | None = None
    fingerprint_key: str | None = None
    template_id: str | None = None
    filename: str | None = None
    result_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=_utcnow)

    def field_value(self, name: str) -> Any:
        value = self.fields.get(name)
        return value.value if value is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "result_id": self.result_id,
            "document_hash": self.document_hash,
            "strategy": self.strategy.value,
            "fields": {name: field_to_dict(v) for name, v in self.fields.items()},
            "confidence": self.confidence,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "matched_features": list(self.matched_features),
            "suggested_improvements": list(self.suggested_improvements),
            "error": (
                {"code": self.error.code, "message": self.error.message} if self.error else None
            ),
            "review_state": self.review_state,
            "fingerprint_key": self.fingerprint_key,
            "template_id": self.template_id,
            "filename": self.filename,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionResult":
        """Create from dictionary."""
        error = data.get("error")
        return cls(
            result_id=data["result_id"],
            document_hash=data["document_hash"],
            strategy=Strategy(data["strategy"]),
            fields={name: field_from_dict(v) for name, v in data.get("fields", {}).items()},
            confidence=data["confidence"],
            success=data["success"],
            duration_ms=data.get("duration_ms", 0.0),
            matched_features=tuple(data.get("matched_features", [])),
            suggested_improvements=tuple(data.get("suggested_improvements", [])),
            error=ExtractionError(error["code"], error["message"]) if error else None,
            review_state=data.get("review_state"),
            fingerprint_key=data.get("fingerprint_key"),
            template_id=data.get("template_id"),
            filename=data.get("filename"),
            created_at=data.get("created_at", _utcnow()),
        )
