"""
Learning field patterns from known values and applying them to new text.

A pattern is anchored on the label that precedes a value on the same line
("Total:", "VAT 23%", "Invoice No."). Values that never change for an issuer
(vendor name, VAT number) are also remembered as constants.
"""

import logging
import re
from datetime import datetime, timezone

from ..schemas.extraction import (
    FieldKind,
    FieldValue,
    make_field,
)
from ..schemas.parsing import (
    AMOUNT_VALUE_PATTERN,
    DATE_VALUE_PATTERN,
    amount_renderings,
    date_renderings,
    parse_amount_text,
    parse_date_text,
)
from .models import FieldPattern, Template

logger = logging.getLogger(__name__)

VALUE_PATTERNS = {
    FieldKind.AMOUNT: AMOUNT_VALUE_PATTERN,
    FieldKind.DATE: DATE_VALUE_PATTERN,
    FieldKind.RATE: r"\d{1,2}(?:[.,]\d{1,2})?(?=\s*%)",
    FieldKind.TEXT: r"[A-Za-z0-9][A-Za-z0-9/\-_.]{1,40}",
}

# Text fields that stay the same for every document of an issuer
CONSTANT_FIELDS = frozenset({"vendor_name", "vat_number"})

MAX_LABEL_WORDS = 3
# Maximum confidence lost to template age
MAX_AGE_DECAY = 0.3


def _value_renderings(value: FieldValue) -> list[str]:
    if value.kind == FieldKind.AMOUNT:
        return amount_renderings(value.value)
    if value.kind == FieldKind.DATE:
        return date_renderings(value.value)
    if value.kind == FieldKind.RATE:
        normalized = f"{value.value.normalize():f}"
        return [normalized, normalized.replace(".", ",")]
    return [value.value]


def _label_before(line: str, position: int) -> str | None:
    """Up to three label words immediately preceding a value on its line."""
    prefix = line[:position]
    prefix = re.sub(r"[\s:#=\-€$£]*(?:EUR|USD|GBP)?[\s:#=\-€$£]*$", "", prefix)
    words = re.findall(r"[^\s]+", prefix)
    if not words:
        return None
    label = " ".join(words[-MAX_LABEL_WORDS:])
    if not re.search(r"[A-Za-zäöüÄÖÜ]", label):
        return None
    return label


def learn_pattern(field_name: str, value: FieldValue, text: str) -> FieldPattern | None:
    """
    Build a pattern that would find ``value`` in ``text``.

    Returns None when the value cannot be located and is not a constant field.
    """
    pattern = FieldPattern(field=field_name, kind=value.kind)
    if value.kind == FieldKind.TEXT and field_name in CONSTANT_FIELDS:
        pattern.constant = value.value

    for line in text.splitlines():
        for rendering in _value_renderings(value):
            idx = line.lower().find(rendering.lower())
            if idx < 0:
                continue
            label = _label_before(line, idx)
            if label is None:
                continue
            regex = (
                re.escape(label)
                + r"[\s:#=\-]*(?:EUR|USD|GBP|[€$£])?\s*("
                + VALUE_PATTERNS[value.kind]
                + ")"
            )
            # The digits may sit inside another token ("23" in "IE1234567T")
            found = re.search(regex, line, re.IGNORECASE)
            if found is None or _parse(value.kind, found.group(1)) != value.value:
                continue
            pattern.label = label
            pattern.regex = regex
            return pattern

    return pattern if pattern.is_usable else None


def _parse(kind: FieldKind, raw: str):
    if kind == FieldKind.AMOUNT:
        return parse_amount_text(raw)
    if kind == FieldKind.DATE:
        return parse_date_text(raw)
    if kind == FieldKind.RATE:
        return parse_amount_text(raw.replace(",", ".")) if raw else None
    return raw.strip() or None


def age_factor(template: Template, now: datetime | None = None) -> float:
    """1.0 for a fresh template, decaying linearly to 0.7 over a year."""
    return 1.0 - min(MAX_AGE_DECAY, template.age_days(now) / 365.0 * MAX_AGE_DECAY)


class TemplateApplier:
    """Applies a template's patterns to document text."""

    def __init__(self, prior: float = 0.9):
        self.prior = prior

    def field_confidence(
        self, template: Template, pattern: FieldPattern, now: datetime | None = None
    ) -> float:
        """Prior decayed by template age and the field's miss ratio."""
        return self.prior * age_factor(template, now) * pattern.accuracy

    def apply(
        self, template: Template, text: str, now: datetime | None = None
    ) -> dict[str, FieldValue]:
        now = now or datetime.now(timezone.utc)
        source = f"template:{template.template_id}"
        fields: dict[str, FieldValue] = {}

        for name, pattern in template.field_patterns.items():
            raw: str | None = None
            from_constant = False
            if pattern.regex:
                match = re.search(pattern.regex, text, re.IGNORECASE)
                if match:
                    raw = match.group(1)
            if raw is None and pattern.constant:
                raw = pattern.constant
                from_constant = True
            if raw is None:
                continue

            parsed = _parse(pattern.kind, raw)
            if parsed is None:
                logger.debug("Template %s: could not parse %s=%r", template.template_id, name, raw)
                continue

            confidence = self.field_confidence(template, pattern, now)
            if from_constant and pattern.regex:
                # Label not found on this document
                confidence *= 0.9
            fields[name] = make_field(pattern.kind, parsed, confidence, source)

        return fields
