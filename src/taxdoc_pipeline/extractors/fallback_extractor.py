"""
Fallback extractor: regex heuristics over locally derived text.

Used when no template applies and the vision service is unavailable. It is
the most widely applicable strategy and the least trusted: every field is
capped at a low confidence ceiling so downstream review routing always
treats its output as unverified. Spreadsheet reports are summed with the
tabular aggregation engine instead.
"""

import dataclasses
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any

from ..resilience.errors import InvalidInputError
from ..schemas.document import Strategy
from ..schemas.extraction import AmountField, FieldKind, FieldValue, make_field
from ..schemas.parsing import (
    AMOUNT_VALUE_PATTERN,
    DATE_PATTERNS,
    parse_amount_text,
    parse_date_match,
    parse_english_amount,
    parse_german_amount,
)
from ..tabular import aggregate, read_report
from ..tabular.reader import CSV_MIMES, XLSX_MIME
from .base import BaseExtractor, ExtractionRequest, StrategyOutput

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE_CEILING = 0.3

# Amount patterns
AMOUNT_PATTERNS = [
    # European format with thousands separator: 1.234,56
    (r"(?:EUR|€)\s*(\d{1,3}(?:\.\d{3})*,\d{2})\b", "german", "eur_prefix"),
    (r"\b(\d{1,3}(?:\.\d{3})*,\d{2})\s*(?:EUR|€)", "german", "eur_suffix"),
    # Euro amounts in English notation (Irish invoices): €1,234.56
    (r"(?:EUR|€)\s*(\d{1,3}(?:,\d{3})*\.\d{2})\b", "english", "eur_prefix_english"),
    # English format: 1,234.56
    (r"(?:USD|\$)\s*(\d{1,3}(?:,\d{3})*\.\d{2})\b", "english", "usd_prefix"),
    (r"(?:GBP|£)\s*(\d{1,3}(?:,\d{3})*\.\d{2})\b", "english", "gbp_prefix"),
    # Generic formats (lower confidence)
    (r"\b(\d{1,3}(?:\.\d{3})*,\d{2})\b", "german", "generic_german"),
    (r"\b(\d+,\d{2})\b", "german", "generic_german_simple"),
    (r"\b(\d{1,3}(?:,\d{3})*\.\d{2})\b", "english", "generic_english"),
    (r"\b(\d+\.\d{2})\b", "english", "generic_english_simple"),
]

CURRENCY_PATTERNS = [
    (r"\bEUR\b", "EUR"),
    (r"€", "EUR"),
    (r"\bGBP\b", "GBP"),
    (r"£", "GBP"),
    (r"\bUSD\b", "USD"),
    (r"\$", "USD"),
    (r"\bCHF\b", "CHF"),
]

INVOICE_PATTERNS = [
    (
        r"\b(?:Invoice\s*(?:No\.?|Number|#)|INV|RE|Rechnungsnr\.?|Rechnungsnummer|Beleg-?Nr\.?)"
        r"[:\s#-]*([A-Z0-9]+-?\d{3,}(?:-\d+)?)\b",
        0.9,
    ),
    (r"\b(?:Receipt|Belegnummer|Nr\.?)[:\s#]*([A-Z0-9/-]{5,20})\b", 0.7),
]

# Keywords near the grand total
TOTAL_KEYWORDS = [
    (r"(?:Grand\s+Total|Total\s+Due|Amount\s+Due|Gesamt|Summe|Endbetrag|Gesamtbetrag|Brutto|TOTAL)", 1.0),
    (r"(?:to\s+pay|zu\s+zahlen|Zahlbetrag|Rechnungsbetrag|Balance)", 0.9),
    (r"(?:incl\.\s*VAT|inkl\.\s*MwSt|inkl\.\s*USt)", 0.8),
]

TAX_WORD = r"(?:VAT|MwSt\.?|USt\.?|Umsatzsteuer|Mehrwertsteuer|Tax)"
RATE = r"\d{1,2}(?:[.,]\d{1,2})?"

VAT_AMOUNT_PATTERN = (
    rf"(?<!incl\.\s)(?<!inkl\.\s)\b{TAX_WORD}(?!\s*(?:No|Number|Reg|ID))[^\n\d]{{0,20}}(?:{RATE}\s*%[^\n\d]{{0,10}})?"
    rf"(?:EUR|€|£|\$)?\s*({AMOUNT_VALUE_PATTERN})"
)
VAT_RATE_PATTERNS = [
    rf"\b{TAX_WORD}[^\n%\d]{{0,20}}({RATE})\s*%",
    rf"({RATE})\s*%\s*{TAX_WORD}",
]
NET_AMOUNT_PATTERN = (
    rf"\b(?:Net(?:\s+Amount)?|Netto|Sub-?total|Zwischensumme)[^\n\d]{{0,20}}"
    rf"(?:EUR|€|£|\$)?\s*({AMOUNT_VALUE_PATTERN})"
)
VAT_NUMBER_PATTERN = (
    r"\b(?:VAT\s*(?:No\.?|Number|Reg(?:istration)?\.?(?:\s*No\.?)?|ID)|USt-?IdNr\.?|UID)"
    r"[:\s#]*([A-Z]{2}\s?[A-Z0-9]{7,12})\b"
)

COMPANY_SUFFIXES = ["GmbH", "AG", "KG", "e.K.", "OHG", "Ltd", "Limited", "Inc", "GesmbH", "DAC", "PLC"]


class FallbackExtractor(BaseExtractor):
    """
    Extract tax fields from local text using pattern matching.

    Confidence scores are capped because nothing verifies the matches.
    """

    def __init__(self, max_confidence: float = FALLBACK_CONFIDENCE_CEILING):
        self.max_confidence = max_confidence

    @property
    def strategy(self) -> Strategy:
        return Strategy.FALLBACK

    def can_extract(self, request: ExtractionRequest) -> bool:
        """Fallback can always attempt extraction."""
        return True

    def extract(self, request: ExtractionRequest) -> StrategyOutput:
        """Extract finance data using pattern matching."""
        output = StrategyOutput(strategy=self.strategy, text=request.text)
        document = request.document

        if document.mime_type in (XLSX_MIME, *CSV_MIMES) and document.is_spreadsheet:
            self._aggregate_report(request, output)

        content = request.text.strip()
        if not content:
            if not output.fields:
                output.suggested_improvements.append("No local text available for heuristics")
            return output

        currency = self._extract_currency(content)

        amount = self._extract_total(content, currency)
        if amount:
            self._put(output, "total_amount", FieldKind.AMOUNT, amount["amount"], amount["confidence"], currency)
            output.raw["total_amount"] = amount

        for name, pattern in (("vat_amount", VAT_AMOUNT_PATTERN), ("net_amount", NET_AMOUNT_PATTERN)):
            if name in output.fields:
                continue
            match = re.search(pattern, content, re.IGNORECASE)
            if match:
                value = parse_amount_text(match.group(1))
                if value is not None:
                    self._put(output, name, FieldKind.AMOUNT, value, 0.6, currency)

        for pattern in VAT_RATE_PATTERNS:
            match = re.search(pattern, content, re.IGNORECASE)
            if match:
                self._put(output, "vat_rate", FieldKind.RATE, match.group(1), 0.6)
                break

        date_result = self._extract_date(content)
        if date_result:
            self._put(output, "invoice_date", FieldKind.DATE, date_result["date"], date_result["confidence"])

        invoice = self._extract_invoice_number(content)
        if invoice:
            self._put(output, "invoice_number", FieldKind.TEXT, invoice["number"], invoice["confidence"])

        vat_number = re.search(VAT_NUMBER_PATTERN, content, re.IGNORECASE)
        if vat_number:
            self._put(output, "vat_number", FieldKind.TEXT, vat_number.group(1).replace(" ", ""), 0.7)

        vendor = self._extract_vendor(content)
        if request.context is not None and request.context.known_vendor:
            vendor = {"vendor": request.context.known_vendor, "confidence": 0.9}
        if vendor:
            self._put(output, "vendor_name", FieldKind.TEXT, vendor["vendor"], vendor["confidence"])

        output.matched_features.extend(f"heuristic:{name}" for name in sorted(output.fields))
        if "total_amount" not in output.fields and "vat_amount" not in output.fields:
            output.suggested_improvements.append("No tax amount recognized by heuristics")
        return output

    def _put(
        self,
        output: StrategyOutput,
        name: str,
        kind: FieldKind,
        raw: Any,
        confidence: float,
        currency: str | None = None,
    ) -> None:
        try:
            value: FieldValue = make_field(
                kind, raw, min(confidence, self.max_confidence), self.name
            )
        except ValueError:
            logger.debug("Heuristic value for %s not parseable: %r", name, raw)
            return
        if currency and isinstance(value, AmountField):
            value = dataclasses.replace(value, currency=currency)
        output.fields[name] = value

    def _aggregate_report(self, request: ExtractionRequest, output: StrategyOutput) -> None:
        document = request.document
        try:
            rows = read_report(document.content, document.mime_type)
        except InvalidInputError as e:
            output.suggested_improvements.append(f"Spreadsheet not aggregated: {e.message}")
            return

        result = aggregate(rows)
        if not result.groups:
            output.suggested_improvements.append("Spreadsheet has no tax rows")
            return

        self._put(output, "vat_amount", FieldKind.AMOUNT, result.total, result.confidence)
        output.matched_features.append(f"tabular:{result.method.value.lower()}")
        output.suggested_improvements.extend(result.warnings)
        output.raw["aggregation"] = result.to_dict()

    def _extract_currency(self, content: str) -> str | None:
        for pattern, currency in CURRENCY_PATTERNS:
            if re.search(pattern, content):
                return currency
        return None

    def _extract_date(self, content: str) -> dict[str, Any] | None:
        """Extract most likely document date."""
        candidates: list[dict[str, Any]] = []

        for pattern, date_format, pattern_type in DATE_PATTERNS:
            for match in re.finditer(pattern, content, re.IGNORECASE):
                parsed = parse_date_match(match, date_format, pattern_type)
                if not parsed:
                    continue
                confidence = 0.6

                # Boost if near date keywords
                context = content[max(0, match.start() - 50) : match.start()].lower()
                if any(kw in context for kw in ["datum", "date", "rechnungsdatum", "issued"]):
                    confidence = min(confidence + 0.2, 0.85)
                if pattern_type == "iso":
                    confidence = min(confidence + 0.1, 0.9)

                candidates.append({"date": parsed, "confidence": confidence, "position": match.start()})

        if not candidates:
            return None

        # Prefer confident, then earlier dates
        candidates.sort(key=lambda x: (-x["confidence"], x["position"]))
        return candidates[0]

    def _extract_total(self, content: str, currency: str | None = None) -> dict[str, Any] | None:
        """
        Extract the most likely total amount.

        Every amount is scored by proximity to total keywords and by
        notation; the best candidate wins, larger amounts breaking ties.
        """
        candidates: list[dict[str, Any]] = []
        expected_format = "german" if currency in ("EUR", "CHF") else None

        for pattern, num_format, pattern_type in AMOUNT_PATTERNS:
            for match in re.finditer(pattern, content):
                amount_str = match.group(1)
                try:
                    if num_format == "german":
                        amount = parse_german_amount(amount_str)
                    else:
                        amount = parse_english_amount(amount_str)
                except InvalidOperation:
                    continue

                if amount <= 0 or amount > Decimal("1000000"):
                    continue

                confidence = 0.4
                context = content[max(0, match.start() - 100) : min(len(content), match.end() + 50)]
                for keyword_pattern, boost in TOTAL_KEYWORDS:
                    if re.search(keyword_pattern, context, re.IGNORECASE):
                        confidence = min(confidence + boost * 0.3, 0.85)
                        break

                if expected_format and num_format == expected_format:
                    confidence = min(confidence + 0.1, 0.9)
                if "prefix" in pattern_type or "suffix" in pattern_type:
                    confidence = min(confidence + 0.1, 0.9)

                candidates.append({"amount": amount, "confidence": confidence, "match": match.group(0)})

        if not candidates:
            return None

        candidates.sort(key=lambda x: (-x["confidence"], -x["amount"]))
        return candidates[0]

    def _extract_invoice_number(self, content: str) -> dict[str, Any] | None:
        for pattern, confidence in INVOICE_PATTERNS:
            match = re.search(pattern, content, re.IGNORECASE)
            if match:
                return {"number": match.group(1), "confidence": confidence * 0.8}
        return None

    def _extract_vendor(self, content: str) -> dict[str, Any] | None:
        """
        Extract vendor name from the document header.

        The first non-empty line is often the company name; a line with a
        company suffix is preferred.
        """
        lines = [line.strip() for line in content.split("\n") if line.strip()]
        if not lines:
            return None

        for i, line in enumerate(lines[:5]):
            if len(line) < 3 or re.match(r"^[\d\s,./\-]+$", line):
                continue
            has_suffix = any(suffix in line for suffix in COMPANY_SUFFIXES)
            if i == 0 and len(line) > 5:
                return {"vendor": line[:100], "confidence": 0.6 if has_suffix else 0.5}
            if has_suffix:
                return {"vendor": line[:100], "confidence": 0.7}

        return {"vendor": lines[0][:100], "confidence": 0.3}
