"""
Amount and date parsing shared by the heuristic extractor and templates.

Supported formats:
- Dates: Y-m-d, d.m.Y, d.m.y, d/m/Y, d. Month Y (German), d Month Y (English)
- Amounts: 1.234,56 (European), 1,234.56 (English), plain 1234.56
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

# Date patterns (ordered by specificity)
DATE_PATTERNS = [
    # ISO format: 2024-11-18
    (r"\b(\d{4})-(\d{2})-(\d{2})\b", "%Y-%m-%d", "iso"),
    # Dot format: 18.11.2024
    (r"\b(\d{1,2})\.(\d{1,2})\.(\d{4})\b", "%d.%m.%Y", "dot"),
    # Dot format: 18.11.24 (2-digit year)
    (r"\b(\d{1,2})\.(\d{1,2})\.(\d{2})\b", "%d.%m.%y", "dot_short"),
    # Slash format: 18/11/2024 (day first, as on EU invoices)
    (r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b", "%d/%m/%Y", "slash"),
    # Month names: 18. November 2024, 18 Nov 2024
    (
        r"\b(\d{1,2})\.?\s*([A-Za-zä]{3,9})\.?\s+(\d{4})\b",
        None,
        "month_name",
    ),
]

MONTH_NAMES = {
    "januar": 1,
    "january": 1,
    "jan": 1,
    "februar": 2,
    "february": 2,
    "feb": 2,
    "märz": 3,
    "march": 3,
    "mar": 3,
    "april": 4,
    "apr": 4,
    "mai": 5,
    "may": 5,
    "juni": 6,
    "june": 6,
    "jun": 6,
    "juli": 7,
    "july": 7,
    "jul": 7,
    "august": 8,
    "aug": 8,
    "september": 9,
    "sep": 9,
    "sept": 9,
    "oktober": 10,
    "october": 10,
    "oct": 10,
    "okt": 10,
    "november": 11,
    "nov": 11,
    "dezember": 12,
    "december": 12,
    "dec": 12,
    "dez": 12,
}

# Regex fragment matching one amount in either notation
AMOUNT_VALUE_PATTERN = r"-?\d{1,3}(?:[.,\s]\d{3})+[.,]\d{2}|-?\d+[.,]\d{2}"
DATE_VALUE_PATTERN = (
    r"\d{4}-\d{2}-\d{2}|\d{1,2}[./]\d{1,2}[./]\d{2,4}|\d{1,2}\.?\s*[A-Za-zä]{3,9}\.?\s+\d{4}"
)


def parse_german_amount(amount_str: str) -> Decimal:
    """Parse European format amount (1.234,56) to Decimal."""
    # Remove thousands separators (dots) and convert comma to dot
    cleaned = amount_str.replace(".", "").replace(" ", "").replace(",", ".")
    return Decimal(cleaned)


def parse_english_amount(amount_str: str) -> Decimal:
    """Parse English format amount (1,234.56) to Decimal."""
    # Remove thousands separators (commas)
    cleaned = amount_str.replace(",", "").replace(" ", "")
    return Decimal(cleaned)


def parse_amount_text(amount_str: str) -> Decimal | None:
    """Parse an amount in either notation; the last separator is the decimal mark."""
    text = amount_str.strip()
    if not text:
        return None
    try:
        if re.search(r",\d{2}$", text):
            value = parse_german_amount(text)
        else:
            value = parse_english_amount(text)
    except InvalidOperation:
        return None
    # "NaN" and "Infinity" parse as Decimals but are not amounts
    return value if value.is_finite() else None


def parse_date_match(match: re.Match, date_format: str | None, pattern_type: str) -> date | None:
    """Parse a date regex match into a date."""
    try:
        if pattern_type == "month_name":
            day = int(match.group(1))
            month = MONTH_NAMES.get(match.group(2).lower())
            year = int(match.group(3))
            if month:
                return date(year, month, day)
        elif date_format:
            return datetime.strptime(match.group(0), date_format).date()
    except (ValueError, AttributeError):
        pass
    return None


def parse_date_text(text: str) -> date | None:
    """Parse the first recognizable date in a string."""
    for pattern, date_format, pattern_type in DATE_PATTERNS:
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            parsed = parse_date_match(match, date_format, pattern_type)
            if parsed:
                return parsed
    return None


def amount_renderings(value: Decimal) -> list[str]:
    """Ways an amount may be printed on a document, most specific first."""
    quantized = value.quantize(Decimal("0.01"))
    english = f"{quantized:,.2f}"
    plain = f"{quantized:.2f}"
    german = english.replace(",", "_").replace(".", ",").replace("_", ".")
    plain_comma = plain.replace(".", ",")
    seen: list[str] = []
    for candidate in (english, german, plain, plain_comma):
        if candidate not in seen:
            seen.append(candidate)
    return seen


def date_renderings(value: date) -> list[str]:
    """Ways a date may be printed on a document."""
    return [
        value.isoformat(),
        value.strftime("%d.%m.%Y"),
        value.strftime("%d/%m/%Y"),
        f"{value.day}.{value.month}.{value.year}",
        value.strftime("%d.%m.%y"),
    ]
