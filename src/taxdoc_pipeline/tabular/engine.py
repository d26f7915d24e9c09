"""
Tabular aggregation for spreadsheet-style tax reports.

Reports mix individual transaction rows with per-country/category subtotal
rows. Summing every row double-counts the transactions already folded into a
subtotal, so each group contributes either its subtotal or, when it has none,
the sum of its itemized rows.
"""

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

SUBTOTAL_KEYWORDS = ("subtotal", "sub-total", "sub total", "total", "totals", "summary", "sum")
_KEYWORD_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(k) for k in SUBTOTAL_KEYWORDS) + r")\b", re.IGNORECASE
)
# Report-wide total rows; checked against the computed total, never summed
_GRAND_TOTAL_RE = re.compile(r"\b(?:grand|overall|report)\s+total\b", re.IGNORECASE)
GRAND_TOTAL_GROUPS = frozenset({"total", "totals", "grand total", "sum"})

# A keyword-less row this many times larger than every sibling is a subtotal
MATERIALITY_FACTOR = Decimal("2")

BASE_CONFIDENCE = 0.95
AMBIGUITY_PENALTY = 0.15
MIN_CONFIDENCE = 0.5


class Method(str, Enum):
    """How the grand total was assembled."""

    SUBTOTALS_ONLY = "SUBTOTALS_ONLY"
    ITEMIZED = "ITEMIZED"
    MIXED = "MIXED"
    EMPTY = "EMPTY"


class Resolution(str, Enum):
    """How one group's contribution was chosen."""

    SUBTOTAL = "SUBTOTAL"
    ITEMIZED = "ITEMIZED"
    AMBIGUOUS = "AMBIGUOUS"


@dataclass(frozen=True)
class TaxRow:
    """One report row: group key, descriptor text and its tax amount."""

    group: str
    description: str
    amount: Decimal
    position: int = 0


@dataclass(frozen=True)
class GroupBreakdown:
    group: str
    contribution: Decimal
    resolution: Resolution
    row_count: int
    subtotal_positions: tuple[int, ...] = ()
    used_positions: tuple[int, ...] = ()
    excluded_amount: Decimal = Decimal("0.00")

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": self.group,
            "contribution": str(self.contribution),
            "resolution": self.resolution.value,
            "row_count": self.row_count,
            "subtotal_positions": list(self.subtotal_positions),
            "used_positions": list(self.used_positions),
            "excluded_amount": str(self.excluded_amount),
        }


@dataclass(frozen=True)
class AggregationResult:
    total: Decimal
    groups: tuple[GroupBreakdown, ...]
    confidence: float
    method: Method
    warnings: tuple[str, ...] = field(default_factory=tuple)
    # Grand total printed in the report itself, if it has one
    reported_total: Decimal | None = None

    @property
    def ambiguous_groups(self) -> list[str]:
        return [g.group for g in self.groups if g.resolution == Resolution.AMBIGUOUS]

    def breakdown(self) -> dict[str, Decimal]:
        return {g.group: g.contribution for g in self.groups}

    def matches(self, expected: Decimal | float | str, tolerance: Decimal | float = 0.01) -> bool:
        """True when the total is within ``tolerance`` of an externally known value."""
        return abs(self.total - Decimal(str(expected))) <= Decimal(str(tolerance))

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": str(self.total),
            "confidence": self.confidence,
            "method": self.method.value,
            "groups": [g.to_dict() for g in self.groups],
            "warnings": list(self.warnings),
            "reported_total": str(self.reported_total) if self.reported_total is not None else None,
        }


def has_subtotal_keyword(description: str) -> bool:
    return bool(description and _KEYWORD_RE.search(description))


def is_grand_total(row: TaxRow) -> bool:
    """A row carrying the report-wide total rather than a group's figure."""
    if _GRAND_TOTAL_RE.search(row.description) or _GRAND_TOTAL_RE.search(row.group):
        return True
    group = row.group.strip().lower()
    if group in GRAND_TOTAL_GROUPS:
        return True
    # "Total" on a row with no group of its own
    return group in ("", "unknown") and row.description.strip().lower() in GRAND_TOTAL_GROUPS


def classify_group(rows: list[TaxRow]) -> list[bool]:
    """
    Flag the subtotal rows of one group.

    A row is a subtotal when its descriptor names one, when it is the sole
    row of its group, or (without any keyword row) when it is materially
    larger than every sibling.
    """
    if len(rows) == 1:
        return [True]

    flags = [has_subtotal_keyword(r.description) for r in rows]
    if any(flags):
        return flags

    for i, row in enumerate(rows):
        siblings = [abs(r.amount) for j, r in enumerate(rows) if j != i]
        largest = max(siblings)
        if largest > 0 and abs(row.amount) >= largest * MATERIALITY_FACTOR:
            flags[i] = True
    return flags


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _resolve_group(name: str, rows: list[TaxRow]) -> GroupBreakdown:
    flags = classify_group(rows)
    subtotals = [r for r, flag in zip(rows, flags) if flag]
    group_sum = sum((r.amount for r in rows), Decimal("0"))

    if not subtotals:
        used = rows
        resolution = Resolution.ITEMIZED
    elif len(subtotals) == 1:
        used = subtotals
        resolution = Resolution.SUBTOTAL
    else:
        # Running subtotals precede the final one
        used = [max(subtotals, key=lambda r: r.position)]
        resolution = Resolution.AMBIGUOUS

    contribution = _quantize(sum((r.amount for r in used), Decimal("0")))
    return GroupBreakdown(
        group=name,
        contribution=contribution,
        resolution=resolution,
        row_count=len(rows),
        subtotal_positions=tuple(r.position for r in subtotals),
        used_positions=tuple(r.position for r in used),
        excluded_amount=_quantize(group_sum - sum((r.amount for r in used), Decimal("0"))),
    )


def aggregate(rows: list[TaxRow]) -> AggregationResult:
    """Grand total of a report, counting each group exactly once."""
    if not rows:
        return AggregationResult(
            total=Decimal("0.00"), groups=(), confidence=0.0, method=Method.EMPTY
        )

    grouped: "OrderedDict[str, list[TaxRow]]" = OrderedDict()
    grand_totals: list[TaxRow] = []
    for row in sorted(rows, key=lambda r: r.position):
        if is_grand_total(row):
            grand_totals.append(row)
            continue
        grouped.setdefault(row.group.strip() or "Unknown", []).append(row)

    groups = tuple(_resolve_group(name, members) for name, members in grouped.items())
    total = _quantize(sum((g.contribution for g in groups), Decimal("0")))

    warnings: list[str] = []
    reported_total = _quantize(grand_totals[-1].amount) if grand_totals else None
    disagrees = reported_total is not None and abs(reported_total - total) > CENT
    if disagrees:
        warnings.append(f"Report states a total of {reported_total}, computed {total}")
    ambiguous = [g for g in groups if g.resolution == Resolution.AMBIGUOUS]
    for g in ambiguous:
        warnings.append(
            f"Group {g.group} has {len(g.subtotal_positions)} subtotal rows; "
            f"used the last one (row {g.used_positions[0]})"
        )

    confidence = max(MIN_CONFIDENCE, BASE_CONFIDENCE - AMBIGUITY_PENALTY * len(ambiguous))
    if disagrees:
        confidence = MIN_CONFIDENCE

    resolutions = {g.resolution for g in groups}
    if not groups:
        method = Method.EMPTY
    elif resolutions == {Resolution.ITEMIZED}:
        method = Method.ITEMIZED
    elif Resolution.ITEMIZED not in resolutions:
        method = Method.SUBTOTALS_ONLY
    else:
        method = Method.MIXED

    logger.info(
        "Aggregated %d rows in %d groups: total=%s method=%s confidence=%.2f",
        len(rows),
        len(groups),
        total,
        method.value,
        confidence,
    )
    for w in warnings:
        logger.warning(w)

    return AggregationResult(
        total=total,
        groups=groups,
        confidence=round(confidence, 4),
        method=method,
        warnings=tuple(warnings),
        reported_total=reported_total,
    )
