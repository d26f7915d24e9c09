"""
Confidence scoring implementation.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from ..schemas.document import Strategy
from ..schemas.extraction import FieldValue


class ReviewState(str, Enum):
    """Where a result goes next."""

    AUTO = "AUTO"
    REVIEW = "REVIEW"
    MANUAL = "MANUAL"


@dataclass
class ConfidenceThresholds:
    """Configurable thresholds for review state determination."""

    auto_threshold: float = 0.85  # Above this: AUTO accept
    review_threshold: float = 0.60  # Above this: REVIEW, below: MANUAL

    # Minimum field confidences for AUTO
    min_amount_confidence: float = 0.7
    min_date_confidence: float = 0.6


AMOUNT_FIELDS = ("total_amount", "vat_amount")


class ConfidenceScorer:
    """
    Computes aggregate confidence and review state.

    The aggregate is a weighted average of field confidences, capped by the
    strategy's ceiling so the strategy stays visible in confidence-based
    routing (in order of trust):
    1. Template match / hybrid: up to 0.95
    2. Vision inference: up to 0.90
    3. Fallback heuristics: up to 0.30
    """

    STRATEGY_CEILING = {
        Strategy.TEMPLATE_MATCH: 0.95,
        Strategy.HYBRID: 0.95,
        Strategy.AI_VISION: 0.90,
        Strategy.FALLBACK: 0.30,
    }

    FIELD_WEIGHTS = {
        "total_amount": 0.4,
        "vat_amount": 0.4,
        "net_amount": 0.2,
        "invoice_date": 0.3,
        "vendor_name": 0.2,
        "vat_rate": 0.1,
        "invoice_number": 0.1,
        "vat_number": 0.1,
    }
    DEFAULT_WEIGHT = 0.1

    def __init__(self, thresholds: Optional[ConfidenceThresholds] = None):
        """Initialize scorer with thresholds."""
        self.thresholds = thresholds or ConfidenceThresholds()

    def aggregate(self, fields: dict[str, FieldValue], strategy: Strategy) -> float:
        """Deterministic aggregate confidence for a set of fields and a strategy."""
        if not fields:
            return 0.0
        total_weight = 0.0
        weighted = 0.0
        for name in sorted(fields):
            weight = self.FIELD_WEIGHTS.get(name, self.DEFAULT_WEIGHT)
            total_weight += weight
            weighted += weight * fields[name].confidence
        score = weighted / total_weight
        return round(min(score, self.STRATEGY_CEILING[strategy]), 4)

    def compute_review_state(self, overall: float, fields: dict[str, FieldValue]) -> ReviewState:
        """
        Compute review state from the aggregate and critical fields.

        Rules:
        - AUTO: Overall >= auto_threshold AND amount and date above minimums
        - REVIEW: Overall >= review_threshold
        - MANUAL: Otherwise
        """
        amount_conf = max((fields[n].confidence for n in AMOUNT_FIELDS if n in fields), default=0.0)
        date_field = fields.get("invoice_date")
        date_conf = date_field.confidence if date_field is not None else 0.0

        critical_fields_ok = (
            amount_conf >= self.thresholds.min_amount_confidence
            and date_conf >= self.thresholds.min_date_confidence
        )

        if overall >= self.thresholds.auto_threshold and critical_fields_ok:
            return ReviewState.AUTO
        elif overall >= self.thresholds.review_threshold:
            return ReviewState.REVIEW
        else:
            return ReviewState.MANUAL

    def validate_fields(self, fields: dict[str, FieldValue], today: date | None = None) -> list[str]:
        """
        Consistency checks on extracted tax figures.

        Used for quality records and to flag results needing review.
        """
        issues = []
        today = today or date.today()

        total = fields.get("total_amount")
        vat = fields.get("vat_amount")
        net = fields.get("net_amount")
        rate = fields.get("vat_rate")
        invoice_date = fields.get("invoice_date")

        if total is None and vat is None:
            issues.append("No total or VAT amount")

        for name in ("total_amount", "vat_amount", "net_amount"):
            value = fields.get(name)
            if value is not None and value.value < 0:
                issues.append(f"{name} is negative: {value.display()}")

        if total is not None and vat is not None and vat.value > total.value:
            issues.append(f"VAT {vat.display()} exceeds total {total.display()}")

        if total is not None and vat is not None and net is not None:
            if abs(net.value + vat.value - total.value) > Decimal("0.02"):
                issues.append(
                    f"Net {net.display()} + VAT {vat.display()} != total {total.display()}"
                )

        if rate is not None and not (Decimal("0") <= rate.value <= Decimal("30")):
            issues.append(f"VAT rate out of range: {rate.display()}")

        if invoice_date is not None and invoice_date.value > today:
            issues.append(f"Invoice date in the future: {invoice_date.display()}")

        return issues

    def quality_score(self, issues: list[str]) -> float:
        """Data quality in [0, 1]; each issue costs 0.2."""
        return max(0.0, 1.0 - 0.2 * len(issues))
