"""
Tabular aggregation engine for country/category tax reports.
"""

from .engine import (
    AggregationResult,
    GroupBreakdown,
    Method,
    Resolution,
    TaxRow,
    aggregate,
    classify_group,
    is_grand_total,
)
from .reader import read_report, read_table

__all__ = [
    "AggregationResult",
    "GroupBreakdown",
    "Method",
    "Resolution",
    "TaxRow",
    "aggregate",
    "classify_group",
    "is_grand_total",
    "read_report",
    "read_table",
]
