"""
Confidence scoring module.

Computes aggregate confidence per strategy.
Determines review state based on thresholds.
"""

from .scorer import ConfidenceScorer, ConfidenceThresholds, ReviewState

__all__ = [
    "ConfidenceScorer",
    "ConfidenceThresholds",
    "ReviewState",
]
