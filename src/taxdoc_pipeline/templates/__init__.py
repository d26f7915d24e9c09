"""
Template/fingerprint store.

Learns extraction templates per document fingerprint and updates them from
vision successes and reviewer feedback.
"""

from .fingerprint import Fingerprint, compute_fingerprint, similarity
from .models import FieldPattern, Template, TemplateMatch
from .patterns import TemplateApplier, learn_pattern
from .store import TemplateStore

__all__ = [
    "Fingerprint",
    "compute_fingerprint",
    "similarity",
    "FieldPattern",
    "Template",
    "TemplateMatch",
    "TemplateApplier",
    "learn_pattern",
    "TemplateStore",
]
