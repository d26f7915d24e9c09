"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Learned templates and their audit trail
- Extraction results (idempotence by content hash)
- Corrections and accuracy records

Enforces at most one active template per fingerprint key.
"""

from .sqlite_store import (
    AccuracyRecord,
    ResultRecord,
    StateStore,
    TemplateEventRecord,
    TemplateRecord,
)

__all__ = [
    "StateStore",
    "TemplateRecord",
    "TemplateEventRecord",
    "ResultRecord",
    "AccuracyRecord",
]
