"""
User corrections feeding the learning loop.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .extraction import FieldValue, field_from_dict, field_to_dict


class FeedbackType(str, Enum):
    """Reviewer verdict on an extraction result."""

    CORRECT = "CORRECT"
    PARTIALLY_CORRECT = "PARTIALLY_CORRECT"
    INCORRECT = "INCORRECT"


@dataclass(frozen=True)
class FieldCorrection:
    """One corrected field: what was extracted and what it should have been."""

    field: str
    original: FieldValue | None
    corrected: FieldValue

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "original": field_to_dict(self.original) if self.original else None,
            "corrected": field_to_dict(self.corrected),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldCorrection":
        return cls(
            field=data["field"],
            original=field_from_dict(data["original"]) if data.get("original") else None,
            corrected=field_from_dict(data["corrected"]),
        )


@dataclass(frozen=True)
class Correction:
    """A reviewer's correction of one extraction result. Immutable once stored."""

    feedback: FeedbackType
    field_corrections: tuple[FieldCorrection, ...] = ()
    user_id: str | None = None
    notes: str | None = None
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    @property
    def corrected_fields(self) -> set[str]:
        return {fc.field for fc in self.field_corrections}

    def to_dict(self) -> dict[str, Any]:
        return {
            "feedback": self.feedback.value,
            "field_corrections": [fc.to_dict() for fc in self.field_corrections],
            "user_id": self.user_id,
            "notes": self.notes,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Correction":
        return cls(
            feedback=FeedbackType(data["feedback"]),
            field_corrections=tuple(
                FieldCorrection.from_dict(fc) for fc in data.get("field_corrections", [])
            ),
            user_id=data.get("user_id"),
            notes=data.get("notes"),
            created_at=data["created_at"],
        )
