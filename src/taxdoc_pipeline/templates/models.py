"""
Template data model.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..schemas.extraction import FieldKind
from .fingerprint import Fingerprint


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class FieldPattern:
    """How to find one field in a document of this template."""

    field: str
    kind: FieldKind
    # Regex with one capture group for the value (label-anchored)
    regex: str | None = None
    # Label text that precedes the value
    label: str | None = None
    # Constant value for fields that never change per issuer (vendor name)
    constant: str | None = None
    hits: int = 0
    misses: int = 0

    @property
    def accuracy(self) -> float:
        """Laplace-smoothed hit ratio."""
        return (self.hits + 1) / (self.hits + self.misses + 1)

    @property
    def is_usable(self) -> bool:
        return bool(self.regex or self.constant)

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "kind": self.kind.value,
            "regex": self.regex,
            "label": self.label,
            "constant": self.constant,
            "hits": self.hits,
            "misses": self.misses,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldPattern":
        return cls(
            field=data["field"],
            kind=FieldKind(data["kind"]),
            regex=data.get("regex"),
            label=data.get("label"),
            constant=data.get("constant"),
            hits=data.get("hits", 0),
            misses=data.get("misses", 0),
        )


@dataclass
class Template:
    """Learned extraction pattern for one fingerprint."""

    template_id: str
    fingerprint: Fingerprint
    field_patterns: dict[str, FieldPattern] = field(default_factory=dict)
    weight: float = 0.5
    usage_count: int = 0
    active: bool = True
    version: int = 1
    source_strategy: str = "AI_VISION"
    correct_count: int = 0
    incorrect_count: int = 0
    created_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)

    @property
    def fingerprint_key(self) -> str:
        return self.fingerprint.key

    def age_days(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        updated = datetime.fromisoformat(self.updated_at.replace("Z", "+00:00"))
        return max(0.0, (now - updated).total_seconds() / 86400.0)

    def payload_json(self) -> str:
        """Serialized fields that are not stored in their own columns."""
        return json.dumps(
            {
                "fingerprint": self.fingerprint.to_dict(),
                "field_patterns": {k: p.to_dict() for k, p in self.field_patterns.items()},
                "source_strategy": self.source_strategy,
                "correct_count": self.correct_count,
                "incorrect_count": self.incorrect_count,
            }
        )

    @classmethod
    def from_record(cls, record: Any) -> "Template":
        """Create from a state store TemplateRecord."""
        payload = json.loads(record.data_json)
        return cls(
            template_id=record.template_id,
            fingerprint=Fingerprint.from_dict(payload["fingerprint"]),
            field_patterns={
                k: FieldPattern.from_dict(v) for k, v in payload.get("field_patterns", {}).items()
            },
            weight=record.weight,
            usage_count=record.usage_count,
            active=record.active,
            version=record.version,
            source_strategy=payload.get("source_strategy", "AI_VISION"),
            correct_count=payload.get("correct_count", 0),
            incorrect_count=payload.get("incorrect_count", 0),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "template_id": self.template_id,
            "fingerprint_key": self.fingerprint_key,
            "fingerprint": self.fingerprint.to_dict(),
            "field_patterns": {k: p.to_dict() for k, p in self.field_patterns.items()},
            "weight": self.weight,
            "usage_count": self.usage_count,
            "active": self.active,
            "version": self.version,
            "source_strategy": self.source_strategy,
            "correct_count": self.correct_count,
            "incorrect_count": self.incorrect_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class TemplateMatch:
    """Result of a similarity lookup."""

    template: Template
    similarity: float
