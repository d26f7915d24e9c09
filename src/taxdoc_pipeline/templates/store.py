"""
Template store: similarity lookup and feedback-driven updates.

Writes for one fingerprint key are serialized with a per-key lock, and every
update is an optimistic compare-and-set on the template's version in the
state store, so concurrent writers merge instead of racing. Templates are
never deleted; sustained negative feedback only deactivates them.
"""

import copy
import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ..resilience.errors import PipelineError, TemplateConflictError
from ..schemas.correction import Correction, FeedbackType
from ..schemas.extraction import FieldValue
from .fingerprint import Fingerprint, similarity
from .models import FieldPattern, Template, TemplateMatch
from .patterns import learn_pattern

if TYPE_CHECKING:
    from ..config import TemplateConfig
    from ..resilience.kernel import ResilienceKernel
    from ..state_store import StateStore, TemplateEventRecord

logger = logging.getLogger(__name__)

STORE_SERVICE = "template_store"


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


class TemplateStore:
    """Persistent, cached template store."""

    def __init__(
        self,
        state_store: "StateStore",
        config: "TemplateConfig | None" = None,
        kernel: "ResilienceKernel | None" = None,
        now: Callable[[], datetime] | None = None,
    ):
        if config is None:
            from ..config import TemplateConfig

            config = TemplateConfig()
        self._state = state_store
        self.config = config
        self._kernel = kernel
        self._now = now or (lambda: datetime.now(timezone.utc))

        self._cache: dict[str, Template] = {}
        self._cache_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

        self._load()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, template_id: str) -> Template | None:
        with self._cache_lock:
            cached = self._cache.get(template_id)
        if cached is not None:
            return copy.deepcopy(cached)
        record = self._io(lambda: self._state.get_template(template_id))
        if record is None:
            return None
        template = Template.from_record(record)
        self._cache_put(template)
        return template

    def list_templates(self, include_inactive: bool = False) -> list[Template]:
        with self._cache_lock:
            templates = [
                copy.deepcopy(t) for t in self._cache.values() if include_inactive or t.active
            ]
        return sorted(templates, key=lambda t: t.updated_at, reverse=True)

    def lookup(self, fingerprint: Fingerprint) -> TemplateMatch | None:
        """
        Best active template whose fingerprint similarity reaches the threshold.

        Ties are broken by usage count, then by most recent update.
        """
        if not fingerprint.is_informative:
            return None

        with self._cache_lock:
            candidates = [t for t in self._cache.values() if t.active]

        best: tuple[float, int, str] | None = None
        best_template: Template | None = None
        for template in candidates:
            score = similarity(fingerprint, template.fingerprint)
            if score < self.config.similarity_threshold:
                continue
            rank = (round(score, 6), template.usage_count, template.updated_at)
            if best is None or rank > best:
                best = rank
                best_template = template

        if best is None or best_template is None:
            return None
        return TemplateMatch(template=copy.deepcopy(best_template), similarity=best[0])

    def history(self, template_id: str) -> list["TemplateEventRecord"]:
        """Audit trail for a template."""
        return self._io(lambda: self._state.get_template_events(template_id))

    def analytics(self) -> dict[str, Any]:
        """Aggregate template statistics."""
        templates = self.list_templates(include_inactive=True)
        active = [t for t in templates if t.active]
        by_source: dict[str, int] = {}
        for t in templates:
            by_source[t.source_strategy] = by_source.get(t.source_strategy, 0) + 1

        most_used = sorted(active, key=lambda t: t.usage_count, reverse=True)[:5]
        return {
            "total_templates": len(templates),
            "active_templates": len(active),
            "inactive_templates": len(templates) - len(active),
            "average_weight": (
                round(sum(t.weight for t in active) / len(active), 4) if active else 0.0
            ),
            "total_usage": sum(t.usage_count for t in templates),
            "match_ready": sum(1 for t in active if t.weight >= self.config.match_threshold),
            "by_source_strategy": by_source,
            "most_used": [
                {
                    "template_id": t.template_id,
                    "vendor_hint": t.fingerprint.vendor_hint,
                    "usage_count": t.usage_count,
                    "weight": t.weight,
                }
                for t in most_used
            ],
        }

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert(self, fingerprint: Fingerprint, template: Template) -> Template:
        """
        Create the template for a fingerprint, or merge into the existing one.

        A second writer for the same key never creates a divergent template:
        its patterns are merged into the stored one, existing patterns win.
        """
        key = fingerprint.key
        with self._lock_for(key):
            existing = self._active_for_key(key)
            if existing is not None:
                return self._merge_into(existing.template_id, template.field_patterns)

            candidate = copy.deepcopy(template)
            candidate.fingerprint = fingerprint
            candidate.template_id = candidate.template_id or uuid.uuid4().hex
            created = self._insert(candidate, event_type="created")
            if created is not None:
                return created

            # Lost an insert race against another process
            existing = self._active_for_key(key)
            if existing is None:
                raise TemplateConflictError(candidate.template_id, 1)
            return self._merge_into(existing.template_id, template.field_patterns)

    def record_usage(self, template_id: str) -> Template:
        """Bump the usage count after a successful template-based extraction."""

        def bump(t: Template) -> Template:
            t.usage_count += 1
            return t

        return self._mutate(template_id, bump)

    def record_vision_success(
        self,
        fingerprint: Fingerprint,
        fields: dict[str, FieldValue],
        text: str,
        strategy: str = "AI_VISION",
        template_id: str | None = None,
    ) -> Template | None:
        """
        Learn from a vision-verified extraction.

        Creates a template for a new fingerprint, or promotes the existing one
        (weight + promotion step, usage + 1, missing patterns learned). A
        hybrid run passes the template it was reconciled with, which may have
        been matched by similarity under a different key.
        Returns None when nothing could be learned.
        """
        if not fingerprint.is_informative or not text.strip() or not fields:
            return None

        patterns = {
            name: pattern
            for name, value in fields.items()
            if (pattern := learn_pattern(name, value, text)) is not None
        }

        key = fingerprint.key
        with self._lock_for(key):
            existing = self.get(template_id) if template_id else None
            if existing is None or not existing.active:
                existing = self._active_for_key(key)
            if existing is None:
                if not patterns:
                    logger.debug("No learnable patterns for fingerprint %s", key[:12])
                    return None
                template = Template(
                    template_id=uuid.uuid4().hex,
                    fingerprint=fingerprint,
                    field_patterns=patterns,
                    weight=self.config.initial_weight,
                    usage_count=1,
                    source_strategy=strategy,
                )
                return self._insert(template, event_type="created") or self._active_for_key(key)

            step = self.config.promotion_step
            ceiling = self.config.max_weight

            def promote(t: Template) -> Template:
                t.weight = round(min(ceiling, t.weight + step), 4)
                t.usage_count += 1
                for name, pattern in patterns.items():
                    if name not in t.field_patterns or not t.field_patterns[name].is_usable:
                        t.field_patterns[name] = pattern
                return t

            return self._mutate(
                existing.template_id, promote, "promoted", {"strategy": strategy}
            )

    def apply_correction(
        self,
        fingerprint: Fingerprint,
        correction: Correction,
        text: str = "",
        template_id: str | None = None,
        confirmed_fields: dict[str, FieldValue] | None = None,
    ) -> Template | None:
        """
        Update a template from reviewer feedback.

        - CORRECT: weight increases up to the ceiling, every pattern scores a hit
        - INCORRECT: weight decreases; below the floor the template is deactivated
        - PARTIALLY_CORRECT: only the corrected fields' patterns change

        Without a template, one is created from the confirmed values.
        """
        target: Template | None = self.get(template_id) if template_id else None
        if target is None:
            target = self._active_for_key(fingerprint.key)
        if target is None:
            match = self.lookup(fingerprint)
            target = match.template if match else None

        if target is None:
            return self._create_from_correction(fingerprint, correction, text, confirmed_fields)

        relearned: dict[str, FieldPattern] = {}
        for fc in correction.field_corrections:
            pattern = learn_pattern(fc.field, fc.corrected, text) if text else None
            if pattern is not None:
                relearned[fc.field] = pattern

        cfg = self.config
        corrected = correction.corrected_fields

        def apply(t: Template) -> Template:
            if correction.feedback == FeedbackType.CORRECT:
                t.weight = round(min(cfg.max_weight, t.weight + cfg.correct_step), 4)
                t.correct_count += 1
                for pattern in t.field_patterns.values():
                    pattern.hits += 1
            elif correction.feedback == FeedbackType.INCORRECT:
                t.weight = round(max(0.0, t.weight - cfg.incorrect_step), 4)
                t.incorrect_count += 1
                for name, pattern in t.field_patterns.items():
                    if name not in relearned:
                        pattern.misses += 1
                if t.weight < cfg.deactivation_floor:
                    t.active = False
            else:
                for name in corrected:
                    if name in t.field_patterns and name not in relearned:
                        t.field_patterns[name].misses += 1

            if correction.feedback != FeedbackType.CORRECT:
                t.field_patterns.update(copy.deepcopy(relearned))
            return t

        lock_key = target.fingerprint_key
        with self._lock_for(lock_key):
            updated = self._mutate(
                target.template_id,
                apply,
                f"feedback_{correction.feedback.value.lower()}",
                {"corrected_fields": sorted(corrected)},
            )
        if not updated.active and target.active:
            logger.info(
                "Template %s deactivated (weight %.2f below %.2f)",
                updated.template_id,
                updated.weight,
                cfg.deactivation_floor,
            )
            self._io(
                lambda: self._state.add_template_event(
                    updated.template_id, "deactivated", {"weight": updated.weight}
                )
            )
        return updated

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _create_from_correction(
        self,
        fingerprint: Fingerprint,
        correction: Correction,
        text: str,
        confirmed_fields: dict[str, FieldValue] | None,
    ) -> Template | None:
        if not fingerprint.is_informative or not text.strip():
            return None

        values: dict[str, FieldValue] = {}
        if correction.feedback != FeedbackType.INCORRECT and confirmed_fields:
            values.update(confirmed_fields)
        for fc in correction.field_corrections:
            values[fc.field] = fc.corrected

        patterns = {
            name: pattern
            for name, value in values.items()
            if (pattern := learn_pattern(name, value, text)) is not None
        }
        if not patterns:
            return None

        template = Template(
            template_id=uuid.uuid4().hex,
            fingerprint=fingerprint,
            field_patterns=patterns,
            weight=self.config.initial_weight,
            source_strategy="CORRECTION",
        )
        return self.upsert(fingerprint, template)

    def _merge_into(self, template_id: str, patterns: dict[str, FieldPattern]) -> Template:
        incoming = copy.deepcopy(patterns)

        def merge(t: Template) -> Template:
            for name, pattern in incoming.items():
                if name not in t.field_patterns or not t.field_patterns[name].is_usable:
                    t.field_patterns[name] = pattern
            return t

        return self._mutate(template_id, merge, "merged", {"fields": sorted(incoming)})

    def _insert(self, template: Template, event_type: str) -> Template | None:
        now = _iso(self._now())
        template.created_at = now
        template.updated_at = now
        template.version = 1
        inserted = self._io(
            lambda: self._state.insert_template(
                template_id=template.template_id,
                fingerprint_key=template.fingerprint_key,
                data_json=template.payload_json(),
                weight=template.weight,
                active=template.active,
                usage_count=template.usage_count,
                created_at=now,
            )
        )
        if not inserted:
            return None
        self._cache_put(template)
        self._io(
            lambda: self._state.add_template_event(
                template.template_id,
                event_type,
                {"weight": template.weight, "fields": sorted(template.field_patterns)},
            )
        )
        logger.info(
            "Template %s %s for vendor %s",
            template.template_id[:8],
            event_type,
            template.fingerprint.vendor_hint or "unknown",
        )
        return copy.deepcopy(template)

    def _mutate(
        self,
        template_id: str,
        fn: Callable[[Template], Template],
        event_type: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> Template:
        """Read-modify-write with version compare-and-set, retried on conflict."""
        attempts = self.config.max_write_retries
        for attempt in range(1, attempts + 1):
            record = self._io(lambda: self._state.get_template(template_id))
            if record is None:
                raise PipelineError(
                    f"Template {template_id} not found",
                    code="TEMPLATE_NOT_FOUND",
                    recoverable=False,
                )
            current = Template.from_record(record)
            updated = fn(copy.deepcopy(current))
            updated.updated_at = _iso(self._now())

            ok = self._io(
                lambda: self._state.update_template(
                    template_id=template_id,
                    expected_version=current.version,
                    data_json=updated.payload_json(),
                    weight=updated.weight,
                    active=updated.active,
                    usage_count=updated.usage_count,
                    updated_at=updated.updated_at,
                )
            )
            if ok:
                updated.version = current.version + 1
                self._cache_put(updated)
                if event_type:
                    event = {"weight": updated.weight, "version": updated.version}
                    event.update(detail or {})
                    self._io(
                        lambda: self._state.add_template_event(template_id, event_type, event)
                    )
                return copy.deepcopy(updated)

            logger.debug(
                "Template %s version conflict (attempt %d/%d)", template_id[:8], attempt, attempts
            )

        raise TemplateConflictError(template_id, attempts)

    def _active_for_key(self, key: str) -> Template | None:
        record = self._io(lambda: self._state.get_active_template_by_key(key))
        if record is None:
            return None
        template = Template.from_record(record)
        self._cache_put(template)
        return template

    def _lock_for(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _cache_put(self, template: Template) -> None:
        with self._cache_lock:
            self._cache[template.template_id] = copy.deepcopy(template)

    def _load(self) -> None:
        records = self._io(lambda: self._state.list_templates(include_inactive=True))
        with self._cache_lock:
            for record in records:
                self._cache[record.template_id] = Template.from_record(record)
        logger.debug("Loaded %d templates", len(records))

    def _io(self, operation: Callable[[], Any]) -> Any:
        if self._kernel is None:
            return operation()
        return self._kernel.execute(STORE_SERVICE, operation)
