"""Tests for fingerprints, pattern learning and the template store."""

import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from taxdoc_pipeline.config import TemplateConfig
from taxdoc_pipeline.schemas.correction import Correction, FeedbackType, FieldCorrection
from taxdoc_pipeline.schemas.document import Document, ProcessingContext
from taxdoc_pipeline.schemas.extraction import FIELD_KINDS, FieldKind, make_field
from taxdoc_pipeline.templates import (
    Template,
    TemplateApplier,
    TemplateStore,
    compute_fingerprint,
    learn_pattern,
    similarity,
)
from taxdoc_pipeline.templates.fingerprint import line_shape
from taxdoc_pipeline.templates.patterns import age_factor

from conftest import (
    SAMPLE_INVOICE_TEXT,
    SAMPLE_INVOICE_TEXT_NEXT,
    SAMPLE_RECEIPT_TEXT_DE,
    SAMPLE_VISION_FIELDS,
    SAMPLE_VISION_FIELDS_NEXT,
    make_document,
)


def vision_fields(raw: dict) -> dict:
    """Typed field values from a vision-style payload."""
    return {
        name: make_field(FIELD_KINDS[name], entry["value"], entry["confidence"], "vision")
        for name, entry in raw.items()
    }


def fingerprint_of(text: str, filename: str = "acme.txt", context=None):
    return compute_fingerprint(make_document(text, filename), text, context)


@pytest.fixture
def template_store(state_store):
    return TemplateStore(state_store, TemplateConfig())


class TestFingerprint:
    """Tests for document fingerprints."""

    def test_deterministic(self):
        a = fingerprint_of(SAMPLE_INVOICE_TEXT)
        b = fingerprint_of(SAMPLE_INVOICE_TEXT)
        assert a == b
        assert a.key == b.key

    def test_same_issuer_different_figures_share_key(self):
        """Amounts, dates and numbers do not change the lookup key."""
        first = fingerprint_of(SAMPLE_INVOICE_TEXT, "acme-0042.txt")
        second = fingerprint_of(SAMPLE_INVOICE_TEXT_NEXT, "acme-0057.txt")

        assert first.key == second.key
        assert first.filename_pattern == second.filename_pattern == "acme-#"
        assert similarity(first, second) >= 0.9

    def test_different_issuer_is_dissimilar(self):
        invoice = fingerprint_of(SAMPLE_INVOICE_TEXT)
        receipt = fingerprint_of(SAMPLE_RECEIPT_TEXT_DE, "spar.txt")

        assert invoice.key != receipt.key
        assert similarity(invoice, receipt) < 0.7

    def test_vendor_hint_prefers_company_suffix(self):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        assert fp.vendor_hint == "acme supplies ltd"
        assert {"invoice", "vat", "total", "net"} <= fp.keywords

    def test_context_vendor_overrides_text(self):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT, context=ProcessingContext(known_vendor="ACME Ltd."))
        assert fp.vendor_hint == "acme ltd"

    def test_mime_families_never_match(self):
        text_fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        csv_doc = Document(content=SAMPLE_INVOICE_TEXT.encode(), mime_type="text/csv", filename="a.csv")
        csv_fp = compute_fingerprint(csv_doc, SAMPLE_INVOICE_TEXT)
        assert similarity(text_fp, csv_fp) == 0.0

    def test_image_without_context_is_not_informative(self):
        image = Document(content=b"\x89PNG\r\n\x1a\n....", mime_type="image/png", filename="scan.png")
        assert not compute_fingerprint(image, "").is_informative
        assert compute_fingerprint(
            image, "", ProcessingContext(known_vendor="Acme Supplies Ltd")
        ).is_informative

    def test_line_shape_ignores_figures(self):
        assert line_shape("Invoice No: 12345") == line_shape("Invoice No: 98")
        assert line_shape("Invoice No: 12345") == "Xx Xx: #"

    def test_round_trip_dict(self):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        assert type(fp).from_dict(fp.to_dict()) == fp


class TestPatternLearning:
    """Tests for label-anchored patterns."""

    def test_learns_label_for_amount(self):
        value = make_field(FieldKind.AMOUNT, "1107.00", 0.9)
        pattern = learn_pattern("total_amount", value, SAMPLE_INVOICE_TEXT)

        assert pattern is not None
        assert pattern.label == "Total Due"

    def test_rate_is_not_anchored_inside_vat_number(self):
        """The 23 inside IE1234567T is skipped for the VAT 23% label."""
        value = make_field(FieldKind.RATE, "23", 0.9)
        pattern = learn_pattern("vat_rate", value, SAMPLE_INVOICE_TEXT)

        assert pattern is not None
        assert pattern.label == "VAT"

    def test_constant_fields_remembered(self):
        value = make_field(FieldKind.TEXT, "Acme Supplies Ltd", 0.9)
        pattern = learn_pattern("vendor_name", value, SAMPLE_INVOICE_TEXT)

        assert pattern is not None
        assert pattern.constant == "Acme Supplies Ltd"

    def test_value_not_in_text(self):
        value = make_field(FieldKind.AMOUNT, "99999.99", 0.9)
        assert learn_pattern("total_amount", value, SAMPLE_INVOICE_TEXT) is None

    def test_applier_reads_next_document(self):
        """Patterns learned on one invoice read the next one from the same issuer."""
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        patterns = {
            name: learn_pattern(name, value, SAMPLE_INVOICE_TEXT)
            for name, value in vision_fields(SAMPLE_VISION_FIELDS).items()
        }
        template = Template(template_id="t1", fingerprint=fp, field_patterns=patterns)

        fields = TemplateApplier(prior=0.9).apply(template, SAMPLE_INVOICE_TEXT_NEXT)

        assert fields["total_amount"].value == Decimal("738.00")
        assert fields["vat_amount"].value == Decimal("138.00")
        assert fields["net_amount"].value == Decimal("600.00")
        assert fields["vat_rate"].value == Decimal("23")
        assert fields["invoice_date"].value == date(2024, 4, 2)
        assert fields["invoice_number"].value == "INV-2024-0057"
        assert fields["vendor_name"].value == "Acme Supplies Ltd"
        assert fields["vat_number"].value == "IE1234567T"
        assert fields["total_amount"].confidence == pytest.approx(0.9, abs=0.01)
        assert fields["total_amount"].source == "template:t1"

    def test_age_decay(self):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        template = Template(
            template_id="t1",
            fingerprint=fp,
            updated_at=(now - timedelta(days=730)).isoformat(),
        )
        assert age_factor(template, now) == pytest.approx(0.7)


class TestTemplateStore:
    """Tests for lookup, creation and promotion."""

    def test_empty_store_has_no_match(self, template_store):
        assert template_store.lookup(fingerprint_of(SAMPLE_INVOICE_TEXT)) is None

    def test_vision_success_creates_template(self, template_store):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        template = template_store.record_vision_success(
            fp, vision_fields(SAMPLE_VISION_FIELDS), SAMPLE_INVOICE_TEXT
        )

        assert template is not None
        assert template.weight == 0.5
        assert template.usage_count == 1
        assert set(template.field_patterns) == set(SAMPLE_VISION_FIELDS)

        match = template_store.lookup(fingerprint_of(SAMPLE_INVOICE_TEXT_NEXT))
        assert match is not None
        assert match.template.template_id == template.template_id

    def test_three_promotions_reach_match_threshold(self, template_store):
        """0.5 -> 0.6 -> 0.7 -> 0.8 after three further vision successes."""
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        fields = vision_fields(SAMPLE_VISION_FIELDS)
        weights = [
            template_store.record_vision_success(fp, fields, SAMPLE_INVOICE_TEXT).weight
            for _ in range(4)
        ]

        assert weights == [0.5, 0.6, 0.7, 0.8]
        assert weights[-1] >= template_store.config.match_threshold

    def test_weight_never_exceeds_ceiling(self, template_store):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        fields = vision_fields(SAMPLE_VISION_FIELDS)
        for _ in range(10):
            template = template_store.record_vision_success(fp, fields, SAMPLE_INVOICE_TEXT)
        assert template.weight == 0.98

    def test_upsert_keeps_candidate_weight(self, template_store):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        patterns = {
            "total_amount": learn_pattern(
                "total_amount", make_field(FieldKind.AMOUNT, "1107.00", 0.9), SAMPLE_INVOICE_TEXT
            )
        }
        created = template_store.upsert(
            fp, Template(template_id="", fingerprint=fp, field_patterns=patterns, weight=0.85)
        )

        assert created.template_id
        assert created.weight == 0.85
        assert template_store.lookup(fp).template.weight == 0.85

    def test_second_upsert_merges_into_existing(self, template_store):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        total = learn_pattern(
            "total_amount", make_field(FieldKind.AMOUNT, "1107.00", 0.9), SAMPLE_INVOICE_TEXT
        )
        vat = learn_pattern(
            "vat_amount", make_field(FieldKind.AMOUNT, "207.00", 0.9), SAMPLE_INVOICE_TEXT
        )
        first = template_store.upsert(
            fp, Template(template_id="", fingerprint=fp, field_patterns={"total_amount": total})
        )
        second = template_store.upsert(
            fp, Template(template_id="", fingerprint=fp, field_patterns={"vat_amount": vat})
        )

        assert second.template_id == first.template_id
        assert set(second.field_patterns) == {"total_amount", "vat_amount"}
        assert second.version == 2
        assert len(template_store.list_templates()) == 1

    def test_concurrent_successes_create_one_template(self, template_store):
        """Concurrent writers for one fingerprint never create divergent templates."""
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        fields = vision_fields(SAMPLE_VISION_FIELDS)
        barrier = threading.Barrier(6)
        errors = []

        def worker():
            barrier.wait()
            try:
                template_store.record_vision_success(fp, fields, SAMPLE_INVOICE_TEXT)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        templates = template_store.list_templates(include_inactive=True)
        assert len(templates) == 1
        assert templates[0].usage_count == 6
        assert templates[0].weight == 0.98

    def test_templates_survive_restart(self, state_store):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        first = TemplateStore(state_store)
        created = first.record_vision_success(
            fp, vision_fields(SAMPLE_VISION_FIELDS), SAMPLE_INVOICE_TEXT
        )

        reloaded = TemplateStore(state_store)
        match = reloaded.lookup(fingerprint_of(SAMPLE_INVOICE_TEXT_NEXT))

        assert match is not None
        assert match.template.template_id == created.template_id
        assert match.template.fingerprint == fp

    def test_history_records_creation_and_promotion(self, template_store):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        fields = vision_fields(SAMPLE_VISION_FIELDS)
        template_store.record_vision_success(fp, fields, SAMPLE_INVOICE_TEXT)
        template = template_store.record_vision_success(
            fp, vision_fields(SAMPLE_VISION_FIELDS_NEXT), SAMPLE_INVOICE_TEXT_NEXT
        )

        events = [e.event_type for e in template_store.history(template.template_id)]
        assert events == ["created", "promoted"]

    def test_record_usage(self, template_store):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        created = template_store.record_vision_success(
            fp, vision_fields(SAMPLE_VISION_FIELDS), SAMPLE_INVOICE_TEXT
        )
        updated = template_store.record_usage(created.template_id)

        assert updated.usage_count == 2
        assert updated.weight == created.weight

    def test_nothing_learned_without_text(self, template_store):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        assert template_store.record_vision_success(fp, vision_fields(SAMPLE_VISION_FIELDS), "") is None


class TestTemplateFeedback:
    """Tests for weight changes from reviewer feedback."""

    @pytest.fixture
    def template(self, template_store):
        return template_store.record_vision_success(
            fingerprint_of(SAMPLE_INVOICE_TEXT),
            vision_fields(SAMPLE_VISION_FIELDS),
            SAMPLE_INVOICE_TEXT,
        )

    def test_correct_feedback_raises_weight(self, template_store, template):
        updated = template_store.apply_correction(
            template.fingerprint,
            Correction(feedback=FeedbackType.CORRECT),
            text=SAMPLE_INVOICE_TEXT,
            template_id=template.template_id,
        )
        assert updated.weight == 0.55
        assert updated.correct_count == 1
        assert all(p.hits == 1 for p in updated.field_patterns.values())

    def test_repeated_incorrect_feedback_deactivates(self, template_store, template):
        weights = []
        for _ in range(3):
            updated = template_store.apply_correction(
                template.fingerprint,
                Correction(feedback=FeedbackType.INCORRECT),
                text=SAMPLE_INVOICE_TEXT,
                template_id=template.template_id,
            )
            weights.append((updated.weight, updated.active))

        assert weights == [(0.35, True), (0.2, True), (0.05, False)]
        assert template_store.lookup(template.fingerprint) is None
        assert template_store.get(template.template_id) is not None
        events = [e.event_type for e in template_store.history(template.template_id)]
        assert events[-1] == "deactivated"

    def test_partial_correction_relearns_field(self, template_store, template):
        corrected = make_field(FieldKind.AMOUNT, "900.00", 1.0, "reviewer")
        updated = template_store.apply_correction(
            template.fingerprint,
            Correction(
                feedback=FeedbackType.PARTIALLY_CORRECT,
                field_corrections=(
                    FieldCorrection(
                        field="vat_amount",
                        original=None,
                        corrected=corrected,
                    ),
                ),
            ),
            text=SAMPLE_INVOICE_TEXT,
            template_id=template.template_id,
        )

        assert updated.weight == template.weight
        assert updated.field_patterns["vat_amount"].label == "Net Amount"

    def test_correction_without_template_creates_one(self, template_store):
        fp = fingerprint_of(SAMPLE_INVOICE_TEXT)
        created = template_store.apply_correction(
            fp,
            Correction(
                feedback=FeedbackType.PARTIALLY_CORRECT,
                field_corrections=(
                    FieldCorrection(
                        field="total_amount",
                        original=None,
                        corrected=make_field(FieldKind.AMOUNT, "1107.00", 1.0),
                    ),
                ),
            ),
            text=SAMPLE_INVOICE_TEXT,
        )

        assert created is not None
        assert created.source_strategy == "CORRECTION"
        assert "total_amount" in created.field_patterns

    def test_analytics(self, template_store, template):
        stats = template_store.analytics()
        assert stats["total_templates"] == 1
        assert stats["active_templates"] == 1
        assert stats["match_ready"] == 0
        assert stats["by_source_strategy"] == {"AI_VISION": 1}
