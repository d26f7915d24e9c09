"""Tests for extraction strategies."""

from decimal import Decimal

import pytest

from taxdoc_pipeline.extractors import (
    ExtractionRequest,
    FallbackExtractor,
    HybridExtractor,
    TemplateExtractor,
    VisionExtractor,
    derive_text,
    fields_from_response,
    reconcile,
)
from taxdoc_pipeline.resilience import ExtractionFailedError, VisionServiceError
from taxdoc_pipeline.schemas import FIELD_KINDS, Document, FieldKind, ProcessingContext, Strategy, make_field
from taxdoc_pipeline.templates import Template, TemplateMatch, compute_fingerprint, learn_pattern
from taxdoc_pipeline.vision import VisionResponse

from conftest import (
    SAMPLE_INVOICE_TEXT,
    SAMPLE_INVOICE_TEXT_NEXT,
    SAMPLE_RECEIPT_TEXT_DE,
    SAMPLE_VISION_FIELDS,
    WOOCOMMERCE_EXPECTED_TOTAL,
    make_document,
)


def make_request(document: Document, match=None, context=None) -> ExtractionRequest:
    text = derive_text(document)
    return ExtractionRequest(
        document=document,
        text=text,
        fingerprint=compute_fingerprint(document, text, context),
        context=context,
        match=match,
    )


def learned_template(weight: float = 0.85) -> Template:
    """Template learned from the sample invoice and its vision fields."""
    document = make_document(SAMPLE_INVOICE_TEXT)
    patterns = {}
    for name, entry in SAMPLE_VISION_FIELDS.items():
        pattern = learn_pattern(name, make_field(FIELD_KINDS[name], entry["value"], 0.9), SAMPLE_INVOICE_TEXT)
        if pattern is not None:
            patterns[name] = pattern
    return Template(
        template_id="tpl-acme",
        fingerprint=compute_fingerprint(document, SAMPLE_INVOICE_TEXT),
        field_patterns=patterns,
        weight=weight,
    )


def amount(value: str, confidence: float):
    return make_field(FieldKind.AMOUNT, value, confidence, "test")


class TestDeriveText:
    def test_plain_text(self):
        assert derive_text(make_document("Total: 10.00")) == "Total: 10.00"

    def test_csv_with_bom(self):
        document = Document(content="\ufeffa,b\n".encode("utf-8"), mime_type="text/csv", filename="r.csv")
        assert derive_text(document) == "a,b\n"

    def test_image_has_no_text(self):
        document = Document(content=b"\x89PNG\r\n\x1a\n", mime_type="image/png", filename="scan.png")
        assert derive_text(document) == ""

    def test_broken_pdf_yields_empty_text(self):
        document = Document(content=b"%PDF-1.4 garbage", mime_type="application/pdf", filename="x.pdf")
        assert derive_text(document) == ""

    def test_xlsx_cells(self, woocommerce_xlsx):
        text = derive_text(woocommerce_xlsx)
        assert "Ireland Subtotal" in text
        assert text.splitlines()[0] == "Tax report Q1 2024"


class TestFallbackExtractor:
    """Tests for regex heuristics."""

    @pytest.fixture
    def extractor(self):
        return FallbackExtractor()

    def test_english_invoice(self, extractor):
        output = extractor.extract(make_request(make_document(SAMPLE_INVOICE_TEXT)))

        assert output.strategy == Strategy.FALLBACK
        values = {name: value.value for name, value in output.fields.items()}
        assert values["total_amount"] == Decimal("1107.00")
        assert values["vat_amount"] == Decimal("207.00")
        assert values["net_amount"] == Decimal("900.00")
        assert values["vat_rate"] == Decimal("23")
        assert values["invoice_number"] == "INV-2024-0042"
        assert values["vat_number"] == "IE1234567T"
        assert values["vendor_name"] == "Acme Supplies Ltd"
        assert output.fields["total_amount"].currency == "EUR"

    def test_confidence_ceiling(self, extractor):
        output = extractor.extract(make_request(make_document(SAMPLE_INVOICE_TEXT)))
        assert output.fields
        assert all(value.confidence <= 0.3 for value in output.fields.values())

    def test_german_receipt(self, extractor):
        output = extractor.extract(make_request(make_document(SAMPLE_RECEIPT_TEXT_DE)))

        assert output.fields["total_amount"].value == Decimal("11.48")
        assert output.fields["vat_amount"].value == Decimal("1.04")
        assert output.fields["invoice_number"].value == "R-2024-11832"

    def test_known_vendor_from_context(self, extractor):
        document = make_document(SAMPLE_INVOICE_TEXT)
        context = ProcessingContext(known_vendor="ACME Supplies Limited")
        output = extractor.extract(make_request(document, context=context))
        assert output.fields["vendor_name"].value == "ACME Supplies Limited"

    def test_no_text(self, extractor):
        document = Document(content=b"\x89PNG\r\n\x1a\n", mime_type="image/png", filename="scan.png")
        output = extractor.extract(make_request(document))

        assert output.fields == {}
        assert "No local text available for heuristics" in output.suggested_improvements

    def test_text_without_amounts(self, extractor):
        output = extractor.extract(make_request(make_document("Dear customer,\nthanks for visiting.")))
        assert "No tax amount recognized by heuristics" in output.suggested_improvements

    def test_spreadsheet_report_is_aggregated(self, extractor, woocommerce_csv):
        output = extractor.extract(make_request(woocommerce_csv))

        assert output.fields["vat_amount"].value == WOOCOMMERCE_EXPECTED_TOTAL
        assert output.fields["vat_amount"].confidence == 0.3
        assert "tabular:subtotals_only" in output.matched_features
        assert output.raw["aggregation"]["total"] == "5475.24"

    def test_xlsx_report_is_aggregated(self, extractor, woocommerce_xlsx):
        output = extractor.extract(make_request(woocommerce_xlsx))
        assert output.fields["vat_amount"].value == WOOCOMMERCE_EXPECTED_TOTAL

    def test_spreadsheet_without_amount_column(self, extractor):
        document = Document(
            content=b"Country,Description\nIreland,Order\n", mime_type="text/csv", filename="r.csv"
        )
        output = extractor.extract(make_request(document))
        assert any(s.startswith("Spreadsheet not aggregated") for s in output.suggested_improvements)


class TestTemplateExtractor:
    """Tests for applying learned templates."""

    def test_extracts_new_figures(self):
        template = learned_template()
        request = make_request(
            make_document(SAMPLE_INVOICE_TEXT_NEXT), match=TemplateMatch(template, 0.93)
        )

        output = TemplateExtractor().extract(request)

        assert output.strategy == Strategy.TEMPLATE_MATCH
        assert output.template_id == "tpl-acme"
        assert output.fields["total_amount"].value == Decimal("738.00")
        assert output.fields["vat_amount"].value == Decimal("138.00")
        assert output.fields["net_amount"].value == Decimal("600.00")
        assert output.fields["vendor_name"].value == "Acme Supplies Ltd"
        assert "similarity:0.93" in output.matched_features

    def test_requires_match(self):
        extractor = TemplateExtractor()
        request = make_request(make_document(SAMPLE_INVOICE_TEXT))

        assert not extractor.can_extract(request)
        with pytest.raises(ExtractionFailedError):
            extractor.extract(request)

    def test_no_field_matches(self):
        template = learned_template()
        template.field_patterns = {
            name: p for name, p in template.field_patterns.items() if p.constant is None
        }
        request = make_request(make_document("Something else entirely"), match=TemplateMatch(template, 0.7))

        with pytest.raises(ExtractionFailedError):
            TemplateExtractor().extract(request)


class TestVisionExtraction:
    """Tests for vision-based extraction through the kernel."""

    def test_fields_from_response(self):
        response = VisionResponse(
            text="",
            structured_fields={
                "total_amount": "1107.00",
                "vat_amount": {"value": "207.00", "confidence": 0.9},
                "invoice_date": {"value": "not a date", "confidence": 0.9},
                "net_amount": {"value": None},
                "shoe_size": {"value": "42"},
            },
        )

        fields, problems = fields_from_response(response)

        assert set(fields) == {"total_amount", "vat_amount"}
        assert fields["total_amount"].confidence == 0.7
        assert fields["vat_amount"].source == "vision"
        assert problems == ["Vision returned an unparseable invoice_date: 'not a date'"]

    def test_non_finite_amounts_are_dropped(self):
        response = VisionResponse(
            text="",
            structured_fields={
                "total_amount": "Infinity",
                "vat_amount": {"value": "NaN", "confidence": 0.9},
                "net_amount": {"value": float("nan")},
                "vat_rate": "-inf",
                "invoice_number": "INV-2024-0042",
            },
        )

        fields, problems = fields_from_response(response)

        assert set(fields) == {"invoice_number"}
        assert len(problems) == 4
        assert "Vision returned an unparseable vat_amount: 'NaN'" in problems

    def test_extract(self, kernel, vision_client, sample_invoice):
        output = VisionExtractor(kernel, vision_client).extract(make_request(sample_invoice))

        assert output.strategy == Strategy.AI_VISION
        assert output.fields["total_amount"].value == Decimal("1107.00")
        assert "vision:fake-vision" in output.matched_features
        # Local text goes into the prompt for text documents
        assert "Total Due" in vision_client.calls[0]["prompt"]
        assert output.text == SAMPLE_INVOICE_TEXT

    def test_no_usable_fields(self, kernel, vision_client, sample_invoice):
        vision_client.fields = {"shoe_size": "42"}
        with pytest.raises(ExtractionFailedError):
            VisionExtractor(kernel, vision_client).extract(make_request(sample_invoice))

    def test_errors_propagate_after_retries(self, kernel, vision_client, sample_invoice):
        vision_client.error = VisionServiceError("down")
        with pytest.raises(VisionServiceError):
            VisionExtractor(kernel, vision_client).extract(make_request(sample_invoice))
        assert len(vision_client.calls) == 3


class TestReconcile:
    """Tests for merging vision and template values."""

    def test_agreement_boosts(self):
        fields, features, notes = reconcile(
            {"total_amount": amount("100.00", 0.8)}, {"total_amount": amount("100", 0.85)}
        )
        assert fields["total_amount"].confidence == pytest.approx(0.95)
        assert fields["total_amount"].source == "hybrid"
        assert features == ["agree:total_amount"]
        assert notes == []

    def test_agreement_capped_at_one(self):
        fields, _, _ = reconcile({"vat_amount": amount("1", 0.95)}, {"vat_amount": amount("1", 0.99)})
        assert fields["vat_amount"].confidence == 1.0

    def test_disagreement_lowers_and_notes(self):
        fields, features, notes = reconcile(
            {"total_amount": amount("100.00", 0.8)}, {"total_amount": amount("90.00", 0.9)}
        )
        assert fields["total_amount"].value == Decimal("100.00")
        assert fields["total_amount"].confidence == pytest.approx(0.68)
        assert features == []
        assert notes == ["total_amount: vision read 100.00 but template expected 90.00"]

    def test_one_sided_fields(self):
        fields, _, notes = reconcile(
            {"total_amount": amount("100.00", 0.8)}, {"vat_amount": amount("19.00", 0.9)}
        )
        assert fields["total_amount"].confidence == 0.8
        assert fields["vat_amount"].confidence == pytest.approx(0.72)
        assert notes == ["vat_amount: found only by template pattern"]


class TestHybridExtractor:
    def test_hints_and_reconciliation(self, kernel, vision_client):
        template = learned_template(weight=0.5)
        request = make_request(make_document(SAMPLE_INVOICE_TEXT), match=TemplateMatch(template, 0.9))

        output = HybridExtractor(VisionExtractor(kernel, vision_client)).extract(request)

        assert output.strategy == Strategy.HYBRID
        assert output.template_id == "tpl-acme"
        assert "- total_amount: 1107.00" in vision_client.calls[0]["prompt"]
        assert "agree:total_amount" in output.matched_features
        assert output.fields["total_amount"].source == "hybrid"

    def test_requires_match(self, kernel, vision_client, sample_invoice):
        extractor = HybridExtractor(VisionExtractor(kernel, vision_client))
        request = make_request(sample_invoice)

        assert not extractor.can_extract(request)
        with pytest.raises(ExtractionFailedError):
            extractor.extract(request)
