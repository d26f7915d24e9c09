"""Tests for the document intelligence service facade."""

from decimal import Decimal

import pytest

from taxdoc_pipeline.pipeline import DocumentIntelligenceService
from taxdoc_pipeline.resilience import InvalidInputError, VisionServiceError
from taxdoc_pipeline.schemas import Correction, Document, ExtractionResult, FeedbackType, Strategy

from conftest import WOOCOMMERCE_EXPECTED_TOTAL, make_document


@pytest.fixture
def service(config, state_store, vision_client, kernel, collector):
    service = DocumentIntelligenceService(
        config,
        state_store=state_store,
        vision_client=vision_client,
        kernel=kernel,
        collector=collector,
    )
    yield service
    service.stop()


def empty_document() -> Document:
    return Document(content=b"", mime_type="text/plain", filename="empty.txt")


class TestProcess:
    """Tests for single and batch processing."""

    def test_process(self, service, sample_invoice):
        result = service.process(sample_invoice)

        assert result.success
        assert result.strategy == Strategy.AI_VISION
        assert result.field_value("total_amount") == Decimal("1107.00")
        assert service.queue_length() == 0

    def test_invalid_document_raises(self, service):
        with pytest.raises(InvalidInputError):
            service.process(empty_document())
        assert service.queue_length() == 0

    def test_batch_keeps_order_and_rejections(self, service, sample_invoice, woocommerce_csv):
        results = service.process_batch([sample_invoice, empty_document(), woocommerce_csv], max_workers=2)

        assert len(results) == 3
        assert isinstance(results[0], ExtractionResult)
        assert results[0].document_hash == sample_invoice.content_hash
        assert isinstance(results[1], InvalidInputError)
        assert isinstance(results[2], ExtractionResult)
        assert results[2].document_hash == woocommerce_csv.content_hash
        assert service.queue_length() == 0

    def test_batch_of_same_document_is_idempotent(self, service, sample_invoice, vision_client):
        results = service.process_batch([sample_invoice], max_workers=1)
        again = service.process(sample_invoice)

        assert again.result_id == results[0].result_id
        assert len(vision_client.calls) == 1

    def test_batch_survives_non_finite_vision_amounts(self, service, sample_invoice, vision_client):
        vision_client.fields = {**vision_client.fields, "total_amount": "Infinity", "vat_amount": "NaN"}

        results = service.process_batch([sample_invoice], max_workers=1)

        assert isinstance(results[0], ExtractionResult)
        assert results[0].success
        assert "total_amount" not in results[0].fields
        assert "vat_amount" not in results[0].fields


class TestAggregateReport:
    def test_woocommerce_total(self, service, woocommerce_csv):
        result = service.aggregate_report(woocommerce_csv)

        assert result.total == WOOCOMMERCE_EXPECTED_TOTAL
        assert result.matches("5475.24")

    def test_text_document_is_rejected(self, service):
        with pytest.raises(InvalidInputError):
            service.aggregate_report(make_document("Total: 10.00"))


class TestLearningAndProjections:
    """Tests for corrections, analytics and health."""

    def test_correction_feeds_learning_stats(self, service, sample_invoice):
        result = service.process(sample_invoice)
        service.submit_correction(result.result_id, Correction(feedback=FeedbackType.CORRECT))

        stats = service.get_learning_stats()
        assert stats["templates"]["total_templates"] == 1
        assert stats["accuracy"]["corrections"] == 1
        assert stats["accuracy"]["average_accuracy"] == 1.0

    def test_unknown_reference_rejected(self, service):
        with pytest.raises(InvalidInputError):
            service.submit_correction("no-such-result", Correction(feedback=FeedbackType.CORRECT))

    def test_analytics_and_real_time_stats(self, service, sample_invoice):
        service.process(sample_invoice)

        summary = service.get_analytics_summary(hours_back=1)
        assert summary.total_documents == 1
        assert summary.successful == 1

        stats = service.get_real_time_stats()
        assert stats.sample_size == 1
        assert stats.success_rate == 1.0

    def test_health(self, service, vision_client):
        health = {status.service: status for status in service.get_health()}
        assert health["state_store"].healthy
        assert health["vision"].healthy

        vision_client.healthy = False
        health = {status.service: status for status in service.get_health()}
        assert not health["vision"].healthy
        assert health["vision"].error == "unreachable"

    def test_errors_reach_collector(self, service, vision_client, sample_invoice, collector):
        vision_client.error = VisionServiceError("model not loaded")
        result = service.process(sample_invoice)

        assert result.strategy == Strategy.FALLBACK
        assert collector.error_counts()["VISION_SERVICE_ERROR"] == 3


class TestLifecycle:
    def test_context_manager_runs_dashboard(self, service):
        with service:
            assert service.dashboard.is_running
        assert not service.dashboard.is_running
