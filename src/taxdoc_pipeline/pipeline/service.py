"""
Document intelligence service: the collaborator-facing facade.

Constructs and wires every component explicitly. Background monitoring jobs
only run between ``start()`` and ``stop()``.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from ..config import Config
from ..monitoring import (
    AlertSystem,
    AnalyticsSummary,
    MetricsCollector,
    MonitoringDashboard,
    PsutilSystemSampler,
    RealTimeStats,
)
from ..resilience import HealthStatus, PipelineError, ResilienceKernel
from ..schemas.correction import Correction
from ..schemas.document import Document, ProcessingContext
from ..schemas.extraction import ExtractionResult
from ..state_store import StateStore
from ..tabular import AggregationResult, aggregate, read_report
from ..templates import TemplateStore
from ..vision import OllamaVisionClient, VisionService
from .feedback import LearningFeedbackLoop
from .orchestrator import ExtractionOrchestrator
from .validation import validate_document

logger = logging.getLogger(__name__)


class DocumentIntelligenceService:
    """Process documents, accept corrections and expose analytics and health."""

    def __init__(
        self,
        config: Config,
        state_store: StateStore | None = None,
        vision_client: VisionService | None = None,
        kernel: ResilienceKernel | None = None,
        collector: MetricsCollector | None = None,
        alerts: AlertSystem | None = None,
    ) -> None:
        """Initialize and wire all components.

        Args:
            config: Application configuration.
            state_store: Persistent store (defaults to SQLite at config.state_db_path).
            vision_client: Vision backend; an Ollama client is built when
                vision is enabled and none is given.
            kernel: Resilience kernel (breakers, retry, fallbacks).
            collector: Metrics collector.
            alerts: Alert system.
        """
        self.config = config
        monitoring = config.monitoring

        self.store = state_store or StateStore(config.state_db_path)
        self.kernel = kernel or ResilienceKernel(config.resilience)

        self._queue_lock = threading.Lock()
        self._queue_length = 0

        if collector is None:
            sampler = PsutilSystemSampler(queue_length=self.queue_length)
            collector = MetricsCollector(
                max_age_seconds=monitoring.max_age_hours * 3600,
                max_records=monitoring.max_records,
                realtime_window_seconds=monitoring.realtime_window_seconds,
                sampler=sampler,
            )
            sampler.set_providers(cache_hit_rate=collector.cache_hit_rate)
        self.collector = collector
        self.alerts = alerts or AlertSystem(monitoring.alerts)
        self.dashboard = MonitoringDashboard(self.collector, self.alerts, monitoring)
        self.kernel.set_error_reporter(self.collector.record_error)

        self._owns_vision_client = False
        if vision_client is None and config.vision.enabled:
            vision_client = OllamaVisionClient(config.vision)
            self._owns_vision_client = True
        self.vision_client = vision_client

        self.templates = TemplateStore(self.store, config.templates, kernel=self.kernel)
        self.orchestrator = ExtractionOrchestrator(
            config=config,
            kernel=self.kernel,
            template_store=self.templates,
            collector=self.collector,
            state_store=self.store,
            vision_client=vision_client,
        )
        self.feedback = LearningFeedbackLoop(self.store, self.templates, self.collector)

        self.kernel.health_registry.register_check("state_store", self.store.ping)
        if vision_client is not None:
            self.kernel.health_registry.register_check("vision", vision_client.ping)

    @classmethod
    def from_config(cls, config: Config) -> DocumentIntelligenceService:
        return cls(config)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start background monitoring jobs."""
        self.dashboard.start()

    def stop(self) -> None:
        """Stop background jobs and release clients."""
        self.dashboard.stop()
        self.kernel.close()
        if self._owns_vision_client and isinstance(self.vision_client, OllamaVisionClient):
            self.vision_client.close()

    def __enter__(self) -> DocumentIntelligenceService:
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop()

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def queue_length(self) -> int:
        with self._queue_lock:
            return self._queue_length

    def _track(self, delta: int) -> None:
        with self._queue_lock:
            self._queue_length += delta

    def process(
        self, document: Document, context: ProcessingContext | None = None
    ) -> ExtractionResult:
        """Extract tax fields. Raises InvalidInputError for invalid documents only."""
        self._track(1)
        try:
            return self.orchestrator.process(document, context)
        finally:
            self._track(-1)

    def process_batch(
        self,
        documents: list[Document],
        context: ProcessingContext | None = None,
        max_workers: int | None = None,
    ) -> list[ExtractionResult | PipelineError]:
        """Process documents concurrently.

        Returns:
            One entry per document, in input order: the result, or the
            InvalidInputError that rejected it.
        """
        workers = max_workers or self.config.batch_workers
        self._track(len(documents))

        def run(doc: Document) -> ExtractionResult | PipelineError:
            try:
                return self.orchestrator.process(doc, context)
            except PipelineError as e:
                logger.warning("Rejected %s in batch: %s", doc.filename, e)
                return e
            finally:
                self._track(-1)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="taxdoc") as pool:
            results = list(pool.map(run, documents))

        ok = sum(1 for r in results if isinstance(r, ExtractionResult) and r.success)
        logger.info("Batch of %d documents: %d successful", len(documents), ok)
        return results

    def submit_correction(self, document_ref: str, correction: Correction) -> None:
        """Feed a reviewer's correction into the learning loop."""
        self.feedback.submit(document_ref, correction)

    def aggregate_report(self, document: Document) -> AggregationResult:
        """Sum a spreadsheet tax report without double-counting subtotals."""
        validate_document(document, self.config.max_file_bytes)
        return aggregate(read_report(document.content, document.mime_type))

    # -------------------------------------------------------------------------
    # Projections
    # -------------------------------------------------------------------------

    def get_analytics_summary(self, hours_back: float = 24.0) -> AnalyticsSummary:
        return self.collector.get_analytics_summary(hours_back)

    def get_real_time_stats(self) -> RealTimeStats:
        return self.collector.get_real_time_stats()

    def get_health(self) -> list[HealthStatus]:
        """Breaker states plus registered health checks (store, vision)."""
        return self.kernel.health()

    def get_learning_stats(self, days: int = 30) -> dict[str, Any]:
        return {
            "templates": self.templates.analytics(),
            "accuracy": self.feedback.accuracy_summary(days),
        }
