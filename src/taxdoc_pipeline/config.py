"""
Configuration management (SSOT).

This module defines ALL configuration for the taxdoc pipeline.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Vision inference is OFF unless explicitly enabled
- Thresholds are validated for ordering (review <= auto, floor < match)
- Environment variables override YAML values
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class VisionConfig:
    """Vision inference service (Ollama) configuration.

    SSOT for vision settings:
    - enabled: Master switch (default OFF)
    - ollama_url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    - max_concurrent: Concurrency limiter for queue management
    """

    # Master enable/disable (SSOT: single enforcement point)
    enabled: bool = False
    # Ollama server URL (supports localhost, LAN, remote)
    ollama_url: str = "http://localhost:11434"
    # Optional authentication header for proxied deployments
    # Format: "Bearer <token>" or "Header-Name: value"
    auth_header: str | None = None
    # Vision-capable model
    model: str = "llama3.2-vision:11b"
    # Read timeout for one inference call (seconds)
    timeout_seconds: int = 30
    # Maximum concurrent inference requests (semaphore)
    max_concurrent: int = 2

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.ollama_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class ResilienceConfig:
    """Circuit breaker, retry and resource guard settings."""

    # Consecutive failures before a breaker opens
    failure_threshold: int = 5
    # Seconds a breaker stays OPEN before a trial call
    recovery_timeout_seconds: float = 60.0
    # Hard timeout per wrapped call (seconds)
    call_timeout_seconds: float = 30.0
    # Total attempts per call (including the first)
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    # Resource guard: refuse large operations above this RSS
    memory_threshold_mb: float = 500.0
    # Documents larger than this are checked against the resource guard
    large_document_bytes: int = 5 * 1024 * 1024


@dataclass
class TemplateConfig:
    """Template learning settings."""

    # Template weight at or above this -> TEMPLATE_MATCH
    match_threshold: float = 0.8
    # Minimum fingerprint similarity to consider a stored template
    similarity_threshold: float = 0.7
    # Weight of a freshly created template
    initial_weight: float = 0.5
    # Weight gained per successful AI_VISION promotion
    promotion_step: float = 0.1
    # Weight gained per CORRECT feedback
    correct_step: float = 0.05
    # Weight lost per INCORRECT feedback
    incorrect_step: float = 0.15
    # Ceiling for template weight
    max_weight: float = 0.98
    # Below this the template is deactivated (never deleted)
    deactivation_floor: float = 0.2
    # Prior confidence for template-extracted fields
    template_prior: float = 0.9
    # Optimistic concurrency retries for store writes
    max_write_retries: int = 5


@dataclass
class AlertThresholds:
    """Alert thresholds evaluated against the real-time window."""

    max_avg_processing_ms: float = 10_000.0
    min_success_rate: float = 0.90
    max_memory_mb: float = 400.0
    max_queue_length: int = 50


@dataclass
class MonitoringConfig:
    """Metrics retention and periodic job settings."""

    max_age_hours: float = 24.0
    max_records: int = 10_000
    realtime_window_seconds: float = 300.0
    sample_interval_seconds: float = 30.0
    cleanup_interval_seconds: float = 3600.0
    report_interval_seconds: float = 300.0
    alerts: AlertThresholds = field(default_factory=AlertThresholds)


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    vision: VisionConfig = field(default_factory=VisionConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    templates: TemplateConfig = field(default_factory=TemplateConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    # Confidence thresholds
    auto_threshold: float = 0.85
    review_threshold: float = 0.60

    # Input validation
    max_file_bytes: int = 50 * 1024 * 1024
    # Worker threads for batch processing
    batch_workers: int = 4

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.vision.enabled and not self.vision.ollama_url:
            errors.append("vision.ollama_url is required when vision is enabled")
        if self.vision.timeout_seconds <= 0:
            errors.append("vision.timeout_seconds must be positive")

        if self.resilience.failure_threshold < 1:
            errors.append("resilience.failure_threshold must be >= 1")
        if self.resilience.max_retries < 1:
            errors.append("resilience.max_retries must be >= 1")
        if self.resilience.base_delay_seconds > self.resilience.max_delay_seconds:
            errors.append("resilience.base_delay_seconds must be <= max_delay_seconds")

        t = self.templates
        if not 0.0 < t.deactivation_floor < t.match_threshold <= t.max_weight <= 1.0:
            errors.append(
                "templates: require 0 < deactivation_floor < match_threshold <= max_weight <= 1"
            )
        if not 0.0 < t.similarity_threshold <= 1.0:
            errors.append("templates.similarity_threshold must be in (0, 1]")

        if self.monitoring.max_records < 1:
            errors.append("monitoring.max_records must be >= 1")

        if self.auto_threshold < self.review_threshold:
            errors.append("auto_threshold must be >= review_threshold")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - TAXDOC_VISION_URL
    - TAXDOC_VISION_MODEL
    - TAXDOC_VISION_ENABLED (true/false)
    - TAXDOC_VISION_TIMEOUT (request timeout in seconds)
    - TAXDOC_VISION_AUTH_HEADER
    - TAXDOC_STATE_DB
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Vision config
    vision_data = data.get("vision", {})
    vision = VisionConfig(
        enabled=_env_bool("TAXDOC_VISION_ENABLED", vision_data.get("enabled", False)),
        ollama_url=os.environ.get(
            "TAXDOC_VISION_URL", vision_data.get("ollama_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("TAXDOC_VISION_AUTH_HEADER", vision_data.get("auth_header")),
        model=os.environ.get(
            "TAXDOC_VISION_MODEL", vision_data.get("model", "llama3.2-vision:11b")
        ),
        timeout_seconds=int(os.environ.get(
            "TAXDOC_VISION_TIMEOUT", vision_data.get("timeout_seconds", 30)
        )),
        max_concurrent=vision_data.get("max_concurrent", 2),
    )

    # Resilience config
    res_data = data.get("resilience", {})
    resilience = ResilienceConfig(
        failure_threshold=res_data.get("failure_threshold", 5),
        recovery_timeout_seconds=res_data.get("recovery_timeout_seconds", 60.0),
        call_timeout_seconds=res_data.get("call_timeout_seconds", 30.0),
        max_retries=res_data.get("max_retries", 3),
        base_delay_seconds=res_data.get("base_delay_seconds", 1.0),
        max_delay_seconds=res_data.get("max_delay_seconds", 10.0),
        memory_threshold_mb=res_data.get("memory_threshold_mb", 500.0),
        large_document_bytes=res_data.get("large_document_bytes", 5 * 1024 * 1024),
    )

    # Template config
    tpl_data = data.get("templates", {})
    defaults = TemplateConfig()
    templates = TemplateConfig(
        **{
            name: tpl_data.get(name, getattr(defaults, name))
            for name in defaults.__dataclass_fields__
        }
    )

    # Monitoring config
    mon_data = data.get("monitoring", {})
    alert_data = mon_data.get("alerts", {})
    monitoring = MonitoringConfig(
        max_age_hours=mon_data.get("max_age_hours", 24.0),
        max_records=mon_data.get("max_records", 10_000),
        realtime_window_seconds=mon_data.get("realtime_window_seconds", 300.0),
        sample_interval_seconds=mon_data.get("sample_interval_seconds", 30.0),
        cleanup_interval_seconds=mon_data.get("cleanup_interval_seconds", 3600.0),
        report_interval_seconds=mon_data.get("report_interval_seconds", 300.0),
        alerts=AlertThresholds(
            max_avg_processing_ms=alert_data.get("max_avg_processing_ms", 10_000.0),
            min_success_rate=alert_data.get("min_success_rate", 0.90),
            max_memory_mb=alert_data.get("max_memory_mb", 400.0),
            max_queue_length=alert_data.get("max_queue_length", 50),
        ),
    )

    # State DB
    state_db = os.environ.get("TAXDOC_STATE_DB", data.get("state_db_path", "data/state.db"))

    return Config(
        vision=vision,
        resilience=resilience,
        templates=templates,
        monitoring=monitoring,
        state_db_path=Path(state_db),
        auto_threshold=data.get("auto_threshold", 0.85),
        review_threshold=data.get("review_threshold", 0.60),
        max_file_bytes=data.get("max_file_bytes", 50 * 1024 * 1024),
        batch_workers=data.get("batch_workers", 4),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Tax Document Intelligence Pipeline Configuration

# Vision inference (Ollama)
# Supports localhost, LAN, or remote deployments
vision:
  enabled: false                           # Set to true to enable vision extraction
  ollama_url: "http://localhost:11434"     # Ollama server URL
  auth_header: null                        # Optional auth header for proxied deployments
  model: "llama3.2-vision:11b"             # Vision-capable model
  timeout_seconds: 30
  max_concurrent: 2                        # Max concurrent inference requests

# Resilience around every external call
resilience:
  failure_threshold: 5                     # Consecutive failures before the breaker opens
  recovery_timeout_seconds: 60             # OPEN -> HALF_OPEN after this long
  call_timeout_seconds: 30                 # Hard timeout per call
  max_retries: 3                           # Total attempts per call
  base_delay_seconds: 1.0
  max_delay_seconds: 10.0
  memory_threshold_mb: 500                 # Resource guard limit
  large_document_bytes: 5242880            # Guard documents above 5 MB

# Template learning
templates:
  match_threshold: 0.8                     # Weight needed for TEMPLATE_MATCH
  similarity_threshold: 0.7                # Fingerprint similarity for lookup
  initial_weight: 0.5
  promotion_step: 0.1
  correct_step: 0.05
  incorrect_step: 0.15
  max_weight: 0.98
  deactivation_floor: 0.2                  # Deactivate below this weight
  template_prior: 0.9

# Metrics retention and periodic jobs
monitoring:
  max_age_hours: 24
  max_records: 10000
  realtime_window_seconds: 300
  sample_interval_seconds: 30
  cleanup_interval_seconds: 3600
  report_interval_seconds: 300
  alerts:
    max_avg_processing_ms: 10000
    min_success_rate: 0.90
    max_memory_mb: 400
    max_queue_length: 50

# State database path
state_db_path: "data/state.db"

# Confidence thresholds
auto_threshold: 0.85   # Above this: accept automatically
review_threshold: 0.60  # Above this: review, below: manual

# Input validation
max_file_bytes: 52428800  # 50 MB
batch_workers: 4
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
