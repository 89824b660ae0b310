"""
Pipeline configuration loaded from environment variables.

Values come from the process environment (optionally seeded from a .env
file) so deployments can tune review thresholds and capability timeouts
without code changes.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


logger = logging.getLogger(__name__)


def _parse_delays(raw: str) -> List[float]:
    """Parse comma-separated retry delays in seconds, e.g. "1,2,5"."""
    return [float(d.strip()) for d in raw.split(",") if d.strip()]


@dataclass
class PipelineConfig:
    """Runtime configuration for the document pipeline."""

    # Review policy thresholds
    review_confidence_threshold: float = 0.90
    financial_commitment_threshold: float = 10_000.0
    flag_missing_critical_fields: bool = False

    # External capability calls (classification/extraction)
    capability_timeout_seconds: float = 30.0
    # One delay per retry; len(delays) + 1 attempts in total
    capability_retry_delays: List[float] = field(default_factory=lambda: [1.0, 2.0])

    # Capability backends: "keyword"/"pattern" or "llm"
    classifier_backend: str = "keyword"
    extractor_backend: str = "pattern"
    llm_provider: str = "openai"  # "openai", "anthropic"
    llm_model: str = "gpt-4o-mini"

    # Persistence; None keeps records in memory only
    storage_dir: Optional[str] = None

    # Worker pool for batch processing
    max_workers: int = 4

    log_level: str = "INFO"

    @property
    def capability_max_attempts(self) -> int:
        return len(self.capability_retry_delays) + 1

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "PipelineConfig":
        """
        Build configuration from environment variables.

        Unset variables fall back to the dataclass defaults.
        """
        if load_dotenv_file:
            load_dotenv()

        defaults = cls()
        delays_str = os.getenv("CAPABILITY_RETRY_DELAYS")

        config = cls(
            review_confidence_threshold=float(
                os.getenv("REVIEW_CONFIDENCE_THRESHOLD", defaults.review_confidence_threshold)
            ),
            financial_commitment_threshold=float(
                os.getenv("FINANCIAL_COMMITMENT_THRESHOLD", defaults.financial_commitment_threshold)
            ),
            flag_missing_critical_fields=os.getenv(
                "FLAG_MISSING_CRITICAL_FIELDS", "false"
            ).lower() in ("1", "true", "yes"),
            capability_timeout_seconds=float(
                os.getenv("CAPABILITY_TIMEOUT_SECONDS", defaults.capability_timeout_seconds)
            ),
            capability_retry_delays=(
                _parse_delays(delays_str) if delays_str is not None
                else defaults.capability_retry_delays
            ),
            classifier_backend=os.getenv("CLASSIFIER_BACKEND", defaults.classifier_backend),
            extractor_backend=os.getenv("EXTRACTOR_BACKEND", defaults.extractor_backend),
            llm_provider=os.getenv("LLM_PROVIDER", defaults.llm_provider),
            llm_model=os.getenv("LLM_MODEL", defaults.llm_model),
            storage_dir=os.getenv("STORAGE_DIR") or None,
            max_workers=int(os.getenv("PIPELINE_MAX_WORKERS", defaults.max_workers)),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        )

        logger.debug(f"Loaded pipeline config: {config}")
        return config
