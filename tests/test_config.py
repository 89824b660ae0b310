"""
Tests for environment-driven pipeline configuration.
"""

from config import PipelineConfig
from nodes.review_policy import ReviewPolicyConfig
from nodes.retry import RetryPolicy


def test_defaults(monkeypatch):
    for name in ("REVIEW_CONFIDENCE_THRESHOLD", "CAPABILITY_RETRY_DELAYS", "STORAGE_DIR"):
        monkeypatch.delenv(name, raising=False)
    config = PipelineConfig.from_env(load_dotenv_file=False)
    assert config.review_confidence_threshold == 0.90
    assert config.financial_commitment_threshold == 10_000.0
    assert config.capability_retry_delays == [1.0, 2.0]
    assert config.capability_max_attempts == 3
    assert config.storage_dir is None


def test_overrides(monkeypatch):
    monkeypatch.setenv("REVIEW_CONFIDENCE_THRESHOLD", "0.8")
    monkeypatch.setenv("FINANCIAL_COMMITMENT_THRESHOLD", "25000")
    monkeypatch.setenv("FLAG_MISSING_CRITICAL_FIELDS", "true")
    monkeypatch.setenv("CAPABILITY_RETRY_DELAYS", "0.5, 1, 5")
    monkeypatch.setenv("CAPABILITY_TIMEOUT_SECONDS", "12")
    monkeypatch.setenv("STORAGE_DIR", "/tmp/records")

    config = PipelineConfig.from_env(load_dotenv_file=False)
    assert config.flag_missing_critical_fields is True
    assert config.capability_retry_delays == [0.5, 1.0, 5.0]
    assert config.storage_dir == "/tmp/records"

    review = ReviewPolicyConfig.from_pipeline_config(config)
    assert review.confidence_threshold == 0.8
    assert review.financial_threshold == 25000.0
    assert review.flag_missing_critical_fields is True

    retry = RetryPolicy.from_pipeline_config(config)
    assert retry.timeout_seconds == 12.0
    assert retry.max_attempts == 4


def test_empty_delays_means_single_attempt(monkeypatch):
    monkeypatch.setenv("CAPABILITY_RETRY_DELAYS", "")
    config = PipelineConfig.from_env(load_dotenv_file=False)
    assert config.capability_retry_delays == []
    assert config.capability_max_attempts == 1
