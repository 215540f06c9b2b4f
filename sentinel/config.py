from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # SQLite telemetry + incident store
    database_path: str = "sentinel.db"

    # Root-cause text generation (optional: empty key means fallback table only)
    llm_provider: str = "openai"  # openai | anthropic
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = ""  # Optional OpenAI-compatible proxy URL
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-haiku-latest"

    # Shared secret for the external alert webhook (empty = webhook rejects everything)
    webhook_secret: str = ""

    # Admission control (per-process sliding window)
    rate_limit_window_seconds: int = 900
    rate_limit_max_requests: int = 100
    rate_limit_sweep_seconds: int = 300

    # Detection schedule (optional: empty = scheduled sweep disabled)
    detection_schedule_cron: str = "0 * * * *"

    # Daily usage aggregation into the metrics cache (optional: empty = disabled)
    metrics_aggregation_cron: str = "0 1 * * *"

    # Detection defaults, overridable per call
    latency_threshold_ms: int = 5000
    error_rate_threshold: float = 10.0
    risk_score_threshold: int = 80
    consecutive_high_risk_count: int = 3
    cost_spike_percentage: float = 50.0

    # Root cause synthesis
    rca_request_limit: int = 20
    rca_timeout_seconds: float = 30.0
    rca_max_concurrent: int = 4

    log_level: str = "INFO"

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
