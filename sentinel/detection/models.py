"""Pydantic models shared by the detectors, the incident manager and the API."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from sentinel.config import get_settings

Severity = Literal["low", "medium", "high", "critical"]
TriggerType = Literal[
    "latency_threshold",
    "error_rate",
    "risk_score_anomaly",
    "cost_spike",
    "webhook",
    "manual",
]

SEVERITIES: tuple[str, ...] = ("low", "medium", "high", "critical")
TRIGGER_TYPES: tuple[str, ...] = (
    "latency_threshold",
    "error_rate",
    "risk_score_anomaly",
    "cost_spike",
    "webhook",
    "manual",
)


class DetectionConfig(BaseModel):
    """Thresholds for the detection heuristics.

    Accepts camelCase keys (``latencyThreshold``) as well as field names so
    API callers can send overrides in either form.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    latency_threshold: float = Field(5000, ge=0, description="Latency threshold in milliseconds")
    error_rate_threshold: float = Field(10, ge=0, le=100, description="Error rate threshold in percent")
    risk_score_threshold: float = Field(80, ge=0, le=100, description="Risk score threshold (0-100)")
    consecutive_high_risk_count: int = Field(3, ge=1, description="Required run of consecutive high-risk records")
    cost_spike_percentage: float = Field(50, ge=0, description="Percent increase over the daily mean")

    @classmethod
    def from_settings(cls) -> "DetectionConfig":
        settings = get_settings()
        return cls(
            latency_threshold=settings.latency_threshold_ms,
            error_rate_threshold=settings.error_rate_threshold,
            risk_score_threshold=settings.risk_score_threshold,
            consecutive_high_risk_count=settings.consecutive_high_risk_count,
            cost_spike_percentage=settings.cost_spike_percentage,
        )


class DetectionResult(BaseModel):
    """Outcome of one heuristic. Transient, never persisted as-is."""

    triggered: bool
    trigger_type: TriggerType | None = None
    severity: Severity | None = None
    message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def not_triggered(cls) -> "DetectionResult":
        return cls(triggered=False)
