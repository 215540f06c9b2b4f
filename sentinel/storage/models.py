"""TypedDict models for store records."""

from typing import Any

from typing_extensions import TypedDict


class ProjectRecord(TypedDict):
    id: str
    name: str
    created_at: str  # ISO 8601


class TelemetryRecord(TypedDict):
    id: str
    project_id: str
    prompt: str
    response: str
    model: str
    latency: float  # milliseconds
    tokens: int
    risk_score: int  # 0-100
    error: str | None
    created_at: str  # ISO 8601 (UTC)


class TelemetryStats(TypedDict):
    total_requests: int
    error_count: int
    error_rate: float  # 0.0-1.0
    avg_latency: float
    avg_risk_score: float


class IncidentRecord(TypedDict):
    id: str
    project_id: str
    severity: str  # low | medium | high | critical
    trigger_type: str
    status: str  # open | resolved
    metadata: dict[str, Any]
    root_cause: str | None
    recommended_fix: str | None
    affected_requests: int | None
    created_at: str  # ISO 8601
    resolved_at: str | None


class RemediationRecord(TypedDict):
    id: str
    incident_id: str
    action_type: str
    parameters: dict[str, Any]
    executed: bool
    executed_at: str | None
    metadata: dict[str, Any]
    created_at: str  # ISO 8601


class UsageBucket(TypedDict):
    """Telemetry aggregated per UTC calendar day and model."""

    day: str  # YYYY-MM-DD
    model: str
    requests: int
    errors: int
    tokens: int
    total_latency: float
    total_risk: int
    high_risk: int


class MetricsCacheRecord(TypedDict):
    project_id: str
    date: str  # YYYY-MM-DD
    total_requests: int
    error_count: int
    error_rate: float  # 0.0-1.0
    average_latency: int  # milliseconds, rounded
    total_tokens: int
    estimated_cost: float  # USD
    high_risk_count: int
    average_risk_score: float
    model_breakdown: list[dict[str, Any]]
    updated_at: str  # ISO 8601
