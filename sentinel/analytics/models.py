"""Response shapes for the per-project usage metrics."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DailySummary(_CamelModel):
    date: str = Field(description="UTC calendar day, YYYY-MM-DD")
    requests: int = 0
    errors: int = 0
    avg_latency: int = Field(0, description="Mean latency in milliseconds, rounded")
    tokens: int = 0
    cost: float = Field(0.0, description="Estimated spend in USD, rounded to cents")


class ModelUsage(_CamelModel):
    model: str
    count: int
    total_tokens: int
    total_cost: float
    avg_latency: int


class ProjectMetrics(_CamelModel):
    project_id: str
    total_requests: int = 0
    error_count: int = 0
    error_rate: float = Field(0.0, description="Fraction of requests with an error, 0-1")
    average_latency: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    model_breakdown: list[ModelUsage] = Field(default_factory=list)
    daily_summary: list[DailySummary] = Field(default_factory=list)
    high_risk_count: int = 0
    average_risk_score: float = 0.0


class ErrorRateStats(_CamelModel):
    total_requests: int = 0
    error_count: int = 0
    error_rate: float = 0.0
    errors_by_model: dict[str, int] = Field(default_factory=dict)


class TokenUsageStats(_CamelModel):
    total_tokens: int = 0
    average_tokens_per_request: int = 0
    tokens_by_model: dict[str, int] = Field(default_factory=dict)
    request_count: int = 0


class CostEstimate(_CamelModel):
    total_cost: float = 0.0
    cost_by_model: dict[str, float] = Field(default_factory=dict)
    average_cost_per_request: float = 0.0
    request_count: int = 0


class AggregationReport(BaseModel):
    """Outcome of one daily aggregation run."""

    date: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    deleted: int = 0
