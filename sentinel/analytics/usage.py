"""Per-project usage metrics over the telemetry store, plus the daily cache.

Every read model is built from ``get_usage_buckets``, so SQLite does the
per-day, per-model grouping and a busy project never has to be loaded row
by row. Costs are priced per model with the detectors' pricing table.

Ranges are ``[start, end)`` in UTC. Without a range the last 30 days up to
now are used. A day summary is served from ``metrics_cache`` when the daily
aggregation job has already stored it.
"""

import logging
import sqlite3
from collections import defaultdict
from datetime import UTC, date, datetime, timedelta

from sentinel.analytics.models import (
    AggregationReport,
    CostEstimate,
    DailySummary,
    ErrorRateStats,
    ModelUsage,
    ProjectMetrics,
    TokenUsageStats,
)
from sentinel.detection.engine import estimate_cost
from sentinel.errors import NotFoundError
from sentinel.storage.models import MetricsCacheRecord, UsageBucket
from sentinel.storage.store import (
    delete_metrics_cache_before,
    get_metrics_cache,
    get_usage_buckets,
    list_project_ids,
    project_exists,
    upsert_metrics_cache,
)

logger = logging.getLogger(__name__)

DEFAULT_RANGE = timedelta(days=30)
CACHE_RETENTION_DAYS = 90
HIGH_RISK_SCORE = 80


def _iso(value: datetime) -> str:
    # naive datetimes are taken as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _day_bounds(day: date) -> tuple[str, str]:
    start = datetime(day.year, day.month, day.day, tzinfo=UTC)
    return _iso(start), _iso(start + timedelta(days=1))


def _load_buckets(
    conn: sqlite3.Connection,
    project_id: str,
    start: datetime | None,
    end: datetime | None,
) -> list[UsageBucket]:
    if not project_exists(conn, project_id):
        raise NotFoundError("Project")
    end = end or datetime.now(UTC)
    start = start or end - DEFAULT_RANGE
    return get_usage_buckets(
        conn,
        project_id,
        since=_iso(start),
        until=_iso(end),
        high_risk_threshold=HIGH_RISK_SCORE,
    )


def _model_usage(buckets: list[UsageBucket]) -> list[ModelUsage]:
    totals: dict[str, dict[str, float]] = defaultdict(lambda: {"count": 0, "tokens": 0, "latency": 0.0, "cost": 0.0})
    for bucket in buckets:
        entry = totals[bucket["model"]]
        entry["count"] += bucket["requests"]
        entry["tokens"] += bucket["tokens"]
        entry["latency"] += bucket["total_latency"]
        entry["cost"] += estimate_cost(bucket["tokens"], bucket["model"])

    usage = [
        ModelUsage(
            model=model,
            count=int(entry["count"]),
            total_tokens=int(entry["tokens"]),
            total_cost=round(entry["cost"], 4),
            avg_latency=round(entry["latency"] / entry["count"]),
        )
        for model, entry in totals.items()
    ]
    usage.sort(key=lambda u: (-u.count, u.model))
    return usage


def _summarize_day(day: str, buckets: list[UsageBucket]) -> DailySummary:
    requests = sum(b["requests"] for b in buckets)
    if requests == 0:
        return DailySummary(date=day)
    return DailySummary(
        date=day,
        requests=requests,
        errors=sum(b["errors"] for b in buckets),
        avg_latency=round(sum(b["total_latency"] for b in buckets) / requests),
        tokens=sum(b["tokens"] for b in buckets),
        cost=round(sum(estimate_cost(b["tokens"], b["model"]) for b in buckets), 2),
    )


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def get_project_metrics(
    conn: sqlite3.Connection,
    project_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> ProjectMetrics:
    """Totals, per-model breakdown and per-day summary for one project.

    Raises:
        NotFoundError: Unknown project.
    """
    buckets = _load_buckets(conn, project_id, start, end)
    total = sum(b["requests"] for b in buckets)
    if total == 0:
        return ProjectMetrics(project_id=project_id)

    by_day: dict[str, list[UsageBucket]] = defaultdict(list)
    for bucket in buckets:
        by_day[bucket["day"]].append(bucket)

    errors = sum(b["errors"] for b in buckets)
    metrics = ProjectMetrics(
        project_id=project_id,
        total_requests=total,
        error_count=errors,
        error_rate=errors / total,
        average_latency=round(sum(b["total_latency"] for b in buckets) / total),
        total_tokens=sum(b["tokens"] for b in buckets),
        estimated_cost=round(sum(estimate_cost(b["tokens"], b["model"]) for b in buckets), 2),
        model_breakdown=_model_usage(buckets),
        daily_summary=[_summarize_day(day, by_day[day]) for day in sorted(by_day)],
        high_risk_count=sum(b["high_risk"] for b in buckets),
        average_risk_score=round(sum(b["total_risk"] for b in buckets) / total, 2),
    )
    logger.info(
        "Metrics for %s: %d requests, $%.2f, error rate %.3f",
        project_id,
        metrics.total_requests,
        metrics.estimated_cost,
        metrics.error_rate,
    )
    return metrics


def get_daily_metrics(
    conn: sqlite3.Connection,
    project_id: str,
    day: date,
    use_cache: bool = True,
) -> DailySummary:
    """Summary of one UTC day, from the cache when the aggregation job stored it."""
    if not project_exists(conn, project_id):
        raise NotFoundError("Project")
    if use_cache:
        try:
            cached = get_metrics_cache(conn, project_id, day.isoformat())
        except sqlite3.Error as exc:
            logger.debug("Metrics cache lookup failed for %s on %s: %s", project_id, day, exc)
            cached = None
        if cached is not None:
            return _cached_summary(cached)

    since, until = _day_bounds(day)
    buckets = get_usage_buckets(conn, project_id, since=since, until=until)
    return _summarize_day(day.isoformat(), buckets)


def _cached_summary(cached: MetricsCacheRecord) -> DailySummary:
    return DailySummary(
        date=cached["date"],
        requests=cached["total_requests"],
        errors=cached["error_count"],
        avg_latency=cached["average_latency"],
        tokens=cached["total_tokens"],
        cost=cached["estimated_cost"],
    )


def get_model_usage(
    conn: sqlite3.Connection,
    project_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[ModelUsage]:
    """Per-model request count, tokens, cost and latency, busiest model first."""
    return _model_usage(_load_buckets(conn, project_id, start, end))


def get_error_rate_stats(
    conn: sqlite3.Connection,
    project_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> ErrorRateStats:
    buckets = _load_buckets(conn, project_id, start, end)
    total = sum(b["requests"] for b in buckets)
    by_model: dict[str, int] = defaultdict(int)
    for bucket in buckets:
        if bucket["errors"]:
            by_model[bucket["model"]] += bucket["errors"]
    errors = sum(by_model.values())
    return ErrorRateStats(
        total_requests=total,
        error_count=errors,
        error_rate=errors / total if total else 0.0,
        errors_by_model=dict(by_model),
    )


def get_token_usage_stats(
    conn: sqlite3.Connection,
    project_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> TokenUsageStats:
    buckets = _load_buckets(conn, project_id, start, end)
    total = sum(b["requests"] for b in buckets)
    by_model: dict[str, int] = defaultdict(int)
    for bucket in buckets:
        by_model[bucket["model"]] += bucket["tokens"]
    tokens = sum(by_model.values())
    return TokenUsageStats(
        total_tokens=tokens,
        average_tokens_per_request=round(tokens / total) if total else 0,
        tokens_by_model=dict(by_model),
        request_count=total,
    )


def get_cost_estimate(
    conn: sqlite3.Connection,
    project_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> CostEstimate:
    """Estimated spend in USD, rounded to cents, with a per-model split."""
    buckets = _load_buckets(conn, project_id, start, end)
    total = sum(b["requests"] for b in buckets)
    by_model: dict[str, float] = defaultdict(float)
    for bucket in buckets:
        by_model[bucket["model"]] += estimate_cost(bucket["tokens"], bucket["model"])
    cost = round(sum(by_model.values()), 2)
    return CostEstimate(
        total_cost=cost,
        cost_by_model={model: round(value, 2) for model, value in by_model.items()},
        average_cost_per_request=round(cost / total, 4) if total else 0.0,
        request_count=total,
    )


# ---------------------------------------------------------------------------
# Daily aggregation
# ---------------------------------------------------------------------------


def cache_project_metrics(conn: sqlite3.Connection, project_id: str, day: date) -> MetricsCacheRecord:
    """Compute one project's summary for ``day`` and store it in the cache."""
    since, until = _day_bounds(day)
    buckets = get_usage_buckets(conn, project_id, since=since, until=until, high_risk_threshold=HIGH_RISK_SCORE)
    summary = _summarize_day(day.isoformat(), buckets)
    return upsert_metrics_cache(
        conn,
        project_id=project_id,
        date=summary.date,
        total_requests=summary.requests,
        error_count=summary.errors,
        error_rate=summary.errors / summary.requests if summary.requests else 0.0,
        average_latency=summary.avg_latency,
        total_tokens=summary.tokens,
        estimated_cost=summary.cost,
        high_risk_count=sum(b["high_risk"] for b in buckets),
        average_risk_score=round(sum(b["total_risk"] for b in buckets) / summary.requests, 2)
        if summary.requests
        else 0.0,
        model_breakdown=[u.model_dump(by_alias=True) for u in _model_usage(buckets)],
    )


def clear_old_cached_metrics(
    conn: sqlite3.Connection,
    retention_days: int = CACHE_RETENTION_DAYS,
    today: date | None = None,
) -> int:
    """Drop cached days older than the retention window."""
    today = today or datetime.now(UTC).date()
    deleted = delete_metrics_cache_before(conn, (today - timedelta(days=retention_days)).isoformat())
    if deleted:
        logger.info("Cleared %d cached metric days", deleted)
    return deleted


def run_metrics_aggregation(conn: sqlite3.Connection, day: date | None = None) -> AggregationReport:
    """Cache every project's summary for ``day`` (yesterday by default), then prune.

    A failure on one project is logged and does not stop the run.
    """
    day = day or datetime.now(UTC).date() - timedelta(days=1)
    report = AggregationReport(date=day.isoformat())
    logger.info("Starting metrics aggregation for %s", report.date)

    for project_id in list_project_ids(conn):
        report.processed += 1
        try:
            cache_project_metrics(conn, project_id, day)
            report.succeeded += 1
        except sqlite3.Error:
            report.failed += 1
            logger.exception("Metrics aggregation failed for project %s", project_id)

    report.deleted = clear_old_cached_metrics(conn)
    logger.info(
        "Metrics aggregation finished: %d/%d projects cached, %d old days removed",
        report.succeeded,
        report.processed,
        report.deleted,
    )
    return report
