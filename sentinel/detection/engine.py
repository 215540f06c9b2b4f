"""Detection heuristics over recent telemetry.

Each detector is a read-only scan implementing ``evaluate(conn, project_id,
config)``; the scan runs in a worker thread so the event loop stays free.
``run_all_detections`` runs the detector list concurrently and
returns the first triggered result in list order, which is a fixed
tie-break (latency, error rate, risk run, cost spike), not a severity
ranking.

Every detector catches its own failures and reports "not triggered".
"""

import asyncio
import logging
import sqlite3
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import ClassVar

from sentinel.detection.models import DetectionConfig, DetectionResult
from sentinel.observability.metrics import DETECTIONS_TOTAL
from sentinel.storage.store import get_recent_telemetry, get_telemetry_stats, get_usage_buckets

logger = logging.getLogger(__name__)

LATENCY_SAMPLE_SIZE = 100
RISK_RUN_SAMPLE_SIZE = 50
ERROR_RATE_WINDOW = timedelta(hours=1)
COST_WINDOW = timedelta(days=30)
HIGH_ERROR_RATE_PERCENT = 30
HIGH_COST_INCREASE_PERCENT = 100

# USD per 1K tokens; exact match first, then the first substring match.
MODEL_PRICING: dict[str, float] = {
    "gpt-4": 0.03,
    "gpt-4-turbo": 0.01,
    "gpt-3.5-turbo": 0.0005,
    "o3-mini": 0.001,
    "claude-3": 0.015,
    "llama-2": 0.0001,
}
DEFAULT_PRICE_PER_1K = 0.01


def get_model_price(model: str) -> float:
    normalized = model.lower()
    if normalized in MODEL_PRICING:
        return MODEL_PRICING[normalized]
    for family, price in MODEL_PRICING.items():
        if family in normalized:
            return price
    return DEFAULT_PRICE_PER_1K


def estimate_cost(tokens: int, model: str) -> float:
    return tokens / 1000 * get_model_price(model)


class Detector:
    """Base class: subclasses implement ``_evaluate``; ``evaluate`` never raises."""

    name: ClassVar[str] = "detector"

    async def evaluate(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        config: DetectionConfig,
    ) -> DetectionResult:
        try:
            result = await asyncio.to_thread(self._evaluate, conn, project_id, config)
        except Exception:
            logger.exception("Detector %s failed for project %s", self.name, project_id)
            return DetectionResult.not_triggered()
        if result.triggered:
            DETECTIONS_TOTAL.labels(trigger_type=result.trigger_type or "unknown").inc()
            logger.warning("%s: %s (project=%s)", self.name, result.message, project_id)
        return result

    def _evaluate(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        config: DetectionConfig,
    ) -> DetectionResult:
        raise NotImplementedError


class LatencyDetector(Detector):
    """Recent records whose latency exceeds the threshold."""

    name = "latency_threshold"

    def _evaluate(self, conn: sqlite3.Connection, project_id: str, config: DetectionConfig) -> DetectionResult:
        records = get_recent_telemetry(conn, project_id, limit=LATENCY_SAMPLE_SIZE)
        threshold = config.latency_threshold
        violating = [r["latency"] for r in records if r["latency"] > threshold]
        if not violating:
            return DetectionResult.not_triggered()

        avg_latency = sum(violating) / len(violating)
        max_latency = max(violating)
        return DetectionResult(
            triggered=True,
            trigger_type="latency_threshold",
            severity="high" if max_latency > 2 * threshold else "medium",
            message=f"{len(violating)} requests exceeded latency threshold ({threshold:g}ms)",
            metadata={
                "violatingCount": len(violating),
                "avgLatency": round(avg_latency),
                "maxLatency": max_latency,
                "threshold": threshold,
            },
        )


class ErrorRateDetector(Detector):
    """Error percentage over the trailing hour."""

    name = "error_rate"

    def _evaluate(self, conn: sqlite3.Connection, project_id: str, config: DetectionConfig) -> DetectionResult:
        since = (datetime.now(UTC) - ERROR_RATE_WINDOW).isoformat(timespec="microseconds")
        stats = get_telemetry_stats(conn, project_id, since=since)
        if stats["total_requests"] == 0:
            return DetectionResult.not_triggered()

        rate = stats["error_rate"] * 100
        if rate <= config.error_rate_threshold:
            return DetectionResult.not_triggered()

        return DetectionResult(
            triggered=True,
            trigger_type="error_rate",
            severity="high" if rate > HIGH_ERROR_RATE_PERCENT else "medium",
            message=f"Error rate {rate:.2f}% exceeds threshold ({config.error_rate_threshold:g}%)",
            metadata={
                "errorRate": rate,
                "errorCount": stats["error_count"],
                "totalRequests": stats["total_requests"],
                "threshold": config.error_rate_threshold,
            },
        )


class RiskRunDetector(Detector):
    """Longest run of consecutive high-risk records, newest first."""

    name = "risk_score_anomaly"

    def _evaluate(self, conn: sqlite3.Connection, project_id: str, config: DetectionConfig) -> DetectionResult:
        records = get_recent_telemetry(conn, project_id, limit=RISK_RUN_SAMPLE_SIZE)
        if len(records) < config.consecutive_high_risk_count:
            return DetectionResult.not_triggered()

        run = longest = high_risk = 0
        for record in records:
            if record["risk_score"] > config.risk_score_threshold:
                run += 1
                high_risk += 1
                longest = max(longest, run)
            else:
                run = 0

        if longest < config.consecutive_high_risk_count:
            return DetectionResult.not_triggered()

        return DetectionResult(
            triggered=True,
            trigger_type="risk_score_anomaly",
            severity="high",
            message=f"{longest} consecutive requests with risk score > {config.risk_score_threshold:g}",
            metadata={
                "consecutiveCount": longest,
                "highRiskCount": high_risk,
                "threshold": config.risk_score_threshold,
                "requiredCount": config.consecutive_high_risk_count,
            },
        )


class CostSpikeDetector(Detector):
    """Today's estimated spend against the mean daily spend of the last 30 days."""

    name = "cost_spike"

    def _evaluate(self, conn: sqlite3.Connection, project_id: str, config: DetectionConfig) -> DetectionResult:
        now = datetime.now(UTC)
        since = (now - COST_WINDOW).isoformat(timespec="microseconds")
        buckets = get_usage_buckets(conn, project_id, since=since)
        if not buckets:
            return DetectionResult.not_triggered()

        daily_costs: dict[str, float] = defaultdict(float)
        for bucket in buckets:
            daily_costs[bucket["day"]] += estimate_cost(bucket["tokens"], bucket["model"])

        avg_daily_cost = sum(daily_costs.values()) / len(daily_costs)
        if avg_daily_cost <= 0:
            return DetectionResult.not_triggered()

        today_cost = daily_costs.get(now.date().isoformat(), 0.0)
        increase = (today_cost - avg_daily_cost) / avg_daily_cost * 100
        if increase <= config.cost_spike_percentage:
            return DetectionResult.not_triggered()

        return DetectionResult(
            triggered=True,
            trigger_type="cost_spike",
            severity="high" if increase > HIGH_COST_INCREASE_PERCENT else "medium",
            message=f"Daily cost increased {increase:.2f}% above average",
            metadata={
                "todayCost": round(today_cost, 4),
                "avgDailyCost": round(avg_daily_cost, 4),
                "increasePercentage": round(increase, 2),
                "threshold": config.cost_spike_percentage,
            },
        )


DEFAULT_DETECTORS: tuple[Detector, ...] = (
    LatencyDetector(),
    ErrorRateDetector(),
    RiskRunDetector(),
    CostSpikeDetector(),
)


async def run_all_detections(
    conn: sqlite3.Connection,
    project_id: str,
    config: DetectionConfig | None = None,
    detectors: tuple[Detector, ...] = DEFAULT_DETECTORS,
) -> DetectionResult | None:
    """Evaluate every detector and return the first triggered result in list order."""
    config = config or DetectionConfig()
    results = await asyncio.gather(*(d.evaluate(conn, project_id, config) for d in detectors))
    for result in results:
        if result.triggered:
            return result
    return None
