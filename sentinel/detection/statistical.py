"""3-sigma outlier detectors used by the scheduled detection sweep.

Unlike the fixed-threshold heuristics in :mod:`sentinel.detection.engine`,
these compare the last hour against its own distribution (latency, risk
score) or against the trailing week (error rate).  They need at least
``MIN_SAMPLES`` records to say anything.
"""

import math
import sqlite3
from datetime import UTC, datetime, timedelta

from sentinel.detection.engine import Detector
from sentinel.detection.models import DetectionConfig, DetectionResult
from sentinel.storage.store import get_recent_telemetry, get_telemetry_stats

MIN_SAMPLES = 5
SIGMA_THRESHOLD = 3.0
SAMPLE_SIZE = 1000
RECENT_WINDOW = timedelta(hours=1)
HISTORY_WINDOW = timedelta(days=7)


def calculate_stats(values: list[float]) -> tuple[float, float]:
    """Mean and population standard deviation; (0, 0) for an empty list."""
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def detect_3sigma_anomalies(values: list[float], threshold: float = SIGMA_THRESHOLD) -> list[int]:
    """Indices of values more than ``threshold`` standard deviations from the mean."""
    if len(values) < 2:
        return []
    mean, std_dev = calculate_stats(values)
    if std_dev == 0:
        return []
    return [i for i, v in enumerate(values) if abs((v - mean) / std_dev) > threshold]


def _since(window: timedelta) -> str:
    return (datetime.now(UTC) - window).isoformat(timespec="microseconds")


class LatencyOutlierDetector(Detector):
    name = "latency_outlier"

    def _evaluate(self, conn: sqlite3.Connection, project_id: str, config: DetectionConfig) -> DetectionResult:
        records = get_recent_telemetry(conn, project_id, limit=SAMPLE_SIZE, since=_since(RECENT_WINDOW))
        if len(records) < MIN_SAMPLES:
            return DetectionResult.not_triggered()

        latencies = [r["latency"] for r in records]
        outliers = detect_3sigma_anomalies(latencies)
        if not outliers:
            return DetectionResult.not_triggered()

        mean, std_dev = calculate_stats(latencies)
        max_outlier = max(latencies[i] for i in outliers)
        return DetectionResult(
            triggered=True,
            trigger_type="latency_threshold",
            severity="high" if max_outlier > 2 * config.latency_threshold else "medium",
            message=f"{len(outliers)} latency anomalies detected (3-sigma rule)",
            metadata={
                "anomalyCount": len(outliers),
                "mean": round(mean),
                "stdDev": round(std_dev),
                "maxAnomaly": max_outlier,
                "sigma": SIGMA_THRESHOLD,
            },
        )


class RiskScoreOutlierDetector(Detector):
    name = "risk_score_outlier"

    def _evaluate(self, conn: sqlite3.Connection, project_id: str, config: DetectionConfig) -> DetectionResult:
        records = get_recent_telemetry(conn, project_id, limit=SAMPLE_SIZE, since=_since(RECENT_WINDOW))
        if len(records) < MIN_SAMPLES:
            return DetectionResult.not_triggered()

        scores = [float(r["risk_score"]) for r in records]
        outliers = detect_3sigma_anomalies(scores)
        if not outliers:
            return DetectionResult.not_triggered()

        mean, std_dev = calculate_stats(scores)
        max_outlier = max(scores[i] for i in outliers)
        return DetectionResult(
            triggered=True,
            trigger_type="risk_score_anomaly",
            severity="high" if max_outlier > config.risk_score_threshold else "medium",
            message=f"{len(outliers)} risk score anomalies detected (3-sigma rule)",
            metadata={
                "anomalyCount": len(outliers),
                "mean": round(mean, 2),
                "stdDev": round(std_dev, 2),
                "maxAnomaly": max_outlier,
                "sigma": SIGMA_THRESHOLD,
            },
        )


class ErrorRateShiftDetector(Detector):
    """Last hour's error rate as a z-score against the trailing week."""

    name = "error_rate_shift"

    def _evaluate(self, conn: sqlite3.Connection, project_id: str, config: DetectionConfig) -> DetectionResult:
        current = get_telemetry_stats(conn, project_id, since=_since(RECENT_WINDOW))
        if current["total_requests"] < MIN_SAMPLES:
            return DetectionResult.not_triggered()

        history = get_telemetry_stats(conn, project_id, since=_since(HISTORY_WINDOW))
        if history["total_requests"] == 0:
            return DetectionResult.not_triggered()

        baseline = history["error_rate"]
        # Binomial standard error of the weekly rate
        std_err = math.sqrt(baseline * (1 - baseline) / history["total_requests"])
        if std_err == 0:
            return DetectionResult.not_triggered()

        z_score = abs((current["error_rate"] - baseline) / std_err)
        if z_score <= SIGMA_THRESHOLD:
            return DetectionResult.not_triggered()

        current_pct = current["error_rate"] * 100
        return DetectionResult(
            triggered=True,
            trigger_type="error_rate",
            severity="high" if current_pct > 30 else "medium",
            message=f"Error rate anomaly detected (current: {current_pct:.2f}%, historical: {baseline * 100:.2f}%)",
            metadata={
                "currentErrorRate": round(current_pct, 2),
                "historicalErrorRate": round(baseline * 100, 2),
                "zScore": round(z_score, 2),
                "errorCount": current["error_count"],
                "totalRequests": current["total_requests"],
            },
        )


STATISTICAL_DETECTORS: tuple[Detector, ...] = (
    LatencyOutlierDetector(),
    RiskScoreOutlierDetector(),
    ErrorRateShiftDetector(),
)
