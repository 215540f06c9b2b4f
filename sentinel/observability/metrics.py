"""Prometheus metric definitions for sentinel self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

REQUEST_DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
RISK_SCORE_BUCKETS = (10, 20, 30, 40, 50, 60, 70, 80, 90, 100)
SWEEP_DURATION_BUCKETS = (0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0)

# ---------------------------------------------------------------------------
# Request-level metrics
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "sentinel_request_duration_seconds",
    "End-to-end request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "sentinel_requests_total",
    "Total number of requests",
    labelnames=["endpoint", "status"],
)

# ---------------------------------------------------------------------------
# Telemetry ingestion
# ---------------------------------------------------------------------------

TELEMETRY_INGESTED_TOTAL = Counter(
    "sentinel_telemetry_ingested_total",
    "Telemetry records persisted",
    labelnames=["model"],
)

RISK_SCORE = Histogram(
    "sentinel_risk_score",
    "Distribution of computed risk scores",
    buckets=RISK_SCORE_BUCKETS,
)

# ---------------------------------------------------------------------------
# Detection / incidents
# ---------------------------------------------------------------------------

DETECTIONS_TOTAL = Counter(
    "sentinel_detections_triggered_total",
    "Detector evaluations that triggered",
    labelnames=["trigger_type"],
)

INCIDENTS_CREATED_TOTAL = Counter(
    "sentinel_incidents_created_total",
    "Incidents opened",
    labelnames=["trigger_type", "severity"],
)

INCIDENTS_RESOLVED_TOTAL = Counter(
    "sentinel_incidents_resolved_total",
    "Incidents resolved",
)

RCA_TOTAL = Counter(
    "sentinel_rca_total",
    "Root cause syntheses by outcome",
    labelnames=["source"],  # llm | fallback
)

# ---------------------------------------------------------------------------
# Enforcement
# ---------------------------------------------------------------------------

CONSTRAINT_VIOLATIONS_TOTAL = Counter(
    "sentinel_constraint_violations_total",
    "Requests rejected by an active remediation constraint",
    labelnames=["action_type"],
)

ADMISSION_REJECTIONS_TOTAL = Counter(
    "sentinel_admission_rejections_total",
    "Requests rejected by admission control",
    labelnames=["limiter"],  # global | remediation
)

RATE_LIMIT_IDENTIFIERS = Gauge(
    "sentinel_rate_limit_identifiers",
    "Identifiers tracked by the in-process admission limiter after the last sweep",
)

# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------

SWEEPS_TOTAL = Counter(
    "sentinel_sweeps_total",
    "Scheduled job runs",
    labelnames=["job", "status"],
)

SWEEP_DURATION = Histogram(
    "sentinel_sweep_duration_seconds",
    "Scheduled job duration in seconds",
    labelnames=["job"],
    buckets=SWEEP_DURATION_BUCKETS,
)

APP_INFO = Info(
    "sentinel",
    "Sentinel build information",
)
