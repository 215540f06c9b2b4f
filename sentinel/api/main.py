"""FastAPI service for telemetry ingestion, incidents and remediation.

One SQLite connection, the admission controller and the background RCA
runner are created at startup and shared across requests via ``app.state``.
"""

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Any

from fastapi import Body, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from sentinel.admission.limiter import AdmissionController, SlidingWindowLimiter
from sentinel.agent.llm import create_llm
from sentinel.analytics import usage
from sentinel.analytics.models import (
    CostEstimate,
    DailySummary,
    ErrorRateStats,
    ModelUsage,
    ProjectMetrics,
    TokenUsageStats,
)
from sentinel.config import get_settings
from sentinel.detection.engine import run_all_detections
from sentinel.detection.models import DetectionConfig, DetectionResult, Severity
from sentinel.errors import AppError, RateLimitError, ValidationError
from sentinel.incidents import lifecycle
from sentinel.incidents.rca import RcaRunner, generate_incident_rca
from sentinel.observability.metrics import APP_INFO, REQUEST_DURATION, REQUESTS_TOTAL
from sentinel.remediation import engine as remediation
from sentinel.remediation.models import ActionType
from sentinel.scheduler import start_scheduler, stop_scheduler
from sentinel.storage.models import IncidentRecord, RemediationRecord, TelemetryRecord
from sentinel.storage.store import get_initialized_connection
from sentinel.telemetry.ingest import IngestResult, get_telemetry, parse_ingest_payload, process_ingest
from sentinel.webhooks.alerts import (
    SIGNATURE_HEADER,
    alert_to_detection,
    extract_project_id,
    parse_alert,
    verify_signature,
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DetectionRunRequest(_CamelModel):
    """Request body for POST /projects/{project_id}/detections."""

    config: DetectionConfig | None = None
    create_incident: bool = False


class DetectionRunResponse(BaseModel):
    triggered: bool
    result: DetectionResult | None = None
    incident: dict[str, Any] | None = None


class ManualIncidentRequest(BaseModel):
    """Request body for POST /projects/{project_id}/incidents."""

    severity: Severity
    message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RemediationCreateRequest(_CamelModel):
    action_type: ActionType
    parameters: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    version: str
    detail: str | None = None


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and start background machinery; tear down on shutdown."""
    settings = get_settings()
    logging.getLogger("sentinel").setLevel(settings.log_level.upper())
    APP_INFO.info({"version": VERSION, "llm_provider": settings.llm_provider})

    conn = get_initialized_connection(settings.database_path)
    admission = AdmissionController(
        SlidingWindowLimiter(settings.rate_limit_window_seconds, settings.rate_limit_max_requests)
    )
    llm = create_llm(settings)
    rca_runner = RcaRunner(
        conn,
        llm,
        max_concurrent=settings.rca_max_concurrent,
        limit=settings.rca_request_limit,
        timeout=settings.rca_timeout_seconds,
    )
    app.state.conn = conn
    app.state.admission = admission
    app.state.llm = llm
    app.state.rca_runner = rca_runner
    logger.info("Sentinel ready (store=%s)", settings.database_path)

    start_scheduler(conn, admission)
    yield
    stop_scheduler()
    await rca_runner.shutdown()
    conn.close()
    logger.info("Shutting down sentinel")


app = FastAPI(title="LLM Incident Sentinel", version=VERSION, lifespan=lifespan)


# ---------------------------------------------------------------------------
# Errors and instrumentation
# ---------------------------------------------------------------------------


def _error_body(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "timestamp": datetime.now(UTC).isoformat(),
        }
    }


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitError) else None
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.code, exc.message, exc.details),
        headers=headers,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body("INTERNAL_SERVER_ERROR", "An unexpected error occurred"),
    )


@app.middleware("http")
async def record_request_metrics(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    start = time.monotonic()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", "unmatched")
    status = "success" if response.status_code < 400 else "error"
    REQUEST_DURATION.labels(endpoint=endpoint).observe(time.monotonic() - start)
    REQUESTS_TOTAL.labels(endpoint=endpoint, status=status).inc()
    return response


def _offset(limit: int, page: int) -> int:
    return (page - 1) * limit


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


@app.post("/projects/{project_id}/telemetry", status_code=201)
async def ingest(
    project_id: str,
    request: Request,
    payload: Any = Body(...),
) -> IngestResult:
    """Score and store one model call, enforcing active remediation constraints."""
    parsed = parse_ingest_payload(payload)
    return process_ingest(
        request.app.state.conn,
        project_id,
        parsed,
        admission=request.app.state.admission,
        api_key=request.headers.get("X-API-Key"),
        user_id=request.headers.get("X-User-Id"),
    )


@app.get("/projects/{project_id}/telemetry/{record_id}")
async def telemetry_record(project_id: str, record_id: str, request: Request) -> TelemetryRecord:
    return get_telemetry(request.app.state.conn, project_id, record_id)


# ---------------------------------------------------------------------------
# Detection and incidents
# ---------------------------------------------------------------------------


@app.post("/projects/{project_id}/detections", response_model=DetectionRunResponse)
async def run_detections(
    project_id: str,
    request: Request,
    body: DetectionRunRequest | None = None,
) -> DetectionRunResponse:
    """Run every detector with optional threshold overrides."""
    body = body or DetectionRunRequest()
    conn = request.app.state.conn
    result = await run_all_detections(conn, project_id, body.config or DetectionConfig.from_settings())
    if result is None:
        return DetectionRunResponse(triggered=False)

    incident = None
    if body.create_incident:
        incident = dict(lifecycle.create_incident_from_detection(conn, project_id, result))
    return DetectionRunResponse(triggered=True, result=result, incident=incident)


@app.get("/projects/{project_id}/incidents")
async def list_incidents(
    project_id: str,
    request: Request,
    status: str | None = None,
    limit: int = Query(50, ge=1, le=100),
    page: int = Query(1, ge=1),
) -> dict[str, Any]:
    incidents = lifecycle.list_incidents(
        request.app.state.conn,
        project_id,
        status=status,
        limit=limit,
        offset=_offset(limit, page),
    )
    return {"incidents": incidents, "page": page, "limit": limit}


@app.post("/projects/{project_id}/incidents", status_code=201)
async def create_manual_incident(
    project_id: str,
    body: ManualIncidentRequest,
    request: Request,
) -> IncidentRecord:
    return lifecycle.create_incident_from_trigger(
        request.app.state.conn,
        project_id,
        trigger_type="manual",
        severity=body.severity,
        message=body.message,
        metadata=body.metadata,
    )


@app.get("/projects/{project_id}/incidents/{incident_id}")
async def get_incident(project_id: str, incident_id: str, request: Request) -> IncidentRecord:
    return lifecycle.get_incident(request.app.state.conn, project_id, incident_id)


@app.post("/projects/{project_id}/incidents/{incident_id}/resolve")
async def resolve_incident(project_id: str, incident_id: str, request: Request) -> IncidentRecord:
    return lifecycle.resolve_incident(request.app.state.conn, project_id, incident_id)


@app.post("/projects/{project_id}/incidents/{incident_id}/rca")
async def incident_rca(project_id: str, incident_id: str, request: Request) -> IncidentRecord:
    """Synthesize and store a root cause now, waiting for the result."""
    settings = get_settings()
    return await generate_incident_rca(
        request.app.state.conn,
        project_id,
        incident_id,
        limit=settings.rca_request_limit,
        llm=request.app.state.llm,
        timeout=settings.rca_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Remediation
# ---------------------------------------------------------------------------


@app.post("/projects/{project_id}/incidents/{incident_id}/remediations", status_code=201)
async def create_remediation(
    project_id: str,
    incident_id: str,
    body: RemediationCreateRequest,
    request: Request,
) -> RemediationRecord:
    return remediation.create_remediation_action(
        request.app.state.conn,
        project_id,
        incident_id,
        action_type=body.action_type,
        parameters=body.parameters,
    )


@app.get("/projects/{project_id}/incidents/{incident_id}/remediations")
async def list_remediations(
    project_id: str,
    incident_id: str,
    request: Request,
    limit: int = Query(50, ge=1, le=100),
    page: int = Query(1, ge=1),
) -> dict[str, Any]:
    actions = remediation.list_remediation_actions(
        request.app.state.conn,
        project_id,
        incident_id,
        limit=limit,
        offset=_offset(limit, page),
    )
    return {"actions": actions, "page": page, "limit": limit}


@app.get("/projects/{project_id}/incidents/{incident_id}/remediations/{action_id}")
async def get_remediation(project_id: str, incident_id: str, action_id: str, request: Request) -> RemediationRecord:
    return remediation.get_remediation_action(request.app.state.conn, project_id, incident_id, action_id)


@app.delete("/projects/{project_id}/incidents/{incident_id}/remediations/{action_id}", status_code=204)
async def delete_remediation(project_id: str, incident_id: str, action_id: str, request: Request) -> Response:
    remediation.delete_remediation_action(request.app.state.conn, project_id, incident_id, action_id)
    return Response(status_code=204)


@app.post("/projects/{project_id}/incidents/{incident_id}/remediations/{action_id}/apply")
async def apply_remediation(project_id: str, incident_id: str, action_id: str, request: Request) -> RemediationRecord:
    return remediation.apply_remediation_action(request.app.state.conn, project_id, incident_id, action_id)


@app.get("/projects/{project_id}/constraints")
async def active_constraints(project_id: str, request: Request) -> dict[str, Any]:
    return {"constraints": remediation.get_active_constraints(request.app.state.conn, project_id)}


# ---------------------------------------------------------------------------
# Usage metrics
# ---------------------------------------------------------------------------

@app.get("/projects/{project_id}/metrics/summary", response_model=ProjectMetrics)
async def project_metrics(
    project_id: str,
    request: Request,
    start: datetime | None = Query(None, description="Range start (ISO 8601, inclusive)"),
    end: datetime | None = Query(None, description="Range end (ISO 8601, exclusive)"),
) -> ProjectMetrics:
    """Totals, per-model breakdown and per-day summary over the range."""
    return usage.get_project_metrics(request.app.state.conn, project_id, start, end)


@app.get("/projects/{project_id}/metrics/daily", response_model=DailySummary)
async def daily_metrics(
    project_id: str,
    request: Request,
    day: date = Query(..., alias="date", description="UTC day, YYYY-MM-DD"),
) -> DailySummary:
    return usage.get_daily_metrics(request.app.state.conn, project_id, day)


@app.get("/projects/{project_id}/metrics/models", response_model=list[ModelUsage])
async def model_usage(
    project_id: str,
    request: Request,
    start: datetime | None = Query(None, description="Range start (ISO 8601, inclusive)"),
    end: datetime | None = Query(None, description="Range end (ISO 8601, exclusive)"),
) -> list[ModelUsage]:
    return usage.get_model_usage(request.app.state.conn, project_id, start, end)


@app.get("/projects/{project_id}/metrics/errors", response_model=ErrorRateStats)
async def error_rate_stats(
    project_id: str,
    request: Request,
    start: datetime | None = Query(None, description="Range start (ISO 8601, inclusive)"),
    end: datetime | None = Query(None, description="Range end (ISO 8601, exclusive)"),
) -> ErrorRateStats:
    return usage.get_error_rate_stats(request.app.state.conn, project_id, start, end)


@app.get("/projects/{project_id}/metrics/tokens", response_model=TokenUsageStats)
async def token_usage_stats(
    project_id: str,
    request: Request,
    start: datetime | None = Query(None, description="Range start (ISO 8601, inclusive)"),
    end: datetime | None = Query(None, description="Range end (ISO 8601, exclusive)"),
) -> TokenUsageStats:
    return usage.get_token_usage_stats(request.app.state.conn, project_id, start, end)


@app.get("/projects/{project_id}/metrics/costs", response_model=CostEstimate)
async def cost_estimate(
    project_id: str,
    request: Request,
    start: datetime | None = Query(None, description="Range start (ISO 8601, inclusive)"),
    end: datetime | None = Query(None, description="Range end (ISO 8601, exclusive)"),
) -> CostEstimate:
    return usage.get_cost_estimate(request.app.state.conn, project_id, start, end)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@app.post("/webhooks/alerts")
async def alert_webhook(request: Request) -> dict[str, Any]:
    """Open a ``webhook`` incident from a signed monitoring alert; RCA runs in the background."""
    raw_body = await request.body()
    verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), get_settings().webhook_secret)

    alert = parse_alert(raw_body)
    project_id = extract_project_id(alert)
    if not project_id:
        logger.warning("Could not extract project id from alert %s", alert.get("id"))
        raise ValidationError("Could not determine project ID from alert")

    incident = lifecycle.create_incident_from_detection(request.app.state.conn, project_id, alert_to_detection(alert))
    request.app.state.rca_runner.schedule(project_id, incident["id"])
    logger.info("Incident %s created from alert %s", incident["id"], alert.get("id"))
    return {
        "success": True,
        "incidentId": incident["id"],
        "message": "Incident created from monitoring alert",
    }


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in exposition format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Report whether the store answers queries."""
    try:
        request.app.state.conn.execute("SELECT 1").fetchone()
    except Exception as exc:
        logger.warning("Health check failed: %s", exc)
        return HealthResponse(status="unhealthy", version=VERSION, detail=str(exc))
    return HealthResponse(status="healthy", version=VERSION)
