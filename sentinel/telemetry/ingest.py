"""Telemetry ingestion: validate, score, enforce, persist.

``process_ingest`` is the request path.  Active remediation constraints are
checked before admission control, so a request for a disabled endpoint or
a forbidden model is rejected without consuming a rate-limit slot.
"""

import logging
import sqlite3
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from typing_extensions import TypedDict

from sentinel.admission.limiter import AdmissionController, resolve_identifier
from sentinel.errors import ConstraintViolationError, NotFoundError, RateLimitError, ValidationError
from sentinel.observability.metrics import RISK_SCORE, TELEMETRY_INGESTED_TOTAL
from sentinel.remediation.engine import check_constraints
from sentinel.remediation.models import RequestData
from sentinel.scoring.risk import get_risk_score
from sentinel.storage import store
from sentinel.storage.models import TelemetryRecord

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 50_000
MAX_RESPONSE_CHARS = 100_000
MAX_MODEL_CHARS = 255


class IngestRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=MAX_PROMPT_CHARS)
    response: str = Field(min_length=1, max_length=MAX_RESPONSE_CHARS)
    model: str = Field(min_length=1, max_length=MAX_MODEL_CHARS)
    latency: float = Field(ge=0, description="Milliseconds")
    tokens: int = Field(ge=0)
    error: str | None = None
    endpoint: str | None = Field(None, description="Caller endpoint, checked against disable_endpoint")

    @field_validator("prompt", "response", "model")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class IngestResult(TypedDict):
    record: TelemetryRecord
    directives: dict[str, Any]


def parse_ingest_payload(payload: Any) -> IngestRequest:
    """Validate a raw JSON payload, mapping pydantic errors onto ``ValidationError``."""
    try:
        return IngestRequest.model_validate(payload)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError("Invalid telemetry payload", {"errors": errors}) from exc


def ingest_telemetry(
    conn: sqlite3.Connection,
    project_id: str,
    payload: IngestRequest,
    *,
    risk_score: int | None = None,
) -> TelemetryRecord:
    """Score (unless ``risk_score`` is given) and persist one record."""
    if not store.project_exists(conn, project_id):
        raise NotFoundError("Project")

    if risk_score is None:
        risk_score = get_risk_score(
            payload.prompt, payload.response, payload.model, payload.tokens, bool(payload.error)
        )

    record = store.save_telemetry(
        conn,
        project_id=project_id,
        prompt=payload.prompt,
        response=payload.response,
        model=payload.model,
        latency=payload.latency,
        tokens=payload.tokens,
        risk_score=risk_score,
        error=payload.error or None,
    )
    TELEMETRY_INGESTED_TOTAL.labels(model=payload.model).inc()
    RISK_SCORE.observe(risk_score)
    logger.debug("Telemetry %s stored for project %s (risk=%d)", record["id"], project_id, risk_score)
    return record


def get_telemetry(conn: sqlite3.Connection, project_id: str, record_id: str) -> TelemetryRecord:
    record = store.get_telemetry(conn, record_id)
    if record is None or record["project_id"] != project_id:
        raise NotFoundError("Telemetry record")
    return record


def process_ingest(
    conn: sqlite3.Connection,
    project_id: str,
    payload: IngestRequest,
    *,
    admission: AdmissionController | None = None,
    api_key: str | None = None,
    user_id: str | None = None,
) -> IngestResult:
    """Full request path: score, check constraints, admit, persist.

    Raises:
        NotFoundError: Unknown project.
        ConstraintViolationError: An active remediation constraint rejects the request.
        RateLimitError: Admission control rejects the request.
    """
    if not store.project_exists(conn, project_id):
        raise NotFoundError("Project")

    risk_score = get_risk_score(payload.prompt, payload.response, payload.model, payload.tokens, bool(payload.error))
    request = RequestData(
        model=payload.model,
        user_id=user_id,
        endpoint=payload.endpoint,
        risk_score=risk_score,
    )
    violation = check_constraints(conn, project_id, request)
    if violation.violated:
        raise ConstraintViolationError(
            violation.action_type or "unknown",
            violation.reason or "Request blocked by active remediation",
            violation.details,
        )

    if admission is not None:
        identifier = resolve_identifier(api_key, user_id)
        decision = admission.admit(identifier, request.rate_limit_ceiling)
        if not decision.allowed:
            raise RateLimitError(decision.retry_after)

    record = ingest_telemetry(conn, project_id, payload, risk_score=risk_score)
    return IngestResult(record=record, directives=request.directives())
