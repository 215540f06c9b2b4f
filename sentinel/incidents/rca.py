"""Root cause synthesis for incidents.

A chat model is asked to explain an incident from the project's most recent
telemetry.  Whatever goes wrong (no records, no model configured, provider
error, timeout, unparseable answer) the synthesizer answers from a static
table keyed by trigger type instead, so callers always get a result.
"""

import asyncio
import json
import logging
import re
import sqlite3
from typing import Any

from langchain_core.language_models import BaseChatModel
from typing_extensions import TypedDict

from sentinel.detection.models import SEVERITIES
from sentinel.incidents.lifecycle import attach_root_cause, get_incident
from sentinel.observability.metrics import RCA_TOTAL
from sentinel.storage.models import IncidentRecord, TelemetryRecord
from sentinel.storage.store import get_recent_telemetry

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_REQUEST_LIMIT = 20

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class RcaResult(TypedDict):
    severity: str
    root_cause: str
    recommended_fix: str


class RcaParseError(ValueError):
    """The model answer did not contain a usable analysis."""


_RCA_PROMPT = """\
You are an expert in analyzing LLM (Large Language Model) request patterns and incidents.
Analyze the following LLM requests and incident metadata to provide a root cause analysis.

Incident Information:
- Trigger Type: {trigger_type}
- Severity: {severity}
- Metadata: {metadata}

Related LLM Requests:
{requests}

Based on this data, provide a JSON response with the following structure (and ONLY this structure, no additional text):
{{
  "severity": "low|medium|high|critical",
  "rootCause": "A concise explanation of the root cause (1-2 sentences)",
  "recommendedFix": "A specific, actionable recommendation to fix the issue (1-2 sentences)"
}}

Ensure the severity matches the incident severity or is more specific based on the request patterns.
Focus on technical root causes related to model behavior, latency, error patterns, or risk indicators.
"""

FALLBACK_RCA: dict[str, RcaResult] = {
    "latency_threshold": RcaResult(
        severity="high",
        root_cause=(
            "LLM requests are experiencing elevated latency, potentially due to model overload or network delays."
        ),
        recommended_fix=(
            "Consider implementing request queuing, increasing timeout thresholds, "
            "or switching to a faster model variant."
        ),
    ),
    "error_rate": RcaResult(
        severity="high",
        root_cause=(
            "A high error rate has been detected in LLM requests, "
            "indicating potential API issues or invalid request parameters."
        ),
        recommended_fix=(
            "Review error logs for specific error messages, validate request parameters, and check API service status."
        ),
    ),
    "risk_score_anomaly": RcaResult(
        severity="high",
        root_cause=(
            "Multiple consecutive requests have been flagged with high risk scores, "
            "suggesting potentially unsafe or anomalous content."
        ),
        recommended_fix=(
            "Review the flagged requests for content patterns, consider increasing safety thresholds, "
            "or implementing content filtering."
        ),
    ),
    "cost_spike": RcaResult(
        severity="medium",
        root_cause=(
            "Daily costs have increased significantly above the historical average, "
            "likely due to increased token usage or model changes."
        ),
        recommended_fix=(
            "Analyze token usage patterns, consider optimizing prompts for brevity, "
            "or review model selection for cost efficiency."
        ),
    ),
    "webhook": RcaResult(
        severity="medium",
        root_cause="An external monitoring system has detected an anomaly and triggered an incident alert.",
        recommended_fix="Review the external monitoring system alert details and investigate the underlying cause.",
    ),
    "manual": RcaResult(
        severity="medium",
        root_cause="An incident was manually created by a user or administrator.",
        recommended_fix="Review the incident details and take appropriate action based on the specific issue.",
    ),
}

_DEFAULT_ROOT_CAUSE = "An incident has been detected in your LLM request patterns."
_DEFAULT_FIX = "Review the incident details and related requests to determine the appropriate action."


def get_fallback_rca(incident_metadata: dict[str, Any]) -> RcaResult:
    """Static analysis for the incident's trigger type."""
    trigger_type = incident_metadata.get("triggerType")
    if trigger_type in FALLBACK_RCA:
        return RcaResult(**FALLBACK_RCA[trigger_type])
    severity = incident_metadata.get("severity")
    return RcaResult(
        severity=severity if severity in SEVERITIES else "medium",
        root_cause=_DEFAULT_ROOT_CAUSE,
        recommended_fix=_DEFAULT_FIX,
    )


def _preview(text: str) -> str:
    if len(text) > PREVIEW_CHARS:
        return text[:PREVIEW_CHARS] + "..."
    return text


def build_rca_prompt(records: list[TelemetryRecord], incident_metadata: dict[str, Any]) -> str:
    summaries = []
    for idx, record in enumerate(records, start=1):
        summaries.append(
            f"Request {idx}:\n"
            f"- Model: {record['model']}\n"
            f"- Latency: {record['latency']:g}ms\n"
            f"- Tokens: {record['tokens']}\n"
            f"- Risk Score: {record['risk_score']}\n"
            f"- Error: {record['error'] or 'None'}\n"
            f"- Prompt: {_preview(record['prompt'])}\n"
            f"- Response: {_preview(record['response'])}"
        )
    return _RCA_PROMPT.format(
        trigger_type=incident_metadata.get("triggerType") or "Unknown",
        severity=incident_metadata.get("severity") or "Unknown",
        metadata=json.dumps(incident_metadata, indent=2, default=str),
        requests="\n\n".join(summaries),
    )


def parse_rca_response(content: str) -> RcaResult:
    """Extract the first JSON object from ``content`` and validate it.

    Raises:
        RcaParseError: No JSON object, missing fields, or an unknown severity.
    """
    match = _JSON_OBJECT.search(content)
    if match is None:
        raise RcaParseError("No JSON found in response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise RcaParseError(f"Malformed JSON in response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise RcaParseError("Response JSON is not an object")

    severity = parsed.get("severity")
    root_cause = parsed.get("rootCause")
    fix = parsed.get("recommendedFix")
    if not isinstance(root_cause, str) or not root_cause.strip():
        raise RcaParseError("Missing rootCause")
    if not isinstance(fix, str) or not fix.strip():
        raise RcaParseError("Missing recommendedFix")
    if severity not in SEVERITIES:
        raise RcaParseError(f"Invalid severity: {severity}")

    return RcaResult(severity=severity, root_cause=root_cause.strip(), recommended_fix=fix.strip())


async def synthesize_root_cause(
    records: list[TelemetryRecord],
    incident_metadata: dict[str, Any],
    llm: BaseChatModel | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> RcaResult:
    """Ask ``llm`` for a root cause analysis, falling back to the static table. Never raises."""
    trigger_type = incident_metadata.get("triggerType")
    if not records:
        logger.warning("No requests provided for RCA generation (trigger=%s)", trigger_type)
        RCA_TOTAL.labels(source="fallback").inc()
        return get_fallback_rca(incident_metadata)
    if llm is None:
        RCA_TOTAL.labels(source="fallback").inc()
        return get_fallback_rca(incident_metadata)

    prompt = build_rca_prompt(records, incident_metadata)
    try:
        response = await asyncio.wait_for(llm.ainvoke(prompt), timeout=timeout)
        result = parse_rca_response(str(response.content))
    except Exception:
        logger.exception("Error generating RCA (trigger=%s), using fallback", trigger_type)
        RCA_TOTAL.labels(source="fallback").inc()
        return get_fallback_rca(incident_metadata)

    logger.info("RCA generated (trigger=%s, severity=%s)", trigger_type, result["severity"])
    RCA_TOTAL.labels(source="llm").inc()
    return result


def incident_context(incident: IncidentRecord) -> dict[str, Any]:
    return {
        **incident["metadata"],
        "triggerType": incident["trigger_type"],
        "severity": incident["severity"],
    }


async def generate_incident_rca(
    conn: sqlite3.Connection,
    project_id: str,
    incident_id: str,
    *,
    limit: int = DEFAULT_REQUEST_LIMIT,
    llm: BaseChatModel | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> IncidentRecord:
    """Synthesize a root cause from the project's ``limit`` latest records and store it."""
    incident = get_incident(conn, project_id, incident_id)
    records = get_recent_telemetry(conn, project_id, limit=limit)
    result = await synthesize_root_cause(records, incident_context(incident), llm=llm, timeout=timeout)
    return attach_root_cause(
        conn,
        project_id,
        incident_id,
        root_cause=result["root_cause"],
        recommended_fix=result["recommended_fix"],
        affected_requests=len(records),
    )


class RcaRunner:
    """Runs incident RCA as bounded background tasks.

    At most ``max_concurrent`` analyses run at once; the rest wait on the
    semaphore.  Failures are logged, never propagated to whoever scheduled
    the work.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        llm: BaseChatModel | None = None,
        *,
        max_concurrent: int = 4,
        limit: int = DEFAULT_REQUEST_LIMIT,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._conn = conn
        self._llm = llm
        self._limit = limit
        self._timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, project_id: str, incident_id: str) -> asyncio.Task[None]:
        task = asyncio.create_task(self._run(project_id, incident_id), name=f"rca-{incident_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, project_id: str, incident_id: str) -> None:
        async with self._semaphore:
            try:
                await generate_incident_rca(
                    self._conn,
                    project_id,
                    incident_id,
                    limit=self._limit,
                    llm=self._llm,
                    timeout=self._timeout,
                )
                logger.info("Background RCA completed for incident %s", incident_id)
            except Exception:
                logger.exception("Background RCA failed for incident %s", incident_id)

    async def drain(self) -> None:
        """Wait for every scheduled analysis to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Give running analyses ``timeout`` seconds, then cancel the rest."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d unfinished RCA tasks on shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
