"""Incident lifecycle: open from a detection or external trigger, read, resolve.

States are ``open`` (initial) and ``resolved`` (terminal); the only
transition is open -> resolved.  There is no deduplication: every triggered
detection opens a new incident, even while an open incident with the same
trigger type exists for the project.
"""

import logging
import sqlite3
from typing import Any

from sentinel.detection.models import SEVERITIES, TRIGGER_TYPES, DetectionResult
from sentinel.errors import NotFoundError, ValidationError
from sentinel.observability.metrics import INCIDENTS_CREATED_TOTAL, INCIDENTS_RESOLVED_TOTAL
from sentinel.storage.models import IncidentRecord
from sentinel.storage.store import (
    get_incident as _load_incident,
)
from sentinel.storage.store import (
    list_incidents as _list_incidents,
)
from sentinel.storage.store import (
    now_iso,
    project_exists,
    save_incident,
    update_incident,
)

logger = logging.getLogger(__name__)

INCIDENT_STATUSES = ("open", "resolved")


def create_incident_from_detection(
    conn: sqlite3.Connection,
    project_id: str,
    detection: DetectionResult,
) -> IncidentRecord:
    """Persist a new open incident copying trigger type, severity and metadata.

    Raises:
        ValidationError: The detection did not trigger or lacks trigger type / severity.
        NotFoundError: The project does not exist.
    """
    if not detection.triggered or not detection.trigger_type or not detection.severity:
        raise ValidationError(
            "Invalid detection result",
            {"triggered": detection.triggered, "triggerType": detection.trigger_type, "severity": detection.severity},
        )
    if not project_exists(conn, project_id):
        raise NotFoundError("Project")

    incident = save_incident(
        conn,
        project_id=project_id,
        severity=detection.severity,
        trigger_type=detection.trigger_type,
        metadata=detection.metadata,
    )
    INCIDENTS_CREATED_TOTAL.labels(trigger_type=detection.trigger_type, severity=detection.severity).inc()
    logger.info(
        "Incident %s opened for project %s (%s, %s)",
        incident["id"],
        project_id,
        detection.trigger_type,
        detection.severity,
    )
    return incident


def create_incident_from_trigger(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    trigger_type: str,
    severity: str,
    message: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> IncidentRecord:
    """Open an incident from a webhook or manual trigger, bypassing the detectors."""
    if trigger_type not in TRIGGER_TYPES:
        raise ValidationError("Invalid trigger type", {"field": "triggerType", "validTypes": list(TRIGGER_TYPES)})
    if severity not in SEVERITIES:
        raise ValidationError("Invalid severity", {"field": "severity", "validValues": list(SEVERITIES)})

    detection = DetectionResult(
        triggered=True,
        trigger_type=trigger_type,  # type: ignore[arg-type]  # checked above
        severity=severity,  # type: ignore[arg-type]
        message=message,
        metadata=metadata or {},
    )
    return create_incident_from_detection(conn, project_id, detection)


def get_incident(conn: sqlite3.Connection, project_id: str, incident_id: str) -> IncidentRecord:
    """Load an incident, treating a cross-project reference as missing."""
    incident = _load_incident(conn, incident_id)
    if incident is None or incident["project_id"] != project_id:
        raise NotFoundError("Incident")
    return incident


def list_incidents(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[IncidentRecord]:
    """Incidents for a project, newest first. An unknown project yields []."""
    if status is not None and status not in INCIDENT_STATUSES:
        raise ValidationError("Invalid status filter", {"field": "status", "validValues": list(INCIDENT_STATUSES)})
    return _list_incidents(conn, project_id, status=status, limit=limit, offset=offset)


def resolve_incident(conn: sqlite3.Connection, project_id: str, incident_id: str) -> IncidentRecord:
    """Move an incident to ``resolved``.

    Resolving an already-resolved incident is a no-op: the stored incident is
    returned unchanged, keeping its original resolution timestamp.
    """
    incident = get_incident(conn, project_id, incident_id)
    if incident["status"] == "resolved":
        logger.info("Incident %s already resolved", incident_id)
        return incident

    update_incident(conn, incident_id, status="resolved", resolved_at=now_iso())
    INCIDENTS_RESOLVED_TOTAL.inc()
    logger.info("Incident %s resolved (project %s)", incident_id, project_id)
    return get_incident(conn, project_id, incident_id)


def attach_root_cause(
    conn: sqlite3.Connection,
    project_id: str,
    incident_id: str,
    *,
    root_cause: str,
    recommended_fix: str,
    affected_requests: int | None = None,
) -> IncidentRecord:
    """Store synthesized root-cause text on an incident (open or resolved)."""
    get_incident(conn, project_id, incident_id)
    update_incident(
        conn,
        incident_id,
        root_cause=root_cause,
        recommended_fix=recommended_fix,
        affected_requests=affected_requests,
    )
    return get_incident(conn, project_id, incident_id)
