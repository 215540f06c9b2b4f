"""SQLite-backed store: connection management, schema init, and CRUD.

Telemetry rows are append-only: nothing in this module updates or deletes
them.  Incidents are mutated only by resolve and root-cause attachment;
remediation actions by apply and delete.

All database operations use parameterized queries to prevent SQL injection.
JSON maps (incident metadata, action parameters/metadata) are stored as TEXT.
The schema is auto-created on first access via CREATE TABLE IF NOT EXISTS
(idempotent).
"""

import json
import logging
import sqlite3
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sentinel.config import get_settings
from sentinel.storage.models import (
    IncidentRecord,
    MetricsCacheRecord,
    ProjectRecord,
    RemediationRecord,
    TelemetryRecord,
    TelemetryStats,
    UsageBucket,
)

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS projects (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS telemetry (
    id          TEXT PRIMARY KEY,
    project_id  TEXT NOT NULL,
    prompt      TEXT NOT NULL,
    response    TEXT NOT NULL,
    model       TEXT NOT NULL,
    latency     REAL NOT NULL,
    tokens      INTEGER NOT NULL,
    risk_score  INTEGER NOT NULL,
    error       TEXT,
    created_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_telemetry_project_created ON telemetry(project_id, created_at);

CREATE TABLE IF NOT EXISTS incidents (
    id                TEXT PRIMARY KEY,
    project_id        TEXT NOT NULL,
    severity          TEXT NOT NULL,
    trigger_type      TEXT NOT NULL,
    status            TEXT NOT NULL DEFAULT 'open',
    metadata          TEXT NOT NULL DEFAULT '{}',
    root_cause        TEXT,
    recommended_fix   TEXT,
    affected_requests INTEGER,
    created_at        TEXT NOT NULL,
    resolved_at       TEXT
);
CREATE INDEX IF NOT EXISTS idx_incidents_project_status ON incidents(project_id, status);
CREATE INDEX IF NOT EXISTS idx_incidents_created ON incidents(created_at);

CREATE TABLE IF NOT EXISTS remediation_actions (
    id           TEXT PRIMARY KEY,
    incident_id  TEXT NOT NULL REFERENCES incidents(id) ON DELETE CASCADE,
    action_type  TEXT NOT NULL,
    parameters   TEXT NOT NULL DEFAULT '{}',
    executed     INTEGER NOT NULL DEFAULT 0,
    executed_at  TEXT,
    metadata     TEXT NOT NULL DEFAULT '{}',
    created_at   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_remediation_incident ON remediation_actions(incident_id);

CREATE TABLE IF NOT EXISTS metrics_cache (
    project_id         TEXT NOT NULL,
    date               TEXT NOT NULL,
    total_requests     INTEGER NOT NULL DEFAULT 0,
    error_count        INTEGER NOT NULL DEFAULT 0,
    error_rate         REAL NOT NULL DEFAULT 0,
    average_latency    INTEGER NOT NULL DEFAULT 0,
    total_tokens       INTEGER NOT NULL DEFAULT 0,
    estimated_cost     REAL NOT NULL DEFAULT 0,
    high_risk_count    INTEGER NOT NULL DEFAULT 0,
    average_risk_score REAL NOT NULL DEFAULT 0,
    model_breakdown    TEXT NOT NULL DEFAULT '[]',
    updated_at         TEXT NOT NULL,
    PRIMARY KEY (project_id, date)
);
"""


def now_iso() -> str:
    """Current UTC time as a fixed-width ISO 8601 string (sortable as text)."""
    return datetime.now(UTC).isoformat(timespec="microseconds")


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Explicit path to the database file. If None, reads from settings.
                 Pass ":memory:" for in-memory databases (tests).

    Returns:
        A new sqlite3.Connection with row_factory set to sqlite3.Row.

    Raises:
        ValueError: If the store is not configured (empty db path).
    """
    if db_path is None:
        db_path = get_settings().database_path
    if not db_path:
        msg = "Store not configured (DATABASE_PATH is empty)"
        raise ValueError(msg)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they don't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


def get_initialized_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Get a connection with schema already initialized. Convenience wrapper."""
    conn = get_connection(db_path)
    init_schema(conn)
    return conn


# ---------------------------------------------------------------------------
# Projects (stand-in for the external project registry)
# ---------------------------------------------------------------------------


def save_project(conn: sqlite3.Connection, *, project_id: str, name: str) -> ProjectRecord:
    """Register a project. Re-registering an existing id keeps the original row."""
    created_at = now_iso()
    conn.execute(
        "INSERT OR IGNORE INTO projects (id, name, created_at) VALUES (?, ?, ?)",
        (project_id, name, created_at),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    return ProjectRecord(id=row["id"], name=row["name"], created_at=row["created_at"])


def project_exists(conn: sqlite3.Connection, project_id: str) -> bool:
    row = conn.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone()
    return row is not None


def list_project_ids(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute("SELECT id FROM projects ORDER BY created_at").fetchall()
    return [r["id"] for r in rows]


# ---------------------------------------------------------------------------
# Telemetry (append-only)
# ---------------------------------------------------------------------------


def save_telemetry(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    prompt: str,
    response: str,
    model: str,
    latency: float,
    tokens: int,
    risk_score: int,
    error: str | None = None,
    created_at: str | None = None,
) -> TelemetryRecord:
    """Append a telemetry row and return it."""
    record = TelemetryRecord(
        id=uuid4().hex,
        project_id=project_id,
        prompt=prompt,
        response=response,
        model=model,
        latency=latency,
        tokens=tokens,
        risk_score=risk_score,
        error=error,
        created_at=created_at or now_iso(),
    )
    conn.execute(
        """INSERT INTO telemetry
           (id, project_id, prompt, response, model, latency, tokens, risk_score, error, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            record["id"],
            record["project_id"],
            record["prompt"],
            record["response"],
            record["model"],
            record["latency"],
            record["tokens"],
            record["risk_score"],
            record["error"],
            record["created_at"],
        ),
    )
    conn.commit()
    return record


def get_telemetry(conn: sqlite3.Connection, record_id: str) -> TelemetryRecord | None:
    row = conn.execute("SELECT * FROM telemetry WHERE id = ?", (record_id,)).fetchone()
    if row is None:
        return None
    return _row_to_telemetry(row)


def get_recent_telemetry(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    limit: int = 100,
    since: str | None = None,
) -> list[TelemetryRecord]:
    """Most recent telemetry for a project, newest first.

    Args:
        project_id: Owning project.
        limit: Maximum rows to return.
        since: Optional ISO timestamp; only rows created at or after it are returned.
    """
    if since is not None:
        rows = conn.execute(
            """SELECT * FROM telemetry WHERE project_id = ? AND created_at >= ?
               ORDER BY created_at DESC, rowid DESC LIMIT ?""",
            (project_id, since, limit),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM telemetry WHERE project_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (project_id, limit),
        ).fetchall()
    return [_row_to_telemetry(r) for r in rows]


def get_telemetry_stats(conn: sqlite3.Connection, project_id: str, since: str | None = None) -> TelemetryStats:
    """Aggregate counts and averages for a project, optionally from ``since`` onward."""
    where = "project_id = ?"
    params: list[object] = [project_id]
    if since is not None:
        where += " AND created_at >= ?"
        params.append(since)
    row = conn.execute(
        f"""SELECT COUNT(*) AS total,
                   SUM(CASE WHEN error IS NOT NULL AND error != '' THEN 1 ELSE 0 END) AS errors,
                   AVG(latency) AS avg_latency,
                   AVG(risk_score) AS avg_risk
            FROM telemetry WHERE {where}""",
        params,
    ).fetchone()
    total = row["total"] or 0
    errors = row["errors"] or 0
    return TelemetryStats(
        total_requests=total,
        error_count=errors,
        error_rate=errors / total if total else 0.0,
        avg_latency=row["avg_latency"] or 0.0,
        avg_risk_score=row["avg_risk"] or 0.0,
    )


def get_usage_buckets(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    since: str | None = None,
    until: str | None = None,
    high_risk_threshold: int = 80,
) -> list[UsageBucket]:
    """Telemetry grouped by UTC calendar day and model, oldest day first.

    Args:
        since: Optional ISO timestamp, inclusive.
        until: Optional ISO timestamp, exclusive.
        high_risk_threshold: Rows scoring above it count towards ``high_risk``.
    """
    where = "project_id = ?"
    params: list[object] = [high_risk_threshold, project_id]
    if since is not None:
        where += " AND created_at >= ?"
        params.append(since)
    if until is not None:
        where += " AND created_at < ?"
        params.append(until)
    rows = conn.execute(
        f"""SELECT substr(created_at, 1, 10) AS day,
                   model,
                   COUNT(*) AS requests,
                   SUM(CASE WHEN error IS NOT NULL AND error != '' THEN 1 ELSE 0 END) AS errors,
                   SUM(tokens) AS tokens,
                   SUM(latency) AS total_latency,
                   SUM(risk_score) AS total_risk,
                   SUM(CASE WHEN risk_score > ? THEN 1 ELSE 0 END) AS high_risk
            FROM telemetry WHERE {where}
            GROUP BY day, model
            ORDER BY day, model""",
        params,
    ).fetchall()
    return [
        UsageBucket(
            day=r["day"],
            model=r["model"],
            requests=r["requests"],
            errors=r["errors"] or 0,
            tokens=r["tokens"] or 0,
            total_latency=r["total_latency"] or 0.0,
            total_risk=r["total_risk"] or 0,
            high_risk=r["high_risk"] or 0,
        )
        for r in rows
    ]


def _row_to_telemetry(row: sqlite3.Row) -> TelemetryRecord:
    return TelemetryRecord(
        id=row["id"],
        project_id=row["project_id"],
        prompt=row["prompt"],
        response=row["response"],
        model=row["model"],
        latency=row["latency"],
        tokens=row["tokens"],
        risk_score=row["risk_score"],
        error=row["error"],
        created_at=row["created_at"],
    )


# ---------------------------------------------------------------------------
# Incidents CRUD
# ---------------------------------------------------------------------------


def save_incident(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    severity: str,
    trigger_type: str,
    metadata: dict[str, Any] | None = None,
) -> IncidentRecord:
    """Record a new open incident and return it."""
    incident = IncidentRecord(
        id=uuid4().hex,
        project_id=project_id,
        severity=severity,
        trigger_type=trigger_type,
        status="open",
        metadata=dict(metadata or {}),
        root_cause=None,
        recommended_fix=None,
        affected_requests=None,
        created_at=now_iso(),
        resolved_at=None,
    )
    conn.execute(
        """INSERT INTO incidents
           (id, project_id, severity, trigger_type, status, metadata, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            incident["id"],
            project_id,
            severity,
            trigger_type,
            incident["status"],
            json.dumps(incident["metadata"], default=str),
            incident["created_at"],
        ),
    )
    conn.commit()
    return incident


def get_incident(conn: sqlite3.Connection, incident_id: str) -> IncidentRecord | None:
    row = conn.execute("SELECT * FROM incidents WHERE id = ?", (incident_id,)).fetchone()
    if row is None:
        return None
    return _row_to_incident(row)


def list_incidents(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[IncidentRecord]:
    """Incidents for a project, most recent first."""
    conditions = ["project_id = ?"]
    params: list[object] = [project_id]
    if status:
        conditions.append("status = ?")
        params.append(status)
    params.extend([limit, offset])
    rows = conn.execute(
        f"""SELECT * FROM incidents WHERE {' AND '.join(conditions)}
            ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?""",
        params,
    ).fetchall()
    return [_row_to_incident(r) for r in rows]


def update_incident(
    conn: sqlite3.Connection,
    incident_id: str,
    *,
    status: str | None = None,
    resolved_at: str | None = None,
    root_cause: str | None = None,
    recommended_fix: str | None = None,
    affected_requests: int | None = None,
) -> None:
    """Update fields on an existing incident (e.g. mark resolved, attach RCA)."""
    updates: list[str] = []
    params: list[object] = []
    if status is not None:
        updates.append("status = ?")
        params.append(status)
    if resolved_at is not None:
        updates.append("resolved_at = ?")
        params.append(resolved_at)
    if root_cause is not None:
        updates.append("root_cause = ?")
        params.append(root_cause)
    if recommended_fix is not None:
        updates.append("recommended_fix = ?")
        params.append(recommended_fix)
    if affected_requests is not None:
        updates.append("affected_requests = ?")
        params.append(affected_requests)
    if not updates:
        return
    params.append(incident_id)
    conn.execute(f"UPDATE incidents SET {', '.join(updates)} WHERE id = ?", params)
    conn.commit()


def _row_to_incident(row: sqlite3.Row) -> IncidentRecord:
    return IncidentRecord(
        id=row["id"],
        project_id=row["project_id"],
        severity=row["severity"],
        trigger_type=row["trigger_type"],
        status=row["status"],
        metadata=_load_json(row["metadata"]),
        root_cause=row["root_cause"],
        recommended_fix=row["recommended_fix"],
        affected_requests=row["affected_requests"],
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
    )


# ---------------------------------------------------------------------------
# Remediation actions CRUD
# ---------------------------------------------------------------------------


def save_remediation_action(
    conn: sqlite3.Connection,
    *,
    incident_id: str,
    action_type: str,
    parameters: dict[str, Any],
    metadata: dict[str, Any],
) -> RemediationRecord:
    """Record a new (not yet executed) remediation action and return it."""
    action = RemediationRecord(
        id=uuid4().hex,
        incident_id=incident_id,
        action_type=action_type,
        parameters=dict(parameters),
        executed=False,
        executed_at=None,
        metadata=dict(metadata),
        created_at=now_iso(),
    )
    conn.execute(
        """INSERT INTO remediation_actions
           (id, incident_id, action_type, parameters, executed, metadata, created_at)
           VALUES (?, ?, ?, ?, 0, ?, ?)""",
        (
            action["id"],
            incident_id,
            action_type,
            json.dumps(action["parameters"]),
            json.dumps(action["metadata"], default=str),
            action["created_at"],
        ),
    )
    conn.commit()
    return action


def get_remediation_action(conn: sqlite3.Connection, action_id: str) -> RemediationRecord | None:
    row = conn.execute("SELECT * FROM remediation_actions WHERE id = ?", (action_id,)).fetchone()
    if row is None:
        return None
    return _row_to_remediation(row)


def list_remediation_actions(
    conn: sqlite3.Connection,
    incident_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[RemediationRecord]:
    """Actions attached to an incident, most recent first."""
    rows = conn.execute(
        """SELECT * FROM remediation_actions WHERE incident_id = ?
           ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?""",
        (incident_id, limit, offset),
    ).fetchall()
    return [_row_to_remediation(r) for r in rows]


def mark_remediation_executed(
    conn: sqlite3.Connection,
    action_id: str,
    *,
    executed_at: str,
    metadata: dict[str, Any],
) -> None:
    """Flip the executed flag (one-way) and store the merged metadata."""
    conn.execute(
        "UPDATE remediation_actions SET executed = 1, executed_at = ?, metadata = ? WHERE id = ?",
        (executed_at, json.dumps(metadata, default=str), action_id),
    )
    conn.commit()


def delete_remediation_action(conn: sqlite3.Connection, action_id: str) -> bool:
    """Delete an action. Returns False if it did not exist."""
    cursor = conn.execute("DELETE FROM remediation_actions WHERE id = ?", (action_id,))
    conn.commit()
    return cursor.rowcount > 0


def get_active_remediation_actions(conn: sqlite3.Connection, project_id: str) -> list[RemediationRecord]:
    """Executed actions whose incident is still open, oldest action first."""
    rows = conn.execute(
        """SELECT r.* FROM remediation_actions AS r
           JOIN incidents AS i ON i.id = r.incident_id
           WHERE i.project_id = ? AND i.status = 'open' AND r.executed = 1
           ORDER BY r.created_at ASC, r.rowid ASC""",
        (project_id,),
    ).fetchall()
    return [_row_to_remediation(r) for r in rows]


def _row_to_remediation(row: sqlite3.Row) -> RemediationRecord:
    return RemediationRecord(
        id=row["id"],
        incident_id=row["incident_id"],
        action_type=row["action_type"],
        parameters=_load_json(row["parameters"]),
        executed=bool(row["executed"]),
        executed_at=row["executed_at"],
        metadata=_load_json(row["metadata"]),
        created_at=row["created_at"],
    )


def _load_json(raw: str | None) -> dict[str, Any]:
    """Decode a stored JSON map; corrupt or non-object values decode to {}."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Discarding undecodable JSON column value")
        return {}
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Daily metrics cache
# ---------------------------------------------------------------------------


def upsert_metrics_cache(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    date: str,
    total_requests: int,
    error_count: int,
    error_rate: float,
    average_latency: int,
    total_tokens: int,
    estimated_cost: float,
    high_risk_count: int,
    average_risk_score: float,
    model_breakdown: list[dict[str, Any]],
) -> MetricsCacheRecord:
    """Insert or replace the cached summary for one project and day."""
    record = MetricsCacheRecord(
        project_id=project_id,
        date=date,
        total_requests=total_requests,
        error_count=error_count,
        error_rate=error_rate,
        average_latency=average_latency,
        total_tokens=total_tokens,
        estimated_cost=estimated_cost,
        high_risk_count=high_risk_count,
        average_risk_score=average_risk_score,
        model_breakdown=list(model_breakdown),
        updated_at=now_iso(),
    )
    conn.execute(
        """INSERT INTO metrics_cache
           (project_id, date, total_requests, error_count, error_rate, average_latency,
            total_tokens, estimated_cost, high_risk_count, average_risk_score, model_breakdown, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(project_id, date) DO UPDATE SET
               total_requests = excluded.total_requests,
               error_count = excluded.error_count,
               error_rate = excluded.error_rate,
               average_latency = excluded.average_latency,
               total_tokens = excluded.total_tokens,
               estimated_cost = excluded.estimated_cost,
               high_risk_count = excluded.high_risk_count,
               average_risk_score = excluded.average_risk_score,
               model_breakdown = excluded.model_breakdown,
               updated_at = excluded.updated_at""",
        (
            project_id,
            date,
            total_requests,
            error_count,
            error_rate,
            average_latency,
            total_tokens,
            estimated_cost,
            high_risk_count,
            average_risk_score,
            json.dumps(record["model_breakdown"], default=str),
            record["updated_at"],
        ),
    )
    conn.commit()
    return record


def get_metrics_cache(conn: sqlite3.Connection, project_id: str, date: str) -> MetricsCacheRecord | None:
    row = conn.execute(
        "SELECT * FROM metrics_cache WHERE project_id = ? AND date = ?",
        (project_id, date),
    ).fetchone()
    if row is None:
        return None
    try:
        breakdown = json.loads(row["model_breakdown"])
    except (json.JSONDecodeError, TypeError):
        logger.warning("Discarding undecodable model breakdown for %s on %s", project_id, date)
        breakdown = []
    return MetricsCacheRecord(
        project_id=row["project_id"],
        date=row["date"],
        total_requests=row["total_requests"],
        error_count=row["error_count"],
        error_rate=row["error_rate"],
        average_latency=row["average_latency"],
        total_tokens=row["total_tokens"],
        estimated_cost=row["estimated_cost"],
        high_risk_count=row["high_risk_count"],
        average_risk_score=row["average_risk_score"],
        model_breakdown=breakdown if isinstance(breakdown, list) else [],
        updated_at=row["updated_at"],
    )


def delete_metrics_cache_before(conn: sqlite3.Connection, date: str) -> int:
    """Delete cached days strictly before ``date``; returns the number removed."""
    cursor = conn.execute("DELETE FROM metrics_cache WHERE date < ?", (date,))
    conn.commit()
    return cursor.rowcount
