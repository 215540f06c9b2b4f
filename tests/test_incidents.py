"""Unit tests for the incident lifecycle."""

import sqlite3

import pytest

from sentinel.detection.models import DetectionResult
from sentinel.errors import NotFoundError, ValidationError
from sentinel.incidents.lifecycle import (
    attach_root_cause,
    create_incident_from_detection,
    create_incident_from_trigger,
    get_incident,
    list_incidents,
    resolve_incident,
)
from sentinel.storage.store import get_connection, init_schema, save_project

PROJECT = "proj_1"
OTHER = "proj_2"


def _make_conn() -> sqlite3.Connection:
    conn = get_connection(":memory:")
    init_schema(conn)
    save_project(conn, project_id=PROJECT, name="One")
    save_project(conn, project_id=OTHER, name="Two")
    return conn


def _detection(**overrides: object) -> DetectionResult:
    fields: dict = {
        "triggered": True,
        "trigger_type": "latency_threshold",
        "severity": "high",
        "message": "slow",
        "metadata": {"violatingCount": 3, "maxLatency": 12000},
    }
    fields.update(overrides)
    return DetectionResult(**fields)


class TestCreateFromDetection:
    def test_copies_detection(self) -> None:
        conn = _make_conn()
        incident = create_incident_from_detection(conn, PROJECT, _detection())
        assert incident["status"] == "open"
        assert incident["severity"] == "high"
        assert incident["trigger_type"] == "latency_threshold"
        assert incident["metadata"] == {"violatingCount": 3, "maxLatency": 12000}
        assert incident["resolved_at"] is None

    def test_not_triggered_rejected(self) -> None:
        with pytest.raises(ValidationError):
            create_incident_from_detection(_make_conn(), PROJECT, DetectionResult.not_triggered())

    def test_missing_severity_rejected(self) -> None:
        with pytest.raises(ValidationError):
            create_incident_from_detection(_make_conn(), PROJECT, _detection(severity=None))

    def test_unknown_project(self) -> None:
        with pytest.raises(NotFoundError):
            create_incident_from_detection(_make_conn(), "ghost", _detection())

    def test_no_deduplication(self) -> None:
        conn = _make_conn()
        first = create_incident_from_detection(conn, PROJECT, _detection())
        second = create_incident_from_detection(conn, PROJECT, _detection())
        assert first["id"] != second["id"]
        assert len(list_incidents(conn, PROJECT, status="open")) == 2


class TestCreateFromTrigger:
    def test_manual(self) -> None:
        conn = _make_conn()
        incident = create_incident_from_trigger(
            conn, PROJECT, trigger_type="manual", severity="low", message="check", metadata={"by": "ops"}
        )
        assert incident["trigger_type"] == "manual"
        assert incident["metadata"] == {"by": "ops"}

    def test_invalid_trigger_type(self) -> None:
        with pytest.raises(ValidationError):
            create_incident_from_trigger(_make_conn(), PROJECT, trigger_type="bogus", severity="low")

    def test_invalid_severity(self) -> None:
        with pytest.raises(ValidationError):
            create_incident_from_trigger(_make_conn(), PROJECT, trigger_type="manual", severity="urgent")


class TestReadAndList:
    def test_cross_project_is_not_found(self) -> None:
        conn = _make_conn()
        incident = create_incident_from_detection(conn, PROJECT, _detection())
        with pytest.raises(NotFoundError):
            get_incident(conn, OTHER, incident["id"])

    def test_unknown_project_lists_empty(self) -> None:
        assert list_incidents(_make_conn(), "ghost") == []

    def test_invalid_status_filter(self) -> None:
        with pytest.raises(ValidationError):
            list_incidents(_make_conn(), PROJECT, status="closed")


class TestResolve:
    def test_resolves(self) -> None:
        conn = _make_conn()
        incident = create_incident_from_detection(conn, PROJECT, _detection())
        resolved = resolve_incident(conn, PROJECT, incident["id"])
        assert resolved["status"] == "resolved"
        assert resolved["resolved_at"] is not None

    def test_second_resolve_is_noop(self) -> None:
        conn = _make_conn()
        incident = create_incident_from_detection(conn, PROJECT, _detection())
        first = resolve_incident(conn, PROJECT, incident["id"])
        second = resolve_incident(conn, PROJECT, incident["id"])
        assert second["status"] == "resolved"
        assert second["resolved_at"] == first["resolved_at"]

    def test_missing(self) -> None:
        with pytest.raises(NotFoundError):
            resolve_incident(_make_conn(), PROJECT, "nope")

    def test_wrong_project(self) -> None:
        conn = _make_conn()
        incident = create_incident_from_detection(conn, PROJECT, _detection())
        with pytest.raises(NotFoundError):
            resolve_incident(conn, OTHER, incident["id"])
        assert get_incident(conn, PROJECT, incident["id"])["status"] == "open"


class TestAttachRootCause:
    def test_attaches(self) -> None:
        conn = _make_conn()
        incident = create_incident_from_detection(conn, PROJECT, _detection())
        updated = attach_root_cause(
            conn, PROJECT, incident["id"], root_cause="Overload", recommended_fix="Scale out", affected_requests=7
        )
        assert updated["root_cause"] == "Overload"
        assert updated["recommended_fix"] == "Scale out"
        assert updated["affected_requests"] == 7
        assert updated["status"] == "open"
