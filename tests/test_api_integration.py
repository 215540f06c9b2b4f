"""Integration tests for the FastAPI service.

Uses TestClient against an in-memory store with no LLM key configured, so
root cause analysis always takes the fallback path. No real services needed.
"""

import json
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

import pytest
from fastapi.testclient import TestClient

from sentinel.admission.limiter import AdmissionController, SlidingWindowLimiter
from sentinel.incidents.rca import FALLBACK_RCA
from sentinel.storage.store import save_project
from sentinel.webhooks.alerts import compute_signature

PROJECT = "proj_1"
OTHER = "proj_2"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client(mock_settings: object) -> Iterator[TestClient]:  # noqa: ARG001
    """TestClient with two registered projects."""
    from sentinel.api.main import app

    with TestClient(app) as tc:
        save_project(app.state.conn, project_id=PROJECT, name="One")
        save_project(app.state.conn, project_id=OTHER, name="Two")
        yield tc


def _payload(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "prompt": "Summarise this document",
        "response": "Here is a summary.",
        "model": "gpt-4",
        "latency": 420,
        "tokens": 150,
    }
    body.update(overrides)
    return body


def _manual_incident(client: TestClient, project_id: str = PROJECT) -> str:
    resp = client.post(f"/projects/{project_id}/incidents", json={"severity": "high", "message": "investigate"})
    assert resp.status_code == 201
    return resp.json()["id"]


def _apply(client: TestClient, incident_id: str, action_type: str, parameters: dict[str, Any]) -> str:
    base = f"/projects/{PROJECT}/incidents/{incident_id}/remediations"
    resp = client.post(base, json={"actionType": action_type, "parameters": parameters})
    assert resp.status_code == 201
    action_id = resp.json()["id"]
    assert client.post(f"{base}/{action_id}/apply").status_code == 200
    return action_id


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class TestIngest:
    @pytest.mark.integration
    def test_stores_scored_record(self, client: TestClient) -> None:
        resp = client.post(f"/projects/{PROJECT}/telemetry", json=_payload(error="timeout"))
        assert resp.status_code == 201
        body = resp.json()
        assert body["record"]["risk_score"] == 25
        assert body["record"]["error"] == "timeout"
        assert body["directives"] == {"rate_limit_ceiling": None, "system_prompt_override": None}

        record_id = body["record"]["id"]
        fetched = client.get(f"/projects/{PROJECT}/telemetry/{record_id}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == record_id

    @pytest.mark.integration
    def test_record_not_visible_from_other_project(self, client: TestClient) -> None:
        record_id = client.post(f"/projects/{PROJECT}/telemetry", json=_payload()).json()["record"]["id"]
        assert client.get(f"/projects/{OTHER}/telemetry/{record_id}").status_code == 404

    @pytest.mark.integration
    @pytest.mark.parametrize(
        "overrides",
        [
            {"prompt": ""},
            {"prompt": "   "},
            {"prompt": "x" * 50_001},
            {"response": "x" * 100_001},
            {"model": ""},
            {"latency": -1},
            {"tokens": -5},
        ],
    )
    def test_validation_errors(self, client: TestClient, overrides: dict[str, Any]) -> None:
        resp = client.post(f"/projects/{PROJECT}/telemetry", json=_payload(**overrides))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.integration
    def test_missing_field(self, client: TestClient) -> None:
        payload = _payload()
        del payload["tokens"]
        assert client.post(f"/projects/{PROJECT}/telemetry", json=payload).status_code == 400

    @pytest.mark.integration
    def test_unknown_project(self, client: TestClient) -> None:
        resp = client.post("/projects/ghost/telemetry", json=_payload())
        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "RESOURCE_NOT_FOUND"
        assert error["message"] == "Project not found"
        assert "timestamp" in error

    @pytest.mark.integration
    def test_admission_rejects_with_retry_after(self, client: TestClient) -> None:
        from sentinel.api.main import app

        app.state.admission = AdmissionController(SlidingWindowLimiter(900, 2))
        headers = {"X-User-Id": "u1"}
        for _ in range(2):
            assert client.post(f"/projects/{PROJECT}/telemetry", json=_payload(), headers=headers).status_code == 201

        resp = client.post(f"/projects/{PROJECT}/telemetry", json=_payload(), headers=headers)
        assert resp.status_code == 429
        retry_after = int(resp.headers["Retry-After"])
        assert 0 < retry_after <= 900
        assert resp.json()["error"]["details"]["retryAfter"] == retry_after

        # a different identity has its own window
        other = client.post(f"/projects/{PROJECT}/telemetry", json=_payload(), headers={"X-API-Key": "k1"})
        assert other.status_code == 201


# ---------------------------------------------------------------------------
# Remediation enforcement on the request path
# ---------------------------------------------------------------------------


class TestEnforcement:
    @pytest.mark.integration
    def test_switch_model_blocks_until_resolved(self, client: TestClient) -> None:
        incident_id = _manual_incident(client)
        _apply(client, incident_id, "switch_model", {"newModel": "gpt-4"})

        resp = client.post(f"/projects/{PROJECT}/telemetry", json=_payload(model="gpt-3.5-turbo"))
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "REMEDIATION_CONSTRAINT_VIOLATED"
        assert error["details"]["actionType"] == "switch_model"
        assert error["details"]["requiredModel"] == "gpt-4"

        assert client.post(f"/projects/{PROJECT}/telemetry", json=_payload(model="gpt-4")).status_code == 201

        client.post(f"/projects/{PROJECT}/incidents/{incident_id}/resolve")
        assert client.post(f"/projects/{PROJECT}/telemetry", json=_payload(model="gpt-3.5-turbo")).status_code == 201

    @pytest.mark.integration
    def test_disabled_endpoint(self, client: TestClient) -> None:
        incident_id = _manual_incident(client)
        _apply(client, incident_id, "disable_endpoint", {"endpoint": "/v1/chat"})
        resp = client.post(f"/projects/{PROJECT}/telemetry", json=_payload(endpoint="/v1/chat"))
        assert resp.status_code == 403

    @pytest.mark.integration
    def test_directives_returned(self, client: TestClient) -> None:
        incident_id = _manual_incident(client)
        _apply(client, incident_id, "rate_limit_user", {"requestsPerMinute": 1})
        _apply(client, incident_id, "change_system_prompt", {"newPrompt": "Stay safe."})

        headers = {"X-User-Id": "u1"}
        resp = client.post(f"/projects/{PROJECT}/telemetry", json=_payload(), headers=headers)
        assert resp.status_code == 201
        assert resp.json()["directives"] == {"rate_limit_ceiling": 1, "system_prompt_override": "Stay safe."}

        # the remediation ceiling is lower than the global window
        resp = client.post(f"/projects/{PROJECT}/telemetry", json=_payload(), headers=headers)
        assert resp.status_code == 429
        assert 0 < int(resp.headers["Retry-After"]) <= 60

    @pytest.mark.integration
    def test_constraints_endpoint(self, client: TestClient) -> None:
        incident_id = _manual_incident(client)
        action_id = _apply(client, incident_id, "reset_settings", {})
        constraints = client.get(f"/projects/{PROJECT}/constraints").json()["constraints"]
        assert [c["id"] for c in constraints] == [action_id]
        assert client.get(f"/projects/{OTHER}/constraints").json()["constraints"] == []


# ---------------------------------------------------------------------------
# Detection and incidents
# ---------------------------------------------------------------------------


class TestDetections:
    @pytest.mark.integration
    def test_run_and_open_incident(self, client: TestClient) -> None:
        client.post(f"/projects/{PROJECT}/telemetry", json=_payload(latency=12000))

        resp = client.post(f"/projects/{PROJECT}/detections", json={"createIncident": True})
        assert resp.status_code == 200
        body = resp.json()
        assert body["triggered"] is True
        assert body["result"]["trigger_type"] == "latency_threshold"
        assert body["result"]["severity"] == "high"
        assert body["incident"]["status"] == "open"
        assert body["incident"]["metadata"]["maxLatency"] == 12000

    @pytest.mark.integration
    def test_config_override(self, client: TestClient) -> None:
        client.post(f"/projects/{PROJECT}/telemetry", json=_payload(latency=12000))
        resp = client.post(f"/projects/{PROJECT}/detections", json={"config": {"latencyThreshold": 20000}})
        assert resp.json() == {"triggered": False, "result": None, "incident": None}

    @pytest.mark.integration
    def test_no_body(self, client: TestClient) -> None:
        resp = client.post(f"/projects/{PROJECT}/detections")
        assert resp.status_code == 200
        assert resp.json()["triggered"] is False


class TestIncidentEndpoints:
    @pytest.mark.integration
    def test_list_paginates_newest_first(self, client: TestClient) -> None:
        ids = [_manual_incident(client) for _ in range(3)]
        page_one = client.get(f"/projects/{PROJECT}/incidents", params={"limit": 2, "page": 1}).json()
        page_two = client.get(f"/projects/{PROJECT}/incidents", params={"limit": 2, "page": 2}).json()
        assert [i["id"] for i in page_one["incidents"]] == [ids[2], ids[1]]
        assert [i["id"] for i in page_two["incidents"]] == [ids[0]]

    @pytest.mark.integration
    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"page": 0}])
    def test_list_rejects_bad_pagination(self, client: TestClient, params: dict[str, int]) -> None:
        assert client.get(f"/projects/{PROJECT}/incidents", params=params).status_code == 422

    @pytest.mark.integration
    def test_unknown_project_lists_empty(self, client: TestClient) -> None:
        assert client.get("/projects/ghost/incidents").json()["incidents"] == []

    @pytest.mark.integration
    def test_get_and_resolve(self, client: TestClient) -> None:
        incident_id = _manual_incident(client)
        assert client.get(f"/projects/{PROJECT}/incidents/{incident_id}").json()["trigger_type"] == "manual"
        assert client.get(f"/projects/{OTHER}/incidents/{incident_id}").status_code == 404

        first = client.post(f"/projects/{PROJECT}/incidents/{incident_id}/resolve").json()
        second = client.post(f"/projects/{PROJECT}/incidents/{incident_id}/resolve").json()
        assert first["status"] == "resolved"
        assert second["resolved_at"] == first["resolved_at"]

        open_only = client.get(f"/projects/{PROJECT}/incidents", params={"status": "open"}).json()
        assert open_only["incidents"] == []

    @pytest.mark.integration
    def test_manual_incident_validation(self, client: TestClient) -> None:
        resp = client.post(f"/projects/{PROJECT}/incidents", json={"severity": "urgent"})
        assert resp.status_code == 422

    @pytest.mark.integration
    def test_rca_uses_fallback_without_llm(self, client: TestClient) -> None:
        client.post(f"/projects/{PROJECT}/telemetry", json=_payload())
        incident_id = _manual_incident(client)
        resp = client.post(f"/projects/{PROJECT}/incidents/{incident_id}/rca")
        assert resp.status_code == 200
        body = resp.json()
        assert body["root_cause"] == FALLBACK_RCA["manual"]["root_cause"]
        assert body["affected_requests"] == 1


class TestRemediationEndpoints:
    @pytest.mark.integration
    def test_crud(self, client: TestClient) -> None:
        incident_id = _manual_incident(client)
        base = f"/projects/{PROJECT}/incidents/{incident_id}/remediations"

        created = client.post(base, json={"actionType": "switch_model", "parameters": {"newModel": "gpt-4"}}).json()
        assert created["executed"] is False
        assert created["metadata"]["reason"] == "Automated remediation for manual"

        assert client.get(f"{base}/{created['id']}").json()["id"] == created["id"]
        assert len(client.get(base).json()["actions"]) == 1

        assert client.delete(f"{base}/{created['id']}").status_code == 204
        assert client.delete(f"{base}/{created['id']}").status_code == 404

    @pytest.mark.integration
    def test_invalid_action(self, client: TestClient) -> None:
        incident_id = _manual_incident(client)
        base = f"/projects/{PROJECT}/incidents/{incident_id}/remediations"
        resp = client.post(base, json={"actionType": "reboot", "parameters": {}})
        assert resp.status_code == 422
        resp = client.post(base, json={"actionType": "increase_safety_threshold", "parameters": {"newThreshold": 150}})
        assert resp.status_code == 400

    @pytest.mark.integration
    def test_incident_of_other_project(self, client: TestClient) -> None:
        incident_id = _manual_incident(client, OTHER)
        resp = client.post(
            f"/projects/{PROJECT}/incidents/{incident_id}/remediations",
            json={"actionType": "reset_settings", "parameters": {}},
        )
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def _signed(alert: dict[str, Any], secret: str = "whsec-test") -> tuple[bytes, dict[str, str]]:
    body = json.dumps({"alert": alert}).encode()
    return body, {"X-Alert-Signature": compute_signature(body, secret), "Content-Type": "application/json"}


class TestAlertWebhook:
    @pytest.mark.integration
    def test_creates_incident(self, client: TestClient) -> None:
        body, headers = _signed({"id": "a1", "title": "Latency", "status": "Alert", "tags": [f"project_id:{PROJECT}"]})
        resp = client.post("/webhooks/alerts", content=body, headers=headers)
        assert resp.status_code == 200
        incident_id = resp.json()["incidentId"]

        incident = client.get(f"/projects/{PROJECT}/incidents/{incident_id}").json()
        assert incident["trigger_type"] == "webhook"
        assert incident["severity"] == "critical"
        assert incident["metadata"]["alertId"] == "a1"

    @pytest.mark.integration
    def test_bad_signature(self, client: TestClient) -> None:
        body, _ = _signed({"title": f"Project: {PROJECT}"})
        resp = client.post("/webhooks/alerts", content=body, headers={"X-Alert-Signature": "deadbeef"})
        assert resp.status_code == 400
        assert client.get(f"/projects/{PROJECT}/incidents").json()["incidents"] == []

    @pytest.mark.integration
    def test_missing_project(self, client: TestClient) -> None:
        body, headers = _signed({"title": "Disk full", "status": "warning"})
        resp = client.post("/webhooks/alerts", content=body, headers=headers)
        assert resp.status_code == 400
        assert "project" in resp.json()["error"]["message"].lower()

    @pytest.mark.integration
    def test_unknown_project(self, client: TestClient) -> None:
        body, headers = _signed({"title": "Project: ghost - down", "status": "warning"})
        assert client.post("/webhooks/alerts", content=body, headers=headers).status_code == 404


# ---------------------------------------------------------------------------
# Usage metrics
# ---------------------------------------------------------------------------


class TestUsageMetrics:
    def _traffic(self, client: TestClient) -> None:
        client.post(f"/projects/{PROJECT}/telemetry", json=_payload(latency=400))
        client.post(f"/projects/{PROJECT}/telemetry", json=_payload(latency=600, error="timeout"))

    @pytest.mark.integration
    def test_summary(self, client: TestClient) -> None:
        self._traffic(client)
        resp = client.get(f"/projects/{PROJECT}/metrics/summary")
        assert resp.status_code == 200
        body = resp.json()
        assert body["projectId"] == PROJECT
        assert body["totalRequests"] == 2
        assert body["errorCount"] == 1
        assert body["averageLatency"] == 500
        assert body["totalTokens"] == 300
        assert body["modelBreakdown"][0]["model"] == "gpt-4"
        assert len(body["dailySummary"]) == 1

    @pytest.mark.integration
    def test_summary_range_excludes_traffic(self, client: TestClient) -> None:
        self._traffic(client)
        resp = client.get(
            f"/projects/{PROJECT}/metrics/summary",
            params={"start": "2020-01-01T00:00:00Z", "end": "2020-01-02T00:00:00Z"},
        )
        assert resp.status_code == 200
        assert resp.json()["totalRequests"] == 0

    @pytest.mark.integration
    def test_breakdowns(self, client: TestClient) -> None:
        self._traffic(client)
        base = f"/projects/{PROJECT}/metrics"
        models = client.get(f"{base}/models").json()
        assert [(m["model"], m["count"]) for m in models] == [("gpt-4", 2)]
        assert client.get(f"{base}/errors").json()["errorsByModel"] == {"gpt-4": 1}
        assert client.get(f"{base}/tokens").json()["averageTokensPerRequest"] == 150
        costs = client.get(f"{base}/costs").json()
        assert costs["requestCount"] == 2
        assert costs["totalCost"] == pytest.approx(0.01)

    @pytest.mark.integration
    def test_daily(self, client: TestClient) -> None:
        self._traffic(client)
        today = datetime.now(UTC).date().isoformat()
        resp = client.get(f"/projects/{PROJECT}/metrics/daily", params={"date": today})
        assert resp.status_code == 200
        assert resp.json()["date"] == today
        assert resp.json()["requests"] == 2

    @pytest.mark.integration
    def test_daily_requires_date(self, client: TestClient) -> None:
        assert client.get(f"/projects/{PROJECT}/metrics/daily").status_code == 422
        assert client.get(f"/projects/{PROJECT}/metrics/daily", params={"date": "yesterday"}).status_code == 422

    @pytest.mark.integration
    @pytest.mark.parametrize("path", ["summary", "models", "errors", "tokens", "costs"])
    def test_unknown_project(self, client: TestClient, path: str) -> None:
        resp = client.get(f"/projects/ghost/metrics/{path}")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "RESOURCE_NOT_FOUND"


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


class TestOperational:
    @pytest.mark.integration
    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    @pytest.mark.integration
    def test_metrics_exposition(self, client: TestClient) -> None:
        client.get("/health")
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "sentinel_requests_total" in resp.text
        assert 'endpoint="/health"' in resp.text
