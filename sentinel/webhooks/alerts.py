"""Inbound monitoring alerts (Datadog-style webhook payloads).

The body is authenticated with an HMAC-SHA256 hex digest of the raw bytes
before it is parsed, then mapped onto a ``webhook`` detection result.
"""

import hashlib
import hmac
import json
import logging
import re
from typing import Any

from sentinel.detection.models import DetectionResult
from sentinel.errors import ValidationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Alert-Signature"

_PROJECT_TAG = "project_id:"
_PROJECT_IN_TITLE = re.compile(r"Project:\s*([a-zA-Z0-9_-]+)")

_SEVERITY_BY_STATUS = {
    "alert": "critical",
    "critical": "critical",
    "warning": "high",
    "warn": "high",
    "no data": "medium",
    "unknown": "medium",
}


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """Check ``signature`` against the body in constant time.

    Raises:
        ValidationError: Missing header, no configured secret, or mismatch.
    """
    if not signature:
        logger.warning("Alert webhook rejected: missing %s header", SIGNATURE_HEADER)
        raise ValidationError("Invalid webhook signature", {"error": f"Missing {SIGNATURE_HEADER} header"})
    if not secret:
        logger.warning("Alert webhook rejected: WEBHOOK_SECRET is not configured")
        raise ValidationError("Invalid webhook signature", {"error": "Webhook secret not configured"})

    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(signature.strip().lower().encode(), expected.encode()):
        logger.warning("Alert webhook rejected: signature mismatch")
        raise ValidationError("Invalid webhook signature", {"error": "Invalid signature"})


def parse_alert(raw_body: bytes) -> dict[str, Any]:
    """Decode the body and return its ``alert`` object."""
    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.warning("Failed to parse alert webhook body: %s", exc)
        raise ValidationError("Invalid JSON in request body") from exc

    alert = body.get("alert") if isinstance(body, dict) else None
    if not isinstance(alert, dict):
        raise ValidationError("Missing alert field in webhook body")
    return alert


def extract_project_id(alert: dict[str, Any]) -> str | None:
    """Project id from a ``project_id:<id>`` tag, a ``Project: <id>`` title, or snapshot metadata."""
    tags = alert.get("tags")
    if isinstance(tags, list):
        for tag in tags:
            if isinstance(tag, str) and tag.startswith(_PROJECT_TAG):
                return tag[len(_PROJECT_TAG) :]

    title = alert.get("title")
    if isinstance(title, str):
        match = _PROJECT_IN_TITLE.search(title)
        if match:
            return match.group(1)

    snapshot = alert.get("snapshot")
    if isinstance(snapshot, dict):
        metadata = snapshot.get("metadata")
        if isinstance(metadata, dict) and metadata.get("project_id"):
            return str(metadata["project_id"])

    return None


def map_alert_severity(status: Any) -> str:
    if not isinstance(status, str):
        return "low"
    return _SEVERITY_BY_STATUS.get(status.lower(), "low")


def alert_to_detection(alert: dict[str, Any]) -> DetectionResult:
    org = alert.get("org")
    return DetectionResult(
        triggered=True,
        trigger_type="webhook",
        severity=map_alert_severity(alert.get("status")),  # type: ignore[arg-type]
        message=alert.get("title") or "Monitoring alert triggered",
        metadata={
            "alertId": alert.get("id"),
            "alertTitle": alert.get("title"),
            "alertStatus": alert.get("status"),
            "alertLastUpdated": alert.get("last_updated"),
            "alertOrg": org.get("name") if isinstance(org, dict) else None,
            "webhookSource": "datadog",
        },
    )
