"""Remediation actions and the runtime constraints they impose.

An action is recorded against an incident, then applied (``executed``).
While its incident stays open, an executed action is an *active
constraint* on every request for the project.  Constraints are recomputed
from the store on every check and never cached, so resolving the incident
lifts them immediately.
"""

import logging
import math
import sqlite3
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from sentinel.errors import NotFoundError, ValidationError
from sentinel.incidents.lifecycle import get_incident
from sentinel.observability.metrics import CONSTRAINT_VIOLATIONS_TOTAL
from sentinel.remediation.models import (
    ACTION_PARAMETER_MODELS,
    ACTION_TYPES,
    ConstraintViolation,
    RequestData,
)
from sentinel.storage import store
from sentinel.storage.models import RemediationRecord

logger = logging.getLogger(__name__)


def validate_parameters(action_type: str, parameters: Any) -> dict[str, Any]:
    """Validate ``parameters`` for ``action_type`` and return the normalised camelCase map."""
    model_cls = ACTION_PARAMETER_MODELS.get(action_type)
    if model_cls is None:
        raise ValidationError("Invalid action type", {"field": "actionType", "validTypes": list(ACTION_TYPES)})
    if not isinstance(parameters, dict):
        raise ValidationError("Parameters must be an object", {"field": "parameters"})
    try:
        params = model_cls.model_validate(parameters)
    except PydanticValidationError as exc:
        fields = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
        raise ValidationError(
            f"Invalid parameters for {action_type}",
            {"field": "parameters", "errors": fields},
        ) from exc
    return params.model_dump(by_alias=True)


def _get_action(conn: sqlite3.Connection, incident_id: str, action_id: str) -> RemediationRecord:
    action = store.get_remediation_action(conn, action_id)
    if action is None or action["incident_id"] != incident_id:
        logger.warning("Remediation action %s not found on incident %s", action_id, incident_id)
        raise NotFoundError("Remediation action")
    return action


def create_remediation_action(
    conn: sqlite3.Connection,
    project_id: str,
    incident_id: str,
    *,
    action_type: str,
    parameters: Any,
) -> RemediationRecord:
    """Record a pending action against an incident of ``project_id``."""
    normalised = validate_parameters(action_type, parameters)
    incident = get_incident(conn, project_id, incident_id)

    action = store.save_remediation_action(
        conn,
        incident_id=incident_id,
        action_type=action_type,
        parameters=normalised,
        metadata={
            "createdBy": "system",
            "reason": f"Automated remediation for {incident['trigger_type']}",
        },
    )
    logger.info("Remediation action %s (%s) created for incident %s", action["id"], action_type, incident_id)
    return action


def apply_remediation_action(
    conn: sqlite3.Connection,
    project_id: str,
    incident_id: str,
    action_id: str,
) -> RemediationRecord:
    """Mark an action executed. Re-applying re-stamps the execution time."""
    get_incident(conn, project_id, incident_id)
    action = _get_action(conn, incident_id, action_id)

    executed_at = store.now_iso()
    metadata = {**action["metadata"], "executedAt": executed_at}
    store.mark_remediation_executed(conn, action_id, executed_at=executed_at, metadata=metadata)
    logger.info("Remediation action %s (%s) applied", action_id, action["action_type"])
    return _get_action(conn, incident_id, action_id)


def get_remediation_action(
    conn: sqlite3.Connection,
    project_id: str,
    incident_id: str,
    action_id: str,
) -> RemediationRecord:
    get_incident(conn, project_id, incident_id)
    return _get_action(conn, incident_id, action_id)


def list_remediation_actions(
    conn: sqlite3.Connection,
    project_id: str,
    incident_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[RemediationRecord]:
    get_incident(conn, project_id, incident_id)
    actions = store.list_remediation_actions(conn, incident_id, limit=limit, offset=offset)
    logger.debug("Retrieved %d remediation actions for incident %s", len(actions), incident_id)
    return actions


def delete_remediation_action(
    conn: sqlite3.Connection,
    project_id: str,
    incident_id: str,
    action_id: str,
) -> None:
    get_incident(conn, project_id, incident_id)
    _get_action(conn, incident_id, action_id)
    store.delete_remediation_action(conn, action_id)
    logger.info("Remediation action %s deleted", action_id)


def get_active_constraints(conn: sqlite3.Connection, project_id: str) -> list[RemediationRecord]:
    """Executed actions whose incident is still open, oldest first."""
    return store.get_active_remediation_actions(conn, project_id)


def _evaluate(action: RemediationRecord, request: RequestData) -> ConstraintViolation:
    """Check one constraint; directive-only actions mutate ``request`` and never violate."""
    action_type = action["action_type"]
    params = action["parameters"]

    if action_type == "switch_model":
        required = params.get("newModel")
        if request.model and required and request.model != required:
            return ConstraintViolation(
                violated=True,
                action_type=action_type,
                reason=f"Model {request.model} is not allowed. Please use {required}",
                details={"currentModel": request.model, "requiredModel": required},
            )
    elif action_type == "increase_safety_threshold":
        threshold = params.get("newThreshold")
        if request.risk_score is not None and threshold is not None and request.risk_score > threshold:
            return ConstraintViolation(
                violated=True,
                action_type=action_type,
                reason=f"Request risk score {request.risk_score:g} exceeds safety threshold {threshold:g}",
                details={"riskScore": request.risk_score, "threshold": threshold},
            )
    elif action_type == "disable_endpoint":
        endpoint = params.get("endpoint")
        if request.endpoint and request.endpoint == endpoint:
            return ConstraintViolation(
                violated=True,
                action_type=action_type,
                reason=f"Endpoint {endpoint} is currently disabled",
                details={"endpoint": endpoint},
            )
    elif action_type == "rate_limit_user":
        ceiling = params.get("requestsPerMinute")
        if ceiling is not None:
            # fractional ceilings round up, never below one request per minute
            ceiling = max(1, math.ceil(ceiling))
            if request.rate_limit_ceiling is None or ceiling < request.rate_limit_ceiling:
                request.rate_limit_ceiling = ceiling
    elif action_type == "change_system_prompt":
        request.system_prompt_override = params.get("newPrompt")
    # reset_settings has no runtime effect

    return ConstraintViolation.none()


def check_constraints(
    conn: sqlite3.Connection,
    project_id: str,
    request: RequestData,
) -> ConstraintViolation:
    """Return the first violated active constraint, writing directives onto ``request``.

    Internal failures are logged and reported as "not violated" so that a
    broken constraint store never blocks traffic.
    """
    try:
        for action in get_active_constraints(conn, project_id):
            violation = _evaluate(action, request)
            if violation.violated:
                CONSTRAINT_VIOLATIONS_TOTAL.labels(action_type=violation.action_type).inc()
                logger.warning(
                    "Request for project %s violates %s constraint: %s",
                    project_id,
                    violation.action_type,
                    violation.reason,
                )
                return violation
    except Exception:
        logger.exception("Constraint check failed for project %s", project_id)
    return ConstraintViolation.none()
