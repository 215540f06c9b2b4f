"""Error taxonomy shared by the services and the HTTP layer.

Every error the caller is allowed to see derives from ``AppError`` and
carries a machine-readable code and an HTTP status.  Anything else is an
internal fault: the API logs it and answers with a generic 500.
"""

from typing import Any


class AppError(Exception):
    """Base class for errors surfaced to the caller."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


class ValidationError(AppError):
    """Malformed or out-of-range input."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("VALIDATION_ERROR", message, 400, details)


class NotFoundError(AppError):
    """Missing resource, or a resource referenced from the wrong project."""

    def __init__(self, resource: str) -> None:
        super().__init__("RESOURCE_NOT_FOUND", f"{resource} not found", 404)


class ConstraintViolationError(AppError):
    """Request rejected by an active remediation constraint."""

    def __init__(self, action_type: str, reason: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            "REMEDIATION_CONSTRAINT_VIOLATED",
            reason,
            403,
            {"actionType": action_type, **(details or {})},
        )


class RateLimitError(AppError):
    """Admission control rejected the request."""

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            "RATE_LIMIT_EXCEEDED",
            "Too many requests, please try again later",
            429,
            {"retryAfter": retry_after},
        )
        self.retry_after = retry_after
