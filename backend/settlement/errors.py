from __future__ import annotations


class SettlementError(Exception):
    """Base for every failure the settlement engine surfaces to callers.

    `code` is the stable machine-readable identifier returned in API error
    payloads; `http_status` is what the JSON error handler responds with.
    """

    code = "SETTLEMENT_ERROR"
    http_status = 400

    def __init__(self, message: str = "", *, code: str | None = None, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SettlementError):
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(ValidationError):
    code = "NOT_FOUND"
    http_status = 404


class AuthorizationError(SettlementError):
    code = "FORBIDDEN"
    http_status = 403


class StaleStateError(SettlementError):
    """Conditional update found a different status than the caller expected."""

    code = "STALE_STATE"
    http_status = 409

    def __init__(self, message: str = "", *, expected: str | None = None, actual: str | None = None, **kwargs):
        details = dict(kwargs.pop("details", None) or {})
        if expected is not None:
            details["expected"] = expected
        if actual is not None:
            details["actual"] = actual
        super().__init__(message, details=details, **kwargs)
        self.expected = expected
        self.actual = actual


class PolicyViolationError(SettlementError):
    code = "POLICY_VIOLATION"
    http_status = 422


class ExternalServiceError(SettlementError):
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class InvariantViolationError(SettlementError):
    code = "INVARIANT_VIOLATION"
    http_status = 500
