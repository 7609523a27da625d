"""Domain errors raised by the recovery engine.

Every error carries a stable machine-readable ``code`` and an HTTP status used
by the API exception handler to render ``{"code": ..., "message": ...}``.
"""

from __future__ import annotations

from typing import Any


class DunningError(Exception):
    """Base class for all recovery engine errors."""

    code = "dunning_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(DunningError):
    """Malformed campaign or request; rejected before anything is persisted."""

    code = "validation_error"
    status_code = 400


class NotFoundError(DunningError):
    code = "not_found"
    status_code = 404


class ConflictError(DunningError):
    code = "conflict"
    status_code = 409


class ConcurrencyConflictError(DunningError):
    """Another writer changed or claimed the record first."""

    code = "concurrency_conflict"
    status_code = 409
    retryable = True


class TerminalPolicyViolation(DunningError):
    """Mutation attempted on a recovered or abandoned failed payment."""

    code = "terminal_policy_violation"
    status_code = 409


class GatewayDeclineError(DunningError):
    """The gateway declined the charge. A business outcome, not a fault."""

    code = "gateway_decline"
    status_code = 402

    def __init__(self, message: str, *, failure_reason: str, error_code: str | None = None):
        super().__init__(message, details={"failure_reason": failure_reason, "error_code": error_code})
        self.failure_reason = failure_reason
        self.error_code = error_code


class TransientInfraError(DunningError):
    """Gateway, channel or network failure that may succeed when retried later."""

    code = "transient_infra_error"
    status_code = 502
    retryable = True


class AuthenticationError(DunningError):
    code = "unauthorized"
    status_code = 401


class PermissionDeniedError(DunningError):
    code = "forbidden"
    status_code = 403
