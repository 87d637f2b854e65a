"""
Domain exceptions

Each error carries the HTTP status and the machine-readable code used by the
API error envelope. All of them are ValueErrors so callers that only care
about "the request was rejected" can keep catching ValueError.
"""

from typing import Any, Dict, Optional


DEFAULT_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
}


def default_error_code(status_code: int) -> str:
    if status_code >= 500:
        return "INTERNAL_SERVER_ERROR"
    return DEFAULT_ERROR_CODES.get(status_code, "BAD_REQUEST")


class FinanceError(ValueError):
    """Base class for all rejected finance operations"""

    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = (code or default_error_code(self.status_code)).upper()
        self.details = details


class ValidationError(FinanceError):
    """Input failed a business rule (unbalanced journal, bad scope, missing field)"""
    status_code = 400


class ForbiddenError(FinanceError):
    """Permission or legal-entity scope check failed"""
    status_code = 403


class NotFoundError(FinanceError):
    """Scoped lookup found no row"""
    status_code = 404


class ConflictError(FinanceError):
    """State conflict: closed period, duplicate code, illegal status transition"""
    status_code = 409
