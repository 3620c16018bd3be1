"""
shared/errors.py
Domain error taxonomy. Every error carries a stable machine-readable code
and the HTTP status it is rendered with; main.py turns them into
{"code", "detail", "request_id"} responses.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "detail": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    """Missing or malformed field."""
    code = "validation_error"
    status_code = 422


class Forbidden(ServiceError):
    """Wrong role, or an actor that is not a party to the resource."""
    code = "forbidden"
    status_code = 403


class NotFound(ServiceError):
    code = "not_found"
    status_code = 404


class InvalidTransition(ServiceError):
    """The guard on the current state failed."""
    code = "invalid_transition"
    status_code = 409


class Conflict(InvalidTransition):
    """
    Lost a race: the state changed between the caller's read and the row lock.
    A Conflict is still an invalid transition from the caller's point of view.
    """
    code = "conflict"
    status_code = 409


class InsufficientFunds(ServiceError):
    code = "insufficient_funds"
    status_code = 402
