"""Service-layer exceptions.

Route handlers let these propagate; the exception handlers registered in
server.py render them as {"error": ..., "details": ...} with status_code.
"""

from typing import Any, Optional


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationFailedError(ServiceError):
    status_code = 400


class PermissionDeniedError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


def internal_error(operation: str, exc: Exception) -> ServiceError:
    """500 naming the failed operation, with the underlying message as details."""
    return ServiceError(f"Failed to {operation}", details=str(exc))
