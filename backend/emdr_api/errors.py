"""Error taxonomy shared by services and HTTP handlers.

Services raise `AppError` subclasses; `main.py` maps each `ErrorKind` to
its HTTP status and returns the stable `code` to clients. Anything that is
not an `AppError` becomes a generic 500 `INTERNAL_ERROR`.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    UPSTREAM = "UPSTREAM_ERROR"
    INTERNAL = "INTERNAL_ERROR"


HTTP_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UPSTREAM: 502,
    ErrorKind.INTERNAL: 500,
}


class AppError(Exception):
    """Base class for errors with a stable, client-visible code."""
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]


class ValidationError(AppError, ValueError):
    """Bad enum value, missing field or otherwise unacceptable input."""
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, extra={"field": field} if field else None)


class AuthError(AppError):
    """Missing, invalid or expired identity."""
    kind = ErrorKind.UNAUTHORIZED


class PermissionDeniedError(AppError):
    kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str = "permission denied"):
        super().__init__(message)


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} '{identifier}' not found"
        super().__init__(message, extra={"resource": resource})


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT


class UpstreamError(AppError):
    """A downstream HTTP endpoint could not be reached."""
    kind = ErrorKind.UPSTREAM
