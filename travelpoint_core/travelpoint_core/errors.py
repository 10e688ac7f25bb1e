"""Service error taxonomy shared by every TravelPoint entry-point.

Each error carries two messages: the detailed ``str(exc)`` which is only
ever written to server-side logs, and a short ``public_message`` which is
the only text returned to callers.  The API layer maps each class to an
HTTP status via :attr:`ServiceError.status_code`.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for expected, caller-facing failures."""

    code: str = "internal"
    status_code: int = 500
    default_public_message: str = "Internal error"

    def __init__(self, detail: str = "", *, public_message: str | None = None) -> None:
        super().__init__(detail or self.default_public_message)
        self.public_message = public_message or self.default_public_message


class Unauthenticated(ServiceError):
    """No caller identity was presented."""

    code = "unauthenticated"
    status_code = 401
    default_public_message = "Authentication required"


class PermissionDenied(ServiceError):
    """The caller is authenticated but lacks the required role."""

    code = "permission_denied"
    status_code = 403
    default_public_message = "Permission denied"


class FailedPrecondition(ServiceError):
    """A required linked entity is missing (no agency, no customer id, ...)."""

    code = "failed_precondition"
    status_code = 412
    default_public_message = "Operation not allowed in the current state"


class InvalidArgument(ServiceError):
    """Malformed input, or input rejected by the payment provider."""

    code = "invalid_argument"
    status_code = 400
    default_public_message = "Invalid request"


class NotFound(ServiceError):
    code = "not_found"
    status_code = 404
    default_public_message = "Not found"


class AlreadyExists(ServiceError):
    code = "already_exists"
    status_code = 409
    default_public_message = "Already exists"


class Internal(ServiceError):
    """Configuration error or unexpected provider failure."""

    code = "internal"
    status_code = 500
    default_public_message = "Internal error"
