"""
Domain Error Taxonomy

Every service raises one of these instead of returning error dicts.
The API layer maps each class to an HTTP status and surfaces the
message verbatim to the caller.

Version: 4.0.0
"""

from typing import Optional


class BistroError(Exception):
    """Base class for all expected, user-facing failures."""

    status_code: int = 400
    error: str = "Bad Request"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(BistroError):
    """Malformed or missing input, rejected before any mutation."""

    status_code = 400
    error = "Validation Error"


class InvalidStateError(BistroError):
    """Operation not permitted given the entity's current state."""

    status_code = 409
    error = "Invalid State"


class AuthorizationError(BistroError):
    """Caller lacks the required role or does not own the resource."""

    status_code = 403
    error = "Forbidden"


class AuthenticationError(AuthorizationError):
    """No valid identity could be established for the request."""

    status_code = 401
    error = "Unauthorized"


class NotFoundError(BistroError):
    """Referenced entity does not exist."""

    status_code = 404
    error = "Not Found"


class ExternalServiceError(BistroError):
    """Payment, auth or storage provider unreachable or returned an error."""

    status_code = 502
    error = "Upstream Service Error"
