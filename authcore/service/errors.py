from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
    - unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` is a machine label for server-side logs; it never reaches the
    client, which only sees the generic message.
    """
    status_code = 401
    error_code = "unauthorized"
    reason: str = "unauthenticated"
    clears_cookie: bool = False


class MissingTokenError(AuthenticationError):
    reason = "missing-token"


class MalformedTokenError(AuthenticationError):
    """Bad signature, unexpected algorithm, or missing claims."""
    reason = "invalid-token"


class SessionNotFoundError(AuthenticationError):
    """The referenced session is gone, expired past grace, or unreachable.

    Treated as an implicit logout: the credential cookie is cleared.
    """
    reason = "session-invalid"
    clears_cookie = True


class IdentityNotFoundError(AuthenticationError):
    reason = "identity-invalid"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DependencyTimeoutError(ServiceError):
    """A cache or store round trip exceeded its bound."""
    status_code = 503
    error_code = "unavailable"


class DependencyUnavailableError(ServiceError):
    """Cache failure other than a clean miss; absorbed by callers that have a fallback."""
    status_code = 503
    error_code = "unavailable"


class MalformedHashError(ServiceError):
    """A stored credential hash could not be parsed."""
    status_code = 500
    error_code = "server_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationFault(RuntimeError):
    """Required secret or cost parameter missing. Aborts startup; never request-scoped."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingTokenError",
    "MalformedTokenError",
    "SessionNotFoundError",
    "IdentityNotFoundError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DependencyTimeoutError",
    "DependencyUnavailableError",
    "MalformedHashError",
    "ServerError",
    "ConfigurationFault",
]
