from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every error carries the HTTP ``status_code``, a taxonomy ``error_type``
    (what kind of failure this is), a machine-readable ``error_code`` and the
    recoverable/retryable hints clients use to decide what to show the user:

    - validation_error (400)
    - rate_limit_exceeded (429)
    - csrf_violation (403)
    - oauth_state_mismatch (400)
    - oauth_access_denied (401)
    - oauth_network_error (502)
    - oauth_callback_error (400)
    - account_linking_error (400/409)
    - session_expired (401)
    - unauthorized / forbidden / not_found / conflict / server_error
    """

    status_code: int = 400
    error_type: str = "validation_error"
    error_code: str = "VALIDATION_ERROR"
    recoverable: bool = True
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_type = "validation_error"
    error_code = "VALIDATION_ERROR"


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password; deliberately indistinguishable (401)."""
    status_code = 401
    error_type = "validation_error"
    error_code = "INVALID_CREDENTIALS"


class AccountLockedError(ServiceError):
    """Account flagged as locked by an operator (423)."""
    status_code = 423
    error_type = "validation_error"
    error_code = "ACCOUNT_LOCKED"
    recoverable = False
    retryable = False


class RateLimitExceededError(ServiceError):
    """Too many attempts from one client (429)."""
    status_code = 429
    error_type = "rate_limit_exceeded"
    error_code = "RATE_LIMIT_EXCEEDED"


class CsrfViolationError(ServiceError):
    """Missing, malformed or unbound CSRF token (403)."""
    status_code = 403
    error_type = "csrf_violation"
    error_code = "CSRF_VIOLATION"


class AuthenticationError(ServiceError):
    """Authentication missing, e.g. no session cookie (401)."""
    status_code = 401
    error_type = "unauthorized"
    error_code = "NO_SESSION"


class SessionExpiredError(AuthenticationError):
    """Session is past its expiry; only a fresh login helps (401)."""
    error_type = "session_expired"
    error_code = "SESSION_EXPIRED"
    retryable = False


class OAuthStateMismatchError(ServiceError):
    """Callback state missing, expired, replayed or tampered with (400)."""
    status_code = 400
    error_type = "oauth_state_mismatch"
    error_code = "OAUTH_STATE_MISMATCH"
    recoverable = False
    retryable = False


class OAuthAccessDeniedError(ServiceError):
    """User declined consent at the provider (401)."""
    status_code = 401
    error_type = "oauth_access_denied"
    error_code = "OAUTH_ACCESS_DENIED"


class OAuthNetworkError(ServiceError):
    """Provider unreachable, timed out or failing (502)."""
    status_code = 502
    error_type = "oauth_network_error"
    error_code = "OAUTH_NETWORK_ERROR"


class OAuthCallbackError(ServiceError):
    """Provider reported an error or returned an unusable identity (400)."""
    status_code = 400
    error_type = "oauth_callback_error"
    error_code = "OAUTH_CALLBACK_ERROR"


class AccountLinkingError(ServiceError):
    """Linking decision could not be applied (400)."""
    status_code = 400
    error_type = "account_linking_error"
    error_code = "ACCOUNT_LINKING_FAILED"


class ForbiddenError(ServiceError):
    """Operation not permitted (403)."""
    status_code = 403
    error_type = "forbidden"
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_type = "not_found"
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate creation (409)."""
    status_code = 409
    error_type = "conflict"
    error_code = "CONFLICT"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_type = "server_error"
    error_code = "SERVER_ERROR"
    recoverable = False


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "RateLimitExceededError",
    "CsrfViolationError",
    "AuthenticationError",
    "SessionExpiredError",
    "OAuthStateMismatchError",
    "OAuthAccessDeniedError",
    "OAuthNetworkError",
    "OAuthCallbackError",
    "AccountLinkingError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
