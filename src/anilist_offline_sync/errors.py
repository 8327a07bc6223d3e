"""Exception hierarchy for auth, remote API and local cache failures."""

from typing import Optional


class AuthError(Exception):
    """Base class for OAuth failures."""


class StateMismatch(AuthError):
    """Callback state does not match the one issued (or it expired)."""


class ReauthRequired(AuthError):
    """No usable credential; the user has to log in again."""


class ExchangeFailed(AuthError):
    """The provider rejected the authorization code or token request."""


class ApiError(Exception):
    """Base class for remote catalog API failures."""

    kind = "api"
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(ApiError):
    """Connection failed or timed out."""

    kind = "network"
    retryable = True


class RateLimitedError(ApiError):
    """HTTP 429 from the API."""

    kind = "rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None, status_code: Optional[int] = 429):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class NotFoundError(ApiError):
    kind = "not_found"


class ValidationError(ApiError):
    """Request rejected as malformed, or response missing required fields."""

    kind = "validation"


class ServerError(ApiError):
    kind = "server_error"
    retryable = True


class UnauthorizedError(ApiError):
    """Token rejected by the API."""

    kind = "unauthorized"


class CacheError(Exception):
    """Base class for local persistence failures."""

    kind = "cache"


class CacheIOError(CacheError):
    pass


class CacheCorruptError(CacheError):
    pass


class ConflictPendingError(CacheError):
    """Raised when deleting an entry whose conflict is still unresolved."""
