"""Constants used throughout the application."""

from enum import Enum


class ListStatus(str, Enum):
    """AniList media list status."""

    CURRENT = "CURRENT"
    PLANNING = "PLANNING"
    COMPLETED = "COMPLETED"
    DROPPED = "DROPPED"
    PAUSED = "PAUSED"
    REPEATING = "REPEATING"


class SyncState(str, Enum):
    """Local sync state of a list entry."""

    CLEAN = "CLEAN"
    DIRTY = "DIRTY"
    CONFLICTED = "CONFLICTED"


class AuthState(str, Enum):
    """AuthSession lifecycle states."""

    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHORIZING = "AUTHORIZING"
    AUTHENTICATED = "AUTHENTICATED"
    EXPIRING = "EXPIRING"
    REFRESHING = "REFRESHING"


class ConflictChoice(str, Enum):
    """Explicit conflict resolution choices."""

    KEEP_LOCAL = "keep_local"
    ADOPT_REMOTE = "adopt_remote"


APP_NAME = "anilist-offline-sync"

# HTTP Status Codes
HTTP_OK = 200
HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_UNPROCESSABLE = 422
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVER_ERROR = 500

# Default values
DEFAULT_OAUTH_PORT = 8080
DEFAULT_WEB_UI_PORT = 8081
DEFAULT_CACHE_TTL_HOURS = 24
DEFAULT_SYNC_INTERVAL_MINUTES = 15
TOKEN_EXPIRY_BUFFER_SECONDS = 60
AUTH_STATE_TIMEOUT_SECONDS = 300  # 5 minutes
DEFAULT_TOKEN_LIFETIME_SECONDS = 365 * 24 * 3600  # AniList tokens last a year
REQUEST_TIMEOUT_SECONDS = 30
