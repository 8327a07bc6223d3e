"""Base API client with common functionality."""

import logging
from email.utils import parsedate_to_datetime
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .constants import (
    HTTP_BAD_REQUEST,
    HTTP_FORBIDDEN,
    HTTP_NOT_FOUND,
    HTTP_SERVER_ERROR,
    HTTP_TOO_MANY_REQUESTS,
    HTTP_UNAUTHORIZED,
    HTTP_UNPROCESSABLE,
    REQUEST_TIMEOUT_SECONDS,
)
from .errors import (
    ApiError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    UnauthorizedError,
    ValidationError,
)
from .models import utcnow

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        return max(0.0, (parsedate_to_datetime(value) - utcnow()).total_seconds())
    except (TypeError, ValueError):
        return None


class BaseAPIClient:
    """Base class for API clients with common request handling."""

    def __init__(self, base_url: str, headers: Optional[dict] = None, timeout: float = REQUEST_TIMEOUT_SECONDS):
        """Initialize API client; the bearer token is supplied per request."""
        self.base_url = base_url
        self.timeout = timeout
        self.session = requests.Session()

        # Only connection failures are retried here. Status-based retries
        # (429, 5xx) belong to the sync engine's retry policy.
        retry_strategy = Retry(
            total=None,
            connect=2,
            read=0,
            status=0,
            other=0,
            backoff_factor=0.5,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        if headers:
            self.session.headers.update(headers)

    def _request(
        self,
        method: str,
        url: str,
        access_token: Optional[str] = None,
        service_name: str = "API",
        check_status: bool = True,
        **kwargs,
    ) -> requests.Response:
        """Send a request, translating transport failures into NetworkError."""
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning(f"{service_name} request failed: {e}")
            raise NetworkError(f"{service_name} unreachable: {e}") from e

        if check_status:
            self._raise_for_status(response, service_name)
        return response

    def _handle_auth_error(self, response: requests.Response, service_name: str) -> None:
        """Handle authentication errors consistently."""
        if response.status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            logger.error(f"{service_name} authentication failed (HTTP {response.status_code})")
            logger.error(f"{service_name} access token is invalid or expired")

    def _error_for_status(self, status: int, message: str, response: Optional[requests.Response] = None) -> ApiError:
        """Map an HTTP status to the matching ApiError subclass."""
        if status in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            return UnauthorizedError(message, status)
        if status == HTTP_TOO_MANY_REQUESTS:
            retry_after = parse_retry_after(response.headers.get("Retry-After")) if response is not None else None
            return RateLimitedError(message, retry_after=retry_after, status_code=status)
        if status == HTTP_NOT_FOUND:
            return NotFoundError(message, status)
        if status in (HTTP_BAD_REQUEST, HTTP_UNPROCESSABLE):
            return ValidationError(message, status)
        if status >= HTTP_SERVER_ERROR:
            return ServerError(message, status)
        return ApiError(message, status)

    def _raise_for_status(self, response: requests.Response, service_name: str) -> None:
        if response.status_code < HTTP_BAD_REQUEST:
            return
        self._handle_auth_error(response, service_name)
        if response.status_code not in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            logger.error(f"{service_name} API error: {response.status_code}")
            logger.debug(f"Response: {response.text}")
        raise self._error_for_status(
            response.status_code, f"{service_name} returned HTTP {response.status_code}", response
        )
