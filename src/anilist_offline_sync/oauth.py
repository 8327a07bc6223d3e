"""OAuth2 authorization-code flow, token refresh and the local redirect listener."""

import asyncio
import logging
import secrets
import time
import webbrowser
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar
from urllib.parse import parse_qs, urlencode, urlparse

import requests

from .config import Settings
from .constants import (
    DEFAULT_TOKEN_LIFETIME_SECONDS,
    HTTP_OK,
    HTTP_SERVER_ERROR,
    REQUEST_TIMEOUT_SECONDS,
    TOKEN_EXPIRY_BUFFER_SECONDS,
    AuthState,
)
from .errors import (
    ApiError,
    ExchangeFailed,
    NetworkError,
    ReauthRequired,
    ServerError,
    StateMismatch,
    UnauthorizedError,
)
from .models import Credential, utcnow
from .token_store import TokenStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _first(value: Any) -> Optional[str]:
    """Accept both plain values and parse_qs-style lists."""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


class AuthSession:
    """Owns the OAuth flow and the credential lifecycle.

    The credential itself lives in the TokenStore; this class is the only
    writer. Callers get at it exclusively through authorized_request().
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        expiry_margin: int = TOKEN_EXPIRY_BUFFER_SECONDS,
    ):
        self.settings = settings
        self.token_store = token_store
        self.http = http or requests.Session()
        self.clock = clock
        self.expiry_margin = expiry_margin
        self.state = AuthState.UNAUTHENTICATED

        self._pending_state: Optional[str] = None
        self._pending_issued_at = 0.0
        self._refresh_task: Optional[asyncio.Task] = None
        self._rejected_token: Optional[str] = None

    async def restore(self) -> AuthState:
        """Derive the initial state from whatever credential is on disk."""
        credential = await asyncio.to_thread(self.token_store.load)
        self.state = AuthState.AUTHENTICATED if credential else AuthState.UNAUTHENTICATED
        return self.state

    # ----- authorization code flow -----

    def begin_authorization(self) -> str:
        """Return the authorization URL carrying a fresh anti-CSRF state."""
        anilist = self.settings.anilist
        self._pending_state = secrets.token_urlsafe(32)
        self._pending_issued_at = self.clock()

        params = {
            "client_id": anilist.client_id,
            "redirect_uri": anilist.redirect_uri,
            "response_type": "code",
            "state": self._pending_state,
        }
        if anilist.scope:
            params["scope"] = anilist.scope

        self.state = AuthState.AUTHORIZING
        return f"{anilist.auth_url}?{urlencode(params)}"

    def abandon_authorization(self) -> None:
        """Drop the pending state; a new begin_authorization() is required."""
        self._pending_state = None

    def _expected_state(self) -> Optional[str]:
        if self._pending_state is None:
            return None
        if self.clock() - self._pending_issued_at > self.settings.oauth.state_timeout_seconds:
            logger.warning("Authorization request expired, discarding its state")
            self._pending_state = None
            return None
        return self._pending_state

    async def complete_authorization(self, redirect_params: Mapping[str, Any]) -> Credential:
        """Validate the callback and exchange its code for a credential."""
        expected = self._expected_state()
        received = _first(redirect_params.get("state"))
        self._pending_state = None

        if expected is None or received is None or not secrets.compare_digest(received, expected):
            logger.error("State mismatch! Possible CSRF attack.")
            raise StateMismatch("Authorization state did not match; start the login again")

        error = _first(redirect_params.get("error"))
        code = _first(redirect_params.get("code"))
        if error or not code:
            self.state = AuthState.UNAUTHENTICATED
            raise ExchangeFailed(f"Authorization was not granted: {error or 'no code received'}")

        anilist = self.settings.anilist
        try:
            token_data = await asyncio.to_thread(
                self._token_request,
                {
                    "grant_type": "authorization_code",
                    "client_id": anilist.client_id,
                    "client_secret": anilist.client_secret,
                    "redirect_uri": anilist.redirect_uri,
                    "code": code,
                },
            )
            credential = self._credential_from_response(token_data)
        except ApiError as e:
            self.state = AuthState.UNAUTHENTICATED
            raise ExchangeFailed(f"Token endpoint unavailable: {e}") from e
        except ExchangeFailed:
            self.state = AuthState.UNAUTHENTICATED
            raise

        await asyncio.to_thread(self.token_store.save, credential)
        self._rejected_token = None
        self.state = AuthState.AUTHENTICATED
        logger.info("Successfully authenticated with AniList")
        return credential

    def _token_request(self, data: dict) -> dict:
        """POST to the token endpoint (blocking; run on the worker pool)."""
        try:
            response = self.http.post(
                self.settings.anilist.token_url,
                json=data,
                headers={"Accept": "application/json"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Token endpoint unreachable: {e}") from e

        if response.status_code >= HTTP_SERVER_ERROR:
            raise ServerError(f"Token endpoint returned HTTP {response.status_code}", response.status_code)
        if response.status_code != HTTP_OK:
            logger.error(f"Token request failed: {response.status_code}")
            raise ExchangeFailed(f"Token endpoint returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise ExchangeFailed("Token endpoint returned a non-JSON body") from e

    def _credential_from_response(self, token_data: dict, previous_refresh: Optional[str] = None) -> Credential:
        access_token = token_data.get("access_token")
        if not access_token:
            raise ExchangeFailed("No access token in token response")

        expires_in = token_data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS
        return Credential(
            access_token=access_token,
            refresh_token=token_data.get("refresh_token") or previous_refresh,
            expires_at=utcnow() + timedelta(seconds=int(expires_in)),
            scope=token_data.get("scope") or self.settings.anilist.scope,
            token_type=token_data.get("token_type") or "Bearer",
        )

    # ----- authorized requests -----

    async def authorized_request(self, fn: Callable[[Credential], Awaitable[T]]) -> T:
        """Run fn with a valid credential, refreshing it first when needed."""
        credential = await self.current_credential()
        try:
            return await fn(credential)
        except UnauthorizedError:
            logger.error("Access token rejected by AniList; re-authentication required")
            self._rejected_token = credential.access_token
            self.state = AuthState.UNAUTHENTICATED
            raise

    async def current_credential(self) -> Credential:
        credential = await asyncio.to_thread(self.token_store.load)
        if credential is None:
            if self.state != AuthState.AUTHORIZING:
                self.state = AuthState.UNAUTHENTICATED
            raise ReauthRequired("Not logged in")

        if credential.access_token == self._rejected_token:
            raise ReauthRequired("Stored access token was rejected; please log in again")

        if not credential.expires_within(self.expiry_margin):
            if self.state == AuthState.UNAUTHENTICATED:
                self.state = AuthState.AUTHENTICATED
            return credential

        return await self._refresh_single_flight(credential)

    async def _refresh_single_flight(self, credential: Credential) -> Credential:
        """All concurrent callers share one in-flight refresh."""
        if self._refresh_task is None:
            task = asyncio.create_task(self._refresh(credential))
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
        return await asyncio.shield(self._refresh_task)

    def _refresh_finished(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            task.exception()

    async def _refresh(self, credential: Credential) -> Credential:
        # A refresh that finished while this caller was loading may already have replaced it
        latest = await asyncio.to_thread(self.token_store.load)
        if latest is not None and not latest.expires_within(self.expiry_margin):
            return latest
        credential = latest or credential

        self.state = AuthState.EXPIRING
        if not credential.can_refresh:
            logger.warning("Access token expired and no refresh token is available")
            self.state = AuthState.UNAUTHENTICATED
            raise ReauthRequired("Access token expired; please log in again")

        self.state = AuthState.REFRESHING
        logger.info("Access token expiring, refreshing...")
        anilist = self.settings.anilist
        try:
            token_data = await asyncio.to_thread(
                self._token_request,
                {
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh_token,
                    "client_id": anilist.client_id,
                    "client_secret": anilist.client_secret,
                },
            )
            refreshed = self._credential_from_response(token_data, previous_refresh=credential.refresh_token)
        except ExchangeFailed as e:
            logger.error(f"Token refresh rejected: {e}")
            self.state = AuthState.UNAUTHENTICATED
            raise ReauthRequired("Refresh token rejected; please log in again") from e
        except ApiError:
            self.state = AuthState.EXPIRING
            raise

        await asyncio.to_thread(self.token_store.save, refreshed)
        self.state = AuthState.AUTHENTICATED
        logger.info("Access token refreshed successfully")
        return refreshed

    async def logout(self) -> None:
        """Forget the credential and any pending authorization."""
        self._pending_state = None
        await asyncio.to_thread(self.token_store.clear)
        self.state = AuthState.UNAUTHENTICATED
        logger.info("Logged out")


class OAuthCallbackHandler(BaseHTTPRequestHandler):
    """HTTP handler for OAuth callback."""

    def do_GET(self):
        """Handle GET request from OAuth callback."""
        parsed = urlparse(self.path)

        if parsed.path == self.server.callback_path:
            self.server.callback_params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

            self.send_response(200)
            self.send_header("Content-type", "text/html")
            self.end_headers()

            html = """
            <html>
            <head><title>AniList login</title></head>
            <body>
                <h1>Authorization received</h1>
                <p>You can close this window and return to the application.</p>
            </body>
            </html>
            """
            self.wfile.write(html.encode())
        else:
            self.send_error(404)

    def log_message(self, format, *args):
        """Suppress HTTP server logging."""
        pass


def wait_for_callback(redirect_uri: str, port: int, timeout: float) -> Optional[dict]:
    """Serve the redirect URI until one callback arrives or the timeout passes."""
    server = HTTPServer(("127.0.0.1", port), OAuthCallbackHandler)
    server.callback_path = urlparse(redirect_uri).path or "/callback"
    server.callback_params = None
    server.timeout = 1.0
    deadline = time.monotonic() + timeout
    try:
        while server.callback_params is None and time.monotonic() < deadline:
            server.handle_request()
    finally:
        server.server_close()
    return server.callback_params


async def run_oauth_flow(auth: AuthSession, open_browser: bool = True) -> Credential:
    """Run the whole login: browser, local listener, code exchange."""
    settings = auth.settings
    auth_url = auth.begin_authorization()

    logger.info("Opening browser for AniList authorization...")
    logger.info(f"If the browser doesn't open, visit this URL:\n{auth_url}")
    if open_browser:
        webbrowser.open(auth_url)

    logger.info(f"Waiting for authorization callback on port {settings.oauth.port}...")
    params = await asyncio.to_thread(
        wait_for_callback,
        settings.anilist.redirect_uri,
        settings.oauth.port,
        settings.oauth.state_timeout_seconds,
    )
    if params is None:
        auth.abandon_authorization()
        raise StateMismatch("Timed out waiting for the authorization callback")

    return await auth.complete_authorization(params)
