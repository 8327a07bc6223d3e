"""Wiring of the sync core and the intents exposed to the CLI and web UI."""

import asyncio
import logging
from typing import Any, Mapping, Optional, Union

import requests

from .anilist_client import AniListClient
from .config import Settings, validate_credentials
from .constants import ConflictChoice, ListStatus, SyncState
from .events import EventBus
from .local_cache import LocalCache
from .models import Credential, ListEntry, MediaEntity, SyncResult
from .oauth import AuthSession
from .sync_engine import SyncEngine
from .token_store import TokenStore

logger = logging.getLogger(__name__)


class SyncService:
    """Owns one instance of each component for the lifetime of the process."""

    def __init__(
        self,
        settings: Settings,
        events: Optional[EventBus] = None,
        http: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.events = events or EventBus()
        self.token_store = TokenStore(settings.token_file)
        self.auth = AuthSession(settings, self.token_store, http=http)
        self.client = AniListClient(self.auth, settings.anilist.graphql_url)
        self.cache = LocalCache(settings.cache_db)
        self.engine = SyncEngine(self.cache, self.client, settings, self.events)
        self.last_result: Optional[SyncResult] = None

    async def start(self) -> None:
        state = await self.auth.restore()
        logger.info(f"Data directory: {self.settings.data_dir} (auth: {state.value})")

    async def close(self) -> None:
        await self.engine.cancel_sync()

    # ----- intents -----

    async def view_media(self, media_id: int) -> MediaEntity:
        return await self.engine.view_media(media_id)

    async def set_list_entry(
        self,
        media_id: int,
        status: Union[ListStatus, str],
        score: Optional[float] = None,
        progress: int = 0,
    ) -> ListEntry:
        return await self.engine.set_list_entry(media_id, status, score=score, progress=progress)

    def login(self) -> str:
        """Start an authorization and return the URL to open."""
        return self.auth.begin_authorization()

    async def complete_login(self, redirect_params: Mapping[str, Any]) -> Credential:
        credential = await self.auth.complete_authorization(redirect_params)
        self.engine.forget_viewer()
        return credential

    async def logout(self, clear_cache: bool = False) -> None:
        """Stop syncing and forget the credential; optionally wipe cached data too."""
        await self.engine.cancel_sync()
        await self.auth.logout()
        self.engine.forget_viewer()
        if clear_cache:
            await asyncio.to_thread(self.cache.clear)

    async def force_resolve_conflict(self, local_id: int, choice: Union[ConflictChoice, str]) -> Optional[ListEntry]:
        return await self.engine.resolve_conflict(local_id, choice)

    async def sync(self) -> SyncResult:
        self.last_result = await self.engine.sync()
        return self.last_result

    async def status(self) -> dict:
        """Summary for the status command and the web dashboard."""
        credentials_ok, missing = validate_credentials(self.settings)
        credential = await asyncio.to_thread(self.token_store.load)
        counts = await asyncio.to_thread(self.cache.count_by_state)
        return {
            "auth_state": self.auth.state.value,
            "logged_in": credential is not None,
            "token_expires_at": credential.expires_at.isoformat() if credential else None,
            "credentials_configured": credentials_ok,
            "missing_config": missing,
            "offline_mode": self.settings.sync.offline_mode,
            "entries": counts,
            "pending": counts.get(SyncState.DIRTY.value, 0),
            "conflicted": counts.get(SyncState.CONFLICTED.value, 0),
            "last_result": self.last_result.model_dump() if self.last_result else None,
        }
