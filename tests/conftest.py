"""Shared fixtures and an in-memory stand-in for the AniList API."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from anilist_offline_sync.config import Settings
from anilist_offline_sync.constants import ListStatus, SyncState
from anilist_offline_sync.errors import NetworkError, NotFoundError, UnauthorizedError
from anilist_offline_sync.events import EventBus
from anilist_offline_sync.local_cache import LocalCache
from anilist_offline_sync.models import ListEntry, MediaEntity, PushResult, UserProfile, utcnow
from anilist_offline_sync.sync_engine import SyncEngine


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemote:
    """Keeps one user's list in memory and mimics the client's async API."""

    def __init__(self):
        self.online = True
        self.viewer = UserProfile(id=7, name="tester")
        self.media: dict[int, MediaEntity] = {}
        self.entries: dict[int, ListEntry] = {}
        self.push_calls: list[ListEntry] = []
        self.push_errors: dict[int, Exception] = {}
        self.unauthorized_after: Optional[int] = None
        self.on_push: Optional[Callable[[ListEntry], None]] = None
        self.push_started = asyncio.Event()
        self.push_delay = 0.0
        self.fetch_media_calls = 0
        self.fetch_list_calls = 0
        self._next_remote_id = 1000
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _check(self) -> None:
        if not self.online:
            raise NetworkError("AniList unreachable: connection refused")

    def add_entry(self, media_id: int, status=ListStatus.CURRENT, score=None, progress=0) -> ListEntry:
        """Create an entry as if it was saved on another device."""
        at = self._tick()
        self._next_remote_id += 1
        entry = ListEntry(
            remote_id=self._next_remote_id,
            media_id=media_id,
            status=status,
            score=score,
            progress=progress,
            updated_at_local=at,
            updated_at_remote=at,
            sync_state=SyncState.CLEAN,
        )
        self.entries[media_id] = entry
        return entry

    def remote_edit(self, media_id: int, **fields) -> ListEntry:
        at = self._tick()
        fields.update(updated_at_local=at, updated_at_remote=at)
        self.entries[media_id] = self.entries[media_id].model_copy(update=fields)
        return self.entries[media_id]

    async def fetch_viewer(self) -> UserProfile:
        self._check()
        return self.viewer

    async def fetch_media(self, media_id: int) -> MediaEntity:
        self._check()
        self.fetch_media_calls += 1
        if media_id not in self.media:
            raise NotFoundError(f"Media {media_id} not found", 404)
        return self.media[media_id].model_copy(update={"last_fetched_at": utcnow()})

    async def search_media(self, text: str, page: int = 1, per_page: int = 10) -> list[MediaEntity]:
        self._check()
        return [m for m in self.media.values() if text.lower() in m.title.preferred.lower()]

    async def fetch_list(self, user) -> list[ListEntry]:
        self._check()
        self.fetch_list_calls += 1
        await asyncio.sleep(0)
        return [e.model_copy() for e in self.entries.values()]

    async def fetch_list_entry(self, user_id: int, media_id: int) -> Optional[ListEntry]:
        self._check()
        entry = self.entries.get(media_id)
        return entry.model_copy() if entry else None

    async def push_list_entry(self, entry: ListEntry) -> PushResult:
        self._check()
        self.push_calls.append(entry)
        self.push_started.set()
        if self.push_delay:
            await asyncio.sleep(self.push_delay)
        if self.unauthorized_after is not None and len(self.push_calls) > self.unauthorized_after:
            raise UnauthorizedError("AniList returned HTTP 401", 401)
        if entry.media_id in self.push_errors:
            raise self.push_errors[entry.media_id]
        if self.on_push:
            self.on_push(entry)

        existing = self.entries.get(entry.media_id)
        if existing is not None:
            remote_id = existing.remote_id
        else:
            self._next_remote_id += 1
            remote_id = self._next_remote_id
        at = self._tick()
        self.entries[entry.media_id] = ListEntry(
            remote_id=remote_id,
            media_id=entry.media_id,
            status=entry.status,
            score=entry.score,
            progress=entry.progress,
            updated_at_local=at,
            updated_at_remote=at,
            sync_state=SyncState.CLEAN,
        )
        return PushResult(remote_id=remote_id, updated_at_remote=at)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        anilist={"client_id": "12345", "client_secret": "s3cret"},
        paths={"data_dir": tmp_path},
    )


@pytest.fixture
def cache(settings):
    return LocalCache(settings.cache_db)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(cache, remote, settings, clock):
    return SyncEngine(cache, remote, settings, events=EventBus(), clock=clock)
