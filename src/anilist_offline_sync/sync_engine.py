"""Core sync engine: offline-first reads and writes, pull/push reconciliation."""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar, Union

from .anilist_client import AniListClient
from .config import Settings
from .constants import ConflictChoice, ListStatus, SyncState
from .errors import ApiError, AuthError, CacheError, NetworkError, ReauthRequired, UnauthorizedError
from .events import AuthRequired, EventBus, ListUpdated, MediaReady, SyncError
from .local_cache import LocalCache
from .models import ListEntry, MediaEntity, SyncResult, UserProfile, utcnow
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures that mean the credential is unusable until the user logs in again
AUTH_FAILURES = (ReauthRequired, UnauthorizedError)


@dataclass
class _Backoff:
    attempts: int = 0
    next_at: float = 0.0
    surfaced: bool = False


def _is_newer(remote_at: Optional[datetime], baseline: Optional[datetime]) -> bool:
    """True if the remote version is newer than the last one we saw."""
    if remote_at is None:
        return False
    if baseline is None:
        return True
    return remote_at > baseline


class SyncEngine:
    """Reconciles the local cache with the remote list.

    This is the only component that changes an entry's sync_state. Reads and
    writes always go to the local cache first; the network is used to refresh
    and propagate, never as a precondition.
    """

    def __init__(
        self,
        cache: LocalCache,
        client: AniListClient,
        settings: Settings,
        events: Optional[EventBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.client = client
        self.offline_mode = settings.sync.offline_mode
        self.cache_ttl = timedelta(hours=settings.sync.cache_ttl_hours)
        self.events = events or EventBus()
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock

        self._entry_locks: dict[int, asyncio.Lock] = {}
        self._backoff: dict[int, _Backoff] = {}
        self._viewer: Optional[UserProfile] = None
        self._sync_task: Optional[asyncio.Task] = None
        self._push_tasks: set[asyncio.Task] = set()
        self._retry_tasks: dict[int, asyncio.Task] = {}

    # ===== helpers =====

    async def _db(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run a blocking LocalCache call on the worker pool."""
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _lock_for(self, media_id: int) -> asyncio.Lock:
        return self._entry_locks.setdefault(media_id, asyncio.Lock())

    async def _commit(self, coro: Awaitable[T]) -> T:
        """Run one per-entry step to completion even if the caller is cancelled."""
        task = asyncio.ensure_future(coro)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Entry update failed during cancellation: {task.exception()}")
            raise

    async def _viewer_id(self) -> int:
        if self._viewer is None:
            self._viewer = await self.client.fetch_viewer()
            logger.info(f"Logged in as {self._viewer.name} (id {self._viewer.id})")
        return self._viewer.id

    def forget_viewer(self) -> None:
        """Drop the cached viewer, e.g. after logout."""
        self._viewer = None

    def _report(self, error: Exception, media_id: Optional[int] = None) -> None:
        """Turn a failure into the matching UI event."""
        if isinstance(error, AUTH_FAILURES):
            self.events.publish(AuthRequired())
            return
        kind = getattr(error, "kind", type(error).__name__)
        self.events.publish(SyncError(kind=kind, message=str(error), media_id=media_id))

    async def _publish_list(self) -> list[ListEntry]:
        entries = await self._db(self.cache.get_list_entries)
        self.events.publish(ListUpdated(entries=entries))
        return entries

    def _is_stale(self, media: MediaEntity) -> bool:
        return utcnow() - media.last_fetched_at >= self.cache_ttl

    # ===== reads =====

    async def view_media(self, media_id: int) -> MediaEntity:
        """Return media details, from cache when fresh enough.

        A stale copy is still served when the refresh fails; the failure is
        reported as an event instead.
        """
        cached = await self._db(self.cache.get_media, media_id)
        if cached is not None and (self.offline_mode or not self._is_stale(cached)):
            self.events.publish(MediaReady(media=cached))
            return cached

        if self.offline_mode:
            raise NetworkError(f"Media {media_id} is not cached and offline mode is enabled")

        try:
            media = await self.client.fetch_media(media_id)
        except (ApiError, AuthError) as e:
            if cached is None:
                self._report(e, media_id)
                raise
            logger.warning(f"Refresh of media {media_id} failed, serving cached copy: {e}")
            self._report(e, media_id)
            self.events.publish(MediaReady(media=cached))
            return cached

        await self._db(self.cache.put_media, media)
        self.events.publish(MediaReady(media=media))
        return media

    async def get_list(self, state: Optional[SyncState] = None) -> list[ListEntry]:
        return await self._db(self.cache.get_list_entries, state)

    async def search_media(self, text: str, page: int = 1, per_page: int = 10) -> list[MediaEntity]:
        if self.offline_mode:
            raise NetworkError("Search is not available in offline mode")
        return await self.client.search_media(text, page=page, per_page=per_page)

    # ===== writes =====

    async def set_list_entry(
        self,
        media_id: int,
        status: Union[ListStatus, str],
        score: Optional[float] = None,
        progress: int = 0,
        push: bool = True,
    ) -> ListEntry:
        """Apply an edit locally and queue it for upload.

        The local write always succeeds regardless of network or auth; the
        push is started in the background (see drain()).
        """
        status = ListStatus(status)
        if score is not None:
            if not 0 <= score <= 100:
                raise ValueError("score must be between 0 and 100")
            score = float(round(score))
        if progress < 0:
            raise ValueError("progress must be >= 0")

        entry = await self._db(self.cache.record_local_edit, media_id, status, score, progress)
        self._backoff.pop(entry.local_id, None)
        self._cancel_retry(entry.local_id)
        logger.info(f"Saved local edit for media {media_id}: {status.value}, progress {progress}")
        await self._publish_list()

        if entry.sync_state == SyncState.CONFLICTED:
            logger.warning(f"Media {media_id} has an unresolved conflict; edit kept locally")
        elif push and not self.offline_mode:
            self._schedule_push(entry.local_id)
        return entry

    def _schedule_push(self, local_id: int) -> None:
        task = asyncio.create_task(self.push_entry(local_id))
        self._push_tasks.add(task)
        task.add_done_callback(self._push_finished)

    def _push_finished(self, task: asyncio.Task) -> None:
        self._push_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background push failed: {error}")
            self._report(error)

    def _schedule_retry(self, local_id: int, delay: float) -> None:
        """Push the entry again once its backoff delay has passed."""
        self._cancel_retry(local_id)
        task = asyncio.create_task(self._retry_later(local_id, delay))
        self._retry_tasks[local_id] = task
        task.add_done_callback(self._push_finished)

    def _cancel_retry(self, local_id: int) -> None:
        task = self._retry_tasks.pop(local_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _retry_later(self, local_id: int, delay: float) -> None:
        await asyncio.sleep(delay)
        # Awake retries are tracked like any other background push
        task = asyncio.current_task()
        if self._retry_tasks.get(local_id) is task:
            del self._retry_tasks[local_id]
        self._push_tasks.add(task)
        await self.push_entry(local_id)

    async def drain(self) -> None:
        """Wait for background pushes started by set_list_entry()."""
        while self._push_tasks:
            await asyncio.gather(*list(self._push_tasks), return_exceptions=True)

    # ===== pull =====

    async def pull(self) -> SyncResult:
        """Bring remote changes into the cache.

        Raises ApiError/AuthError if the remote list cannot be fetched.
        """
        result = SyncResult()
        user_id = await self._viewer_id()
        remote_entries = await self.client.fetch_list(user_id)
        remote_media_ids = {e.media_id for e in remote_entries}

        summary = {"inserted": 0, "updated": 0, "unchanged": 0, "conflicted": 0, "pending": 0, "skipped": 0}
        for remote in remote_entries:
            outcome = await self._commit(self._reconcile_pulled(remote))
            summary[outcome] += 1

        removed = 0
        for local in await self._db(self.cache.get_entries_by_state, SyncState.CLEAN):
            if local.media_id not in remote_media_ids:
                if await self._commit(self._drop_removed(local)):
                    removed += 1

        result.pulled = summary["inserted"] + summary["updated"] + removed
        result.conflicted = summary["conflicted"]
        logger.info(
            f"Pull summary: inserted={summary['inserted']}, updated={summary['updated']}, "
            f"removed={removed}, unchanged={summary['unchanged']}, conflicted={summary['conflicted']}, "
            f"pending={summary['pending']}, skipped_conflicted={summary['skipped']}"
        )
        await self._publish_list()
        return result

    async def _reconcile_pulled(self, remote: ListEntry) -> str:
        async with self._lock_for(remote.media_id):
            local = await self._db(self.cache.get_list_entry_by_media, remote.media_id)
            if local is None:
                await self._db(self.cache.upsert_list_entry, remote)
                return "inserted"

            if local.sync_state == SyncState.CONFLICTED:
                return "skipped"

            remote_newer = _is_newer(remote.updated_at_remote, local.updated_at_remote)
            if local.sync_state == SyncState.CLEAN:
                if not remote_newer:
                    return "unchanged"
                replacement = remote.model_copy(update={"local_id": local.local_id})
                stored = await self._db(
                    self.cache.upsert_list_entry, replacement, expected_updated_at_local=local.updated_at_local
                )
                # None means the user edited it meanwhile; the edit wins until the next pass
                return "updated" if stored is not None else "pending"

            if remote_newer:
                logger.warning(
                    f"Conflict on media {remote.media_id}: remote changed at {remote.updated_at_remote} "
                    f"while a local edit is pending"
                )
                await self._db(self.cache.mark_conflicted, local.local_id, remote.updated_at_remote)
                return "conflicted"
            return "pending"

    async def _drop_removed(self, local: ListEntry) -> bool:
        async with self._lock_for(local.media_id):
            current = await self._db(self.cache.get_list_entry, local.local_id)
            if current is None or current.sync_state != SyncState.CLEAN or current.remote_id is None:
                return False
            logger.info(f"Media {local.media_id} was removed from the remote list, deleting locally")
            return await self._db(self.cache.delete_list_entry, local.local_id)

    # ===== push =====

    def _due(self, local_id: int) -> bool:
        backoff = self._backoff.get(local_id)
        return backoff is None or self.clock() >= backoff.next_at

    async def push_pending(self) -> SyncResult:
        """Push every DIRTY entry whose retry delay has elapsed.

        An auth failure aborts the pass; the remaining entries stay DIRTY.
        """
        result = SyncResult()
        dirty = await self._db(self.cache.get_entries_by_state, SyncState.DIRTY)
        if self.offline_mode:
            result.pending = len(dirty)
            return result

        for index, entry in enumerate(dirty):
            if not self._due(entry.local_id):
                result.pending += 1
                continue
            try:
                outcome = await self._commit(self._push_one(entry.local_id))
            except AUTH_FAILURES as e:
                logger.error(f"Push pass aborted, re-authentication required: {e}")
                self.events.publish(AuthRequired())
                result.auth_required = True
                result.success = False
                result.pending += len(dirty) - index
                break

            if outcome == "pushed":
                result.pushed += 1
            elif outcome == "conflicted":
                result.conflicted += 1
            elif outcome == "pending":
                result.pending += 1

        logger.info(
            f"Push summary: pushed={result.pushed}, conflicted={result.conflicted}, pending={result.pending}"
        )
        await self._publish_list()
        return result

    async def push_entry(self, local_id: int) -> str:
        """Push a single entry now, ignoring its backoff.

        Returns one of "pushed", "conflicted", "pending", "noop", "auth_required".
        """
        if self.offline_mode:
            return "pending"
        try:
            outcome = await self._commit(self._push_one(local_id))
        except AUTH_FAILURES as e:
            logger.error(f"Push of entry {local_id} needs re-authentication: {e}")
            self.events.publish(AuthRequired())
            return "auth_required"
        await self._publish_list()
        return outcome

    async def _push_one(self, local_id: int) -> str:
        entry = await self._db(self.cache.get_list_entry, local_id)
        if entry is None or entry.sync_state != SyncState.DIRTY:
            return "noop"

        async with self._lock_for(entry.media_id):
            entry = await self._db(self.cache.get_list_entry, local_id)
            if entry is None or entry.sync_state != SyncState.DIRTY:
                return "noop"
            entry = await self._clamp_progress(entry)

            try:
                remote = await self.client.fetch_list_entry(await self._viewer_id(), entry.media_id)
                if remote is not None and _is_newer(remote.updated_at_remote, entry.updated_at_remote):
                    logger.warning(
                        f"Conflict on media {entry.media_id}: remote changed at {remote.updated_at_remote}, "
                        f"not overwriting"
                    )
                    await self._db(self.cache.mark_conflicted, local_id, remote.updated_at_remote)
                    self._backoff.pop(local_id, None)
                    return "conflicted"
                if remote is None and entry.remote_id is not None:
                    logger.info(f"Remote entry for media {entry.media_id} is gone, re-creating it")
                    entry = entry.model_copy(update={"remote_id": None})

                pushed = await self.client.push_list_entry(entry)
            except AUTH_FAILURES:
                raise
            except ApiError as e:
                return await self._push_failed(entry, e)

            cleaned = await self._db(
                self.cache.mark_clean,
                local_id,
                pushed.remote_id,
                pushed.updated_at_remote,
                expected_updated_at_local=entry.updated_at_local,
            )
            self._backoff.pop(local_id, None)
            self._cancel_retry(local_id)
            if not cleaned:
                logger.info(f"Media {entry.media_id} was edited during upload, keeping it queued")
                return "pending"
            return "pushed"

    async def _clamp_progress(self, entry: ListEntry) -> ListEntry:
        media = await self._db(self.cache.get_media, entry.media_id)
        if media is None or not media.episode_count or entry.progress <= media.episode_count:
            return entry

        logger.warning(
            f"Progress {entry.progress} for media {entry.media_id} exceeds {media.episode_count} episodes, clamping"
        )
        clamped = entry.model_copy(update={"progress": media.episode_count})
        stored = await self._db(
            self.cache.upsert_list_entry, clamped, expected_updated_at_local=entry.updated_at_local
        )
        return stored or clamped

    async def _push_failed(self, entry: ListEntry, error: ApiError) -> str:
        if not self.retry_policy.should_retry(error):
            logger.error(f"Server rejected media {entry.media_id} ({error.kind}): {error}")
            await self._db(self.cache.mark_conflicted, entry.local_id)
            self._backoff.pop(entry.local_id, None)
            self._report(error, entry.media_id)
            return "conflicted"

        backoff = self._backoff.setdefault(entry.local_id, _Backoff())
        backoff.attempts += 1
        delay = self.retry_policy.next_delay(error, backoff.attempts)
        backoff.next_at = self.clock() + delay
        logger.warning(
            f"Push of media {entry.media_id} failed ({error.kind}), attempt {backoff.attempts}, "
            f"retrying in {delay:.0f}s"
        )
        if self.retry_policy.exhausted(error, backoff.attempts) and not backoff.surfaced:
            backoff.surfaced = True
            self._report(error, entry.media_id)
        self._schedule_retry(entry.local_id, delay)
        return "pending"

    # ===== conflicts =====

    async def resolve_conflict(self, local_id: int, choice: Union[ConflictChoice, str]) -> Optional[ListEntry]:
        """Settle a CONFLICTED entry.

        KEEP_LOCAL re-queues the local values over the remote version;
        ADOPT_REMOTE replaces them with the server copy (or drops the entry if
        the server has none). Returns the resulting entry, or None if dropped.
        """
        choice = ConflictChoice(choice)
        entry = await self._db(self.cache.get_list_entry, local_id)
        if entry is None:
            raise KeyError(f"No list entry with local id {local_id}")
        if entry.sync_state != SyncState.CONFLICTED:
            raise ValueError(f"Entry {local_id} is not in conflict")
        if choice == ConflictChoice.ADOPT_REMOTE and self.offline_mode:
            raise NetworkError("Adopting the remote copy is not available in offline mode")

        async with self._lock_for(entry.media_id):
            if choice == ConflictChoice.KEEP_LOCAL:
                await self._db(self.cache.mark_dirty, local_id)
                self._backoff.pop(local_id, None)
                self._cancel_retry(local_id)
                resolved = await self._db(self.cache.get_list_entry, local_id)
            else:
                remote = await self.client.fetch_list_entry(await self._viewer_id(), entry.media_id)
                resolved = await self._db(self.cache.resolve_to_remote, local_id, remote)

        logger.info(f"Resolved conflict on media {entry.media_id} with {choice.value}")
        await self._publish_list()
        if choice == ConflictChoice.KEEP_LOCAL and not self.offline_mode:
            await self.push_entry(local_id)
            resolved = await self._db(self.cache.get_list_entry, local_id)
        return resolved

    # ===== full sync =====

    async def sync(self) -> SyncResult:
        """Pull then push. Concurrent callers share the running pass."""
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(self._sync_pass())
        return await asyncio.shield(self._sync_task)

    async def cancel_sync(self) -> None:
        """Cancel the running pass and any background pushes, waiting for in-flight commits."""
        tasks = [
            t
            for t in [self._sync_task, *self._push_tasks, *self._retry_tasks.values()]
            if t is not None and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # Commits finishing during cancellation may have queued new retries
        for local_id in list(self._retry_tasks):
            self._cancel_retry(local_id)

    async def _sync_pass(self) -> SyncResult:
        if self.offline_mode:
            pending = await self._db(self.cache.get_entries_by_state, SyncState.DIRTY)
            logger.info(f"Offline mode: {len(pending)} edits queued")
            return SyncResult(pending=len(pending))

        logger.info("Starting sync")
        result = SyncResult()
        try:
            pulled = await self.pull()
        except AUTH_FAILURES as e:
            logger.error(f"Sync needs re-authentication: {e}")
            self.events.publish(AuthRequired())
            return SyncResult(success=False, auth_required=True, errors=[str(e)])
        except ApiError as e:
            logger.error(f"Failed to fetch remote list: {e}")
            self._report(e)
            pending = await self._db(self.cache.get_entries_by_state, SyncState.DIRTY)
            return SyncResult(success=False, pending=len(pending), errors=[str(e)])

        pushed = await self.push_pending()
        result.pulled = pulled.pulled
        result.pushed = pushed.pushed
        result.conflicted = pulled.conflicted + pushed.conflicted
        result.pending = pushed.pending
        result.auth_required = pushed.auth_required
        result.success = pushed.success
        result.errors = pulled.errors + pushed.errors
        logger.info(
            f"Sync finished: pulled={result.pulled}, pushed={result.pushed}, "
            f"conflicted={result.conflicted}, pending={result.pending}"
        )
        return result

    async def run_periodic(self, stop_event: asyncio.Event, interval_seconds: float) -> None:
        """Sync every interval until stop_event is set."""
        run_count = 0
        while not stop_event.is_set():
            run_count += 1
            logger.info(f"Sync run #{run_count}")
            try:
                await self.sync()
            except (ApiError, AuthError) as e:
                logger.error(f"Sync run #{run_count} failed: {e}")
            except CacheError as e:
                logger.error(f"Sync run #{run_count} failed on the local cache: {e}")
                self._report(e)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        await self.cancel_sync()
        logger.info("Periodic sync stopped")
