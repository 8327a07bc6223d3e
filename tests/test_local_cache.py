"""Tests for the SQLite local cache."""

import sqlite3
from datetime import timedelta

import pytest

from anilist_offline_sync.constants import ListStatus, SyncState
from anilist_offline_sync.errors import CacheCorruptError, ConflictPendingError
from anilist_offline_sync.local_cache import LocalCache
from anilist_offline_sync.models import ListEntry, MediaEntity, MediaTitle, utcnow


def test_media_roundtrip(cache):
    """Test storing and reading back a media record."""
    media = MediaEntity(
        id=21,
        title=MediaTitle(romaji="One Piece"),
        genres={"Action", "Adventure"},
        episode_count=None,
    )
    assert cache.put_media(media) is True

    stored = cache.get_media(21)
    assert stored.title.preferred == "One Piece"
    assert stored.genres == {"Action", "Adventure"}
    assert cache.get_media(22) is None


def test_older_media_does_not_overwrite_newer(cache):
    now = utcnow()
    cache.put_media(MediaEntity(id=1, title=MediaTitle(english="New"), last_fetched_at=now))

    stored = cache.put_media(
        MediaEntity(id=1, title=MediaTitle(english="Old"), last_fetched_at=now - timedelta(hours=1))
    )

    assert stored is False
    assert cache.get_media(1).title.preferred == "New"


def test_invalidate_media(cache):
    cache.put_media(MediaEntity(id=1))
    cache.invalidate_media(1)
    assert cache.get_media(1) is None


def test_record_local_edit_creates_dirty_entry(cache):
    entry = cache.record_local_edit(42, ListStatus.CURRENT, None, 5)

    assert entry.local_id is not None
    assert entry.sync_state == SyncState.DIRTY
    assert entry.remote_id is None
    assert entry.progress == 5
    assert cache.get_list_entry_by_media(42).local_id == entry.local_id


def test_record_local_edit_rejects_negative_progress(cache):
    with pytest.raises(ValueError):
        cache.record_local_edit(42, ListStatus.CURRENT, None, -1)


def test_mark_clean_with_matching_edit_time(cache):
    entry = cache.record_local_edit(42, ListStatus.CURRENT, None, 5)
    pushed_at = utcnow()

    cleaned = cache.mark_clean(entry.local_id, 900, pushed_at, expected_updated_at_local=entry.updated_at_local)

    stored = cache.get_list_entry(entry.local_id)
    assert cleaned is True
    assert stored.sync_state == SyncState.CLEAN
    assert stored.remote_id == 900
    assert stored.updated_at_remote == pushed_at


def test_mark_clean_keeps_entry_dirty_after_newer_edit(cache):
    entry = cache.record_local_edit(42, ListStatus.CURRENT, None, 5)
    cache.record_local_edit(42, ListStatus.CURRENT, None, 6, edited_at=utcnow() + timedelta(seconds=1))

    cleaned = cache.mark_clean(entry.local_id, 900, utcnow(), expected_updated_at_local=entry.updated_at_local)

    stored = cache.get_list_entry(entry.local_id)
    assert cleaned is False
    assert stored.sync_state == SyncState.DIRTY
    assert stored.remote_id == 900
    assert stored.progress == 6


def test_conflicted_entry_cannot_be_deleted(cache):
    entry = cache.record_local_edit(42, ListStatus.CURRENT, None, 5)
    cache.mark_conflicted(entry.local_id)

    with pytest.raises(ConflictPendingError):
        cache.delete_list_entry(entry.local_id)
    assert cache.get_list_entry(entry.local_id) is not None


def test_edit_keeps_conflicted_state(cache):
    entry = cache.record_local_edit(42, ListStatus.CURRENT, None, 5)
    cache.mark_conflicted(entry.local_id)

    edited = cache.record_local_edit(42, ListStatus.DROPPED, 40.0, 7)

    assert edited.sync_state == SyncState.CONFLICTED
    assert edited.status == ListStatus.DROPPED
    assert edited.score == 40.0


def test_mark_conflicted_records_seen_remote_time(cache):
    entry = cache.record_local_edit(42, ListStatus.CURRENT, None, 5)
    seen = utcnow()

    cache.mark_conflicted(entry.local_id, seen)

    assert cache.get_list_entry(entry.local_id).updated_at_remote == seen


def test_clean_entry_requires_remote_id(cache):
    with pytest.raises(sqlite3.IntegrityError):
        cache.upsert_list_entry(ListEntry(media_id=1, status=ListStatus.CURRENT, sync_state=SyncState.CLEAN))


def test_upsert_with_stale_edit_time_is_refused(cache):
    entry = cache.record_local_edit(42, ListStatus.CURRENT, None, 5)
    cache.record_local_edit(42, ListStatus.CURRENT, None, 6, edited_at=utcnow() + timedelta(seconds=1))

    replacement = entry.model_copy(update={"progress": 1})
    result = cache.upsert_list_entry(replacement, expected_updated_at_local=entry.updated_at_local)

    assert result is None
    assert cache.get_list_entry(entry.local_id).progress == 6


def test_entries_filtered_by_state_and_counted(cache):
    first = cache.record_local_edit(1, ListStatus.CURRENT, None, 1)
    cache.record_local_edit(2, ListStatus.PLANNING, None, 0)
    cache.mark_clean(first.local_id, 501, utcnow())

    assert [e.media_id for e in cache.get_entries_by_state(SyncState.CLEAN)] == [1]
    assert [e.media_id for e in cache.get_entries_by_state(SyncState.DIRTY)] == [2]
    assert cache.count_by_state() == {"CLEAN": 1, "DIRTY": 1, "CONFLICTED": 0}


def test_resolve_to_remote_replaces_or_drops(cache):
    kept = cache.record_local_edit(1, ListStatus.CURRENT, None, 1)
    dropped = cache.record_local_edit(2, ListStatus.CURRENT, None, 1)
    cache.mark_conflicted(kept.local_id)
    cache.mark_conflicted(dropped.local_id)
    remote_at = utcnow()
    remote = ListEntry(
        remote_id=77,
        media_id=1,
        status=ListStatus.COMPLETED,
        progress=12,
        updated_at_local=remote_at,
        updated_at_remote=remote_at,
    )

    resolved = cache.resolve_to_remote(kept.local_id, remote)
    gone = cache.resolve_to_remote(dropped.local_id, None)

    assert resolved.sync_state == SyncState.CLEAN
    assert resolved.progress == 12
    assert resolved.remote_id == 77
    assert gone is None
    assert cache.get_list_entry(dropped.local_id) is None


def test_clear_removes_everything(cache):
    cache.put_media(MediaEntity(id=1))
    cache.record_local_edit(1, ListStatus.CURRENT, None, 1)

    cache.clear()

    assert cache.get_media(1) is None
    assert cache.get_list_entries() == []


def test_data_survives_reopen(settings):
    LocalCache(settings.cache_db).record_local_edit(3, ListStatus.PAUSED, 55.0, 2)

    reopened = LocalCache(settings.cache_db)

    entry = reopened.get_list_entry_by_media(3)
    assert entry.sync_state == SyncState.DIRTY
    assert entry.score == 55.0


def test_unreadable_database_file(tmp_path):
    db_path = tmp_path / "cache.db"
    db_path.write_bytes(b"this is not a sqlite database " * 200)

    with pytest.raises(CacheCorruptError):
        LocalCache(db_path)
