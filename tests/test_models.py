"""Unit tests for data models."""

from datetime import timedelta

import pytest

from anilist_offline_sync.constants import ListStatus, SyncState
from anilist_offline_sync.models import Credential, ListEntry, MediaTitle, utcnow


def test_list_entry_creation():
    """Test creating a list entry."""
    entry = ListEntry(
        media_id=1,
        status=ListStatus.CURRENT,
        progress=5,
    )

    assert entry.media_id == 1
    assert entry.status == ListStatus.CURRENT
    assert entry.progress == 5
    assert entry.remote_id is None
    assert entry.sync_state == SyncState.CLEAN


def test_score_validation():
    """Test score validation (AniList 100-point scale)."""
    entry = ListEntry(media_id=1, status=ListStatus.CURRENT, score=85.0)
    assert entry.score == 85.0

    # Invalid scores should raise validation error
    with pytest.raises(Exception):
        ListEntry(media_id=1, status=ListStatus.CURRENT, score=-1)
    with pytest.raises(Exception):
        ListEntry(media_id=1, status=ListStatus.CURRENT, score=101)


def test_progress_validation():
    """Progress can never go negative, also on assignment."""
    entry = ListEntry(media_id=1, status=ListStatus.CURRENT)

    with pytest.raises(Exception):
        entry.progress = -1


def test_status_from_string():
    entry = ListEntry(media_id=1, status="COMPLETED")
    assert entry.status == ListStatus.COMPLETED

    with pytest.raises(Exception):
        ListEntry(media_id=1, status="WATCHING")


def test_same_user_fields_ignores_sync_metadata():
    local = ListEntry(media_id=1, status=ListStatus.CURRENT, progress=3, sync_state=SyncState.DIRTY)
    remote = ListEntry(media_id=1, remote_id=9, status=ListStatus.CURRENT, progress=3)

    assert local.same_user_fields(remote)
    assert not local.same_user_fields(remote.model_copy(update={"progress": 4}))


def test_credential_expiry_margin():
    credential = Credential(access_token="t", expires_at=utcnow() + timedelta(seconds=30))

    assert credential.expires_within(60)
    assert not credential.expires_within(10)
    assert not credential.can_refresh


def test_preferred_title_fallback():
    assert MediaTitle(romaji="Shingeki no Kyojin", english="Attack on Titan").preferred == "Attack on Titan"
    assert MediaTitle(romaji="Mushishi").preferred == "Mushishi"
    assert MediaTitle().preferred == "Unknown"
