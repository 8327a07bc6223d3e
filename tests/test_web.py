"""Tests for the web control surface."""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from anilist_offline_sync.config import Settings
from anilist_offline_sync.service import SyncService
from anilist_offline_sync.web import create_app


@pytest.fixture
def offline_settings(tmp_path):
    return Settings(
        anilist={"client_id": "12345", "client_secret": "s3cret"},
        sync={"offline_mode": True},
        paths={"data_dir": tmp_path},
    )


@pytest.fixture
def web_client(offline_settings, remote):
    service = SyncService(offline_settings)
    service.engine.client = remote
    app = create_app(offline_settings, service=service, background_sync=False)
    with TestClient(app) as client:
        yield client


def test_dashboard(web_client):
    response = web_client.get("/")
    assert response.status_code == 200
    assert "AniList Offline Sync" in response.text


def test_status(web_client):
    data = web_client.get("/api/status").json()

    assert data["auth_state"] == "UNAUTHENTICATED"
    assert data["logged_in"] is False
    assert data["offline_mode"] is True
    assert data["pending"] == 0


def test_edit_is_queued_and_listed(web_client):
    response = web_client.put("/api/list/42", json={"status": "CURRENT", "progress": 5})

    assert response.status_code == 200
    assert response.json()["sync_state"] == "DIRTY"
    entries = web_client.get("/api/list").json()
    assert [(e["media_id"], e["progress"]) for e in entries] == [(42, 5)]
    assert web_client.get("/api/list", params={"state": "CLEAN"}).json() == []
    assert web_client.get("/api/status").json()["pending"] == 1


def test_invalid_edit_is_rejected(web_client):
    response = web_client.put("/api/list/42", json={"status": "CURRENT", "progress": -1})
    assert response.status_code == 422


def test_uncached_media_offline(web_client):
    response = web_client.get("/api/media/1")
    assert response.status_code == 503


def test_sync_offline_reports_pending(web_client):
    web_client.put("/api/list/42", json={"status": "PLANNING"})

    result = web_client.post("/api/sync").json()

    assert result["pending"] == 1
    assert result["pushed"] == 0


def test_resolve_unknown_entry(web_client):
    response = web_client.post("/api/conflicts/999/resolve", json={"choice": "keep_local"})
    assert response.status_code == 404


def test_resolve_entry_without_conflict(web_client):
    local_id = web_client.put("/api/list/42", json={"status": "CURRENT"}).json()["local_id"]

    response = web_client.post(f"/api/conflicts/{local_id}/resolve", json={"choice": "adopt_remote"})

    assert response.status_code == 409


def test_login_redirects_to_anilist(web_client):
    response = web_client.get("/login", follow_redirects=False)

    assert response.status_code in (302, 307)
    location = response.headers["location"]
    assert location.startswith("https://anilist.co/api/v2/oauth/authorize")
    assert parse_qs(urlparse(location).query)["client_id"] == ["12345"]


def test_callback_with_wrong_state(web_client):
    web_client.get("/login", follow_redirects=False)

    response = web_client.get("/callback", params={"code": "abc", "state": "forged"})

    assert response.status_code == 400


def test_events_and_logout(web_client):
    web_client.put("/api/list/42", json={"status": "CURRENT"})

    events = web_client.get("/api/events").json()
    assert events[-1]["type"] == "list_updated"

    assert web_client.post("/logout").json() == {"logged_out": True}
