"""
Web UI for AniList offline sync
Local dashboard, JSON endpoints for the UI intents and the OAuth redirect listener.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field

from .config import Settings
from .constants import ConflictChoice, ListStatus, SyncState
from .errors import (
    ApiError,
    AuthError,
    ExchangeFailed,
    NetworkError,
    NotFoundError,
    ReauthRequired,
    StateMismatch,
    UnauthorizedError,
)
from .service import SyncService

logger = logging.getLogger(__name__)


class EntryUpdate(BaseModel):
    """List entry edit request model"""
    status: ListStatus
    score: Optional[float] = Field(None, ge=0, le=100)
    progress: int = Field(0, ge=0)


class ConflictResolution(BaseModel):
    choice: ConflictChoice


def _http_error(error: Exception) -> HTTPException:
    """Map a core failure to an HTTP error."""
    if isinstance(error, (ReauthRequired, UnauthorizedError)):
        return HTTPException(status_code=401, detail=f"Login required: {error}")
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, NetworkError):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=502, detail=str(error))


DASHBOARD_HTML = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>AniList Offline Sync</title>
    <style>
        * { margin: 0; padding: 0; box-sizing: border-box; }
        body {
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
            background: #1f2937;
            min-height: 100vh;
            padding: 20px;
        }
        .container { max-width: 1000px; margin: 0 auto; }
        .header { text-align: center; color: white; margin-bottom: 24px; }
        .card {
            background: white;
            border-radius: 10px;
            padding: 20px;
            margin-bottom: 20px;
        }
        .card h2 { color: #02a9ff; margin-bottom: 12px; }
        .status-item { display: flex; justify-content: space-between; padding: 6px 0; }
        .btn {
            padding: 10px 20px;
            background: #02a9ff;
            color: white;
            border: none;
            border-radius: 6px;
            cursor: pointer;
            margin-right: 8px;
        }
        .btn:disabled { background: #ccc; cursor: not-allowed; }
        table { width: 100%; border-collapse: collapse; }
        td, th { padding: 6px; border-bottom: 1px solid #eee; text-align: left; }
        .DIRTY { color: #d97706; }
        .CONFLICTED { color: #dc2626; font-weight: bold; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>AniList Offline Sync</h1></div>

        <div class="card">
            <h2>Status</h2>
            <div class="status-item"><span>Auth:</span><span id="auth-state">Loading...</span></div>
            <div class="status-item"><span>Queued edits:</span><span id="pending">-</span></div>
            <div class="status-item"><span>Conflicts:</span><span id="conflicted">-</span></div>
            <div class="status-item"><span>Last sync:</span><span id="last-result">-</span></div>
            <br>
            <button class="btn" id="sync-btn" onclick="syncNow()">Sync Now</button>
            <a class="btn" href="/login">Log in</a>
        </div>

        <div class="card">
            <h2>List</h2>
            <table>
                <thead><tr><th>Media</th><th>Status</th><th>Progress</th><th>Score</th><th>Sync</th></tr></thead>
                <tbody id="entries"></tbody>
            </table>
        </div>
    </div>

    <script>
        async function updateStatus() {
            const data = await (await fetch('/api/status')).json();
            document.getElementById('auth-state').textContent = data.auth_state;
            document.getElementById('pending').textContent = data.pending;
            document.getElementById('conflicted').textContent = data.conflicted;
            const last = data.last_result;
            document.getElementById('last-result').textContent = last
                ? `${last.success ? 'OK' : 'Failed'} (pulled ${last.pulled}, pushed ${last.pushed})`
                : '-';
        }

        async function updateList() {
            const entries = await (await fetch('/api/list')).json();
            document.getElementById('entries').innerHTML = entries.map(e =>
                `<tr><td>${e.media_id}</td><td>${e.status}</td><td>${e.progress}</td>` +
                `<td>${e.score ?? '-'}</td><td class="${e.sync_state}">${e.sync_state}</td></tr>`
            ).join('');
        }

        async function syncNow() {
            const btn = document.getElementById('sync-btn');
            btn.disabled = true;
            btn.textContent = 'Syncing...';
            try {
                await fetch('/api/sync', { method: 'POST' });
            } finally {
                btn.disabled = false;
                btn.textContent = 'Sync Now';
                await updateStatus();
                await updateList();
            }
        }

        window.addEventListener('DOMContentLoaded', () => {
            updateStatus();
            updateList();
            setInterval(updateStatus, 30000);
        });
    </script>
</body>
</html>
"""

CALLBACK_HTML = """
<html>
<head><title>AniList login</title></head>
<body>
    <h1>{title}</h1>
    <p>{message}</p>
    <p><a href="/">Back to dashboard</a></p>
</body>
</html>
"""


def create_app(
    settings: Settings,
    service: Optional[SyncService] = None,
    sync_interval_minutes: Optional[int] = None,
    background_sync: bool = True,
) -> FastAPI:
    """Build the FastAPI app around one SyncService."""
    service = service or SyncService(settings)
    interval = sync_interval_minutes or settings.sync.interval_minutes

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        stop_event = asyncio.Event()
        task = None
        if background_sync:
            task = asyncio.create_task(service.engine.run_periodic(stop_event, interval * 60))
        yield
        stop_event.set()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await service.close()

    app = FastAPI(title="AniList Offline Sync", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.get("/", response_class=HTMLResponse)
    async def dashboard():
        """Main dashboard page"""
        return HTMLResponse(content=DASHBOARD_HTML)

    @app.get("/api/status")
    async def get_status():
        return await service.status()

    @app.get("/api/media/{media_id}")
    async def get_media(media_id: int):
        try:
            media = await service.view_media(media_id)
        except (ApiError, AuthError) as e:
            raise _http_error(e)
        return media.model_dump(mode="json")

    @app.get("/api/list")
    async def get_list(state: Optional[SyncState] = None):
        entries = await service.engine.get_list(state)
        return [e.model_dump(mode="json") for e in entries]

    @app.put("/api/list/{media_id}")
    async def put_entry(media_id: int, update: EntryUpdate):
        entry = await service.set_list_entry(
            media_id, update.status, score=update.score, progress=update.progress
        )
        return entry.model_dump(mode="json")

    @app.post("/api/sync")
    async def trigger_sync():
        """Run a sync pass now (joins one already running)."""
        result = await service.sync()
        return result.model_dump(mode="json")

    @app.post("/api/conflicts/{local_id}/resolve")
    async def resolve_conflict(local_id: int, resolution: ConflictResolution):
        try:
            entry = await service.force_resolve_conflict(local_id, resolution.choice)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except (ApiError, AuthError) as e:
            raise _http_error(e)
        return {"local_id": local_id, "entry": entry.model_dump(mode="json") if entry else None}

    @app.get("/login")
    async def login():
        return RedirectResponse(service.login())

    @app.get("/callback", response_class=HTMLResponse)
    async def callback(request: Request):
        """OAuth redirect target."""
        try:
            await service.complete_login(dict(request.query_params))
        except StateMismatch as e:
            logger.error(f"Rejected authorization callback: {e}")
            return HTMLResponse(
                CALLBACK_HTML.format(title="Login failed", message="This login link is invalid or expired."),
                status_code=400,
            )
        except ExchangeFailed as e:
            logger.error(f"Authorization failed: {e}")
            return HTMLResponse(
                CALLBACK_HTML.format(title="Login failed", message="AniList did not grant access."),
                status_code=502,
            )
        return HTMLResponse(
            CALLBACK_HTML.format(title="Authorization received", message="You are now logged in.")
        )

    @app.post("/logout")
    async def logout(clear_cache: bool = False):
        await service.logout(clear_cache=clear_cache)
        return {"logged_out": True}

    @app.get("/api/events")
    async def recent_events():
        return [e.model_dump(mode="json") for e in service.events.history]

    return app
