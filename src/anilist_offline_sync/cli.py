"""Command-line interface for AniList offline sync."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import click

from .config import Settings, default_config_path, load_settings, validate_credentials
from .constants import DEFAULT_WEB_UI_PORT, ConflictChoice, ListStatus, SyncState
from .errors import ApiError, AuthError, CacheError, ReauthRequired, UnauthorizedError
from .models import SyncResult
from .oauth import run_oauth_flow
from .service import SyncService

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def setup_logging(level: str):
    """Configure logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


def _show_config_error(invalid_vars: list[str], config_path: Path, exit_code: Optional[int] = 1):
    """Display configuration error message and optionally exit."""
    logger.error("=" * 60)
    logger.error("CONFIGURATION ERROR: Missing or invalid credentials")
    logger.error("=" * 60)
    logger.error("Missing/invalid values:")
    for var in invalid_vars:
        logger.error(f"  - {var}")
    logger.error("")
    logger.error("Required steps:")
    logger.error("  1. Create an API client: https://anilist.co/settings/developer")
    logger.error(f"  2. Edit {config_path} with its client id and secret")
    logger.error("=" * 60)
    if exit_code is not None:
        sys.exit(exit_code)


def _require_valid_config(ctx: click.Context):
    """Validate config credentials and exit if invalid."""
    is_valid, invalid_vars = validate_credentials(ctx.obj["settings"])
    if not is_valid:
        _show_config_error(invalid_vars, ctx.obj["config_path"])


def _run_with_service(ctx: click.Context, action: Callable[[SyncService], Awaitable[T]]) -> T:
    """Run an async action against a started service; known failures exit 1."""
    settings: Settings = ctx.obj["settings"]

    async def _main() -> T:
        service = SyncService(settings)
        await service.start()
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(_main())
    except (ReauthRequired, UnauthorizedError) as e:
        logger.error(f"Authentication required: {e}")
        logger.error("Please run: anilist-offline-sync auth")
        sys.exit(1)
    except (ApiError, AuthError) as e:
        logger.error(f"Request failed: {e}")
        sys.exit(1)
    except CacheError as e:
        logger.error(f"Local cache error: {e}")
        sys.exit(1)


def _print_sync_results(result: SyncResult):
    """Print sync results to console."""
    click.echo("\n=== Sync Results ===")
    click.echo(f"Success: {result.success}")
    click.echo(f"Pulled: {result.pulled}")
    click.echo(f"Pushed: {result.pushed}")
    click.echo(f"Conflicted: {result.conflicted}")
    click.echo(f"Pending: {result.pending}")
    if result.auth_required:
        click.echo("Re-authentication required: run 'anilist-offline-sync auth'")

    if result.errors:
        click.echo(f"\nErrors ({len(result.errors)}):")
        for error in result.errors[:10]:
            click.echo(f"  - {error}")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.yaml (default: per-user config directory)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level (default: from config)",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str]):
    """Offline-capable AniList list manager."""
    config_path = config_path or default_config_path()
    settings = load_settings(config_path)
    setup_logging(log_level or settings.sync.log_level)
    ctx.obj = {"settings": settings, "config_path": config_path}


@main.command()
@click.option("--no-browser", is_flag=True, help="Print the authorization URL instead of opening it")
@click.pass_context
def auth(ctx: click.Context, no_browser: bool):
    """Log in to AniList through the browser."""
    _require_valid_config(ctx)
    click.echo("=== AniList Authentication ===\n")

    async def _login(service: SyncService):
        return await run_oauth_flow(service.auth, open_browser=not no_browser)

    _run_with_service(ctx, _login)
    click.echo(f"\nAuthentication complete! Credential saved to {ctx.obj['settings'].token_file}")
    click.echo("\nYou can now run: anilist-offline-sync sync")


@main.command()
@click.option("--clear-cache", is_flag=True, help="Also delete cached media and list entries")
@click.pass_context
def logout(ctx: click.Context, clear_cache: bool):
    """Forget the stored credential."""
    _run_with_service(ctx, lambda service: service.logout(clear_cache=clear_cache))
    click.echo("Logged out" + (" and cleared the local cache" if clear_cache else ""))


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Show login state and queued changes."""
    info = _run_with_service(ctx, lambda service: service.status())

    click.echo("=== Status ===")
    click.echo(f"Auth: {info['auth_state']}")
    click.echo(f"Logged in: {info['logged_in']}")
    if info["token_expires_at"]:
        click.echo(f"Token expires: {info['token_expires_at']}")
    click.echo(f"Offline mode: {info['offline_mode']}")
    for state, count in info["entries"].items():
        click.echo(f"Entries {state}: {count}")
    if not info["credentials_configured"]:
        click.echo(f"Config incomplete: {', '.join(info['missing_config'])}")


@main.command()
@click.argument("media_id", type=int)
@click.pass_context
def media(ctx: click.Context, media_id: int):
    """Show details for one anime (served from cache when fresh)."""
    item = _run_with_service(ctx, lambda service: service.view_media(media_id))

    click.echo(f"{item.title.preferred} (id {item.id})")
    if item.title.romaji and item.title.romaji != item.title.preferred:
        click.echo(f"  Romaji: {item.title.romaji}")
    click.echo(f"  Format: {item.format or '-'}  Status: {item.status or '-'}")
    click.echo(f"  Episodes: {item.episode_count or '?'}  Average score: {item.average_score or '-'}")
    if item.genres:
        click.echo(f"  Genres: {', '.join(sorted(item.genres))}")
    main_studios = [s.name for s in item.studios if s.is_main]
    if main_studios:
        click.echo(f"  Studio: {', '.join(main_studios)}")
    if item.description:
        click.echo(f"\n{item.description[:500]}")


@main.command()
@click.argument("text")
@click.option("--page", type=int, default=1, help="Result page")
@click.pass_context
def search(ctx: click.Context, text: str, page: int):
    """Search AniList for anime by title."""
    results = _run_with_service(ctx, lambda service: service.engine.search_media(text, page=page))
    if not results:
        click.echo("No results")
        return
    for item in results:
        click.echo(f"{item.id:>7}  {item.title.preferred}  ({item.format or '-'}, {item.episode_count or '?'} eps)")


@main.command(name="list")
@click.option(
    "--state",
    type=click.Choice([s.value for s in SyncState], case_sensitive=False),
    default=None,
    help="Only show entries in this sync state",
)
@click.pass_context
def list_entries(ctx: click.Context, state: Optional[str]):
    """Show the locally cached list."""
    sync_state = SyncState(state.upper()) if state else None
    entries = _run_with_service(ctx, lambda service: service.engine.get_list(sync_state))
    if not entries:
        click.echo("List is empty")
        return

    click.echo(f"{'local':>6}  {'media':>7}  {'status':<10}  {'progress':>8}  {'score':>5}  sync")
    for entry in entries:
        score = f"{entry.score:.0f}" if entry.score is not None else "-"
        click.echo(
            f"{entry.local_id:>6}  {entry.media_id:>7}  {entry.status.value:<10}  "
            f"{entry.progress:>8}  {score:>5}  {entry.sync_state.value}"
        )


@main.command(name="set")
@click.argument("media_id", type=int)
@click.option(
    "--status",
    "list_status",
    type=click.Choice([s.value for s in ListStatus], case_sensitive=False),
    required=True,
    help="List status",
)
@click.option("--score", type=click.FloatRange(0, 100), default=None, help="Score on the 100-point scale")
@click.option("--progress", type=click.IntRange(min=0), default=0, help="Episodes watched")
@click.pass_context
def set_entry(ctx: click.Context, media_id: int, list_status: str, score: Optional[float], progress: int):
    """Edit a list entry; it is saved locally and uploaded when possible."""

    async def _set(service: SyncService):
        entry = await service.set_list_entry(media_id, list_status.upper(), score=score, progress=progress)
        await service.engine.drain()
        # re-read: the upload may have changed its state
        return await asyncio.to_thread(service.cache.get_list_entry, entry.local_id)

    entry = _run_with_service(ctx, _set)
    click.echo(f"Media {media_id}: {entry.status.value}, progress {entry.progress} [{entry.sync_state.value}]")
    if entry.sync_state == SyncState.DIRTY:
        click.echo("Change is queued and will be uploaded on the next sync")
    elif entry.sync_state == SyncState.CONFLICTED:
        click.echo(f"Conflict with a remote change; run: anilist-offline-sync resolve {entry.local_id}")


@main.command()
@click.argument("local_id", type=int)
@click.option(
    "--keep-local/--adopt-remote",
    default=True,
    help="Keep the local values (default) or take the server copy",
)
@click.pass_context
def resolve(ctx: click.Context, local_id: int, keep_local: bool):
    """Resolve a conflicted list entry."""
    choice = ConflictChoice.KEEP_LOCAL if keep_local else ConflictChoice.ADOPT_REMOTE
    try:
        entry = _run_with_service(ctx, lambda service: service.force_resolve_conflict(local_id, choice))
    except (KeyError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)

    if entry is None:
        click.echo(f"Entry {local_id} removed (not on the server)")
    else:
        click.echo(f"Entry {local_id}: {entry.status.value}, progress {entry.progress} [{entry.sync_state.value}]")


@main.command()
@click.pass_context
def sync(ctx: click.Context):
    """Pull remote changes and upload queued edits."""
    result = _run_with_service(ctx, lambda service: service.sync())
    _print_sync_results(result)
    sys.exit(0 if result.success else 1)


@main.command()
@click.option("--interval", type=int, default=None, help="Minutes between syncs (default: from config)")
@click.pass_context
def run(ctx: click.Context, interval: Optional[int]):
    """Run continuous sync at the configured interval."""
    settings: Settings = ctx.obj["settings"]
    _require_valid_config(ctx)
    interval = interval or settings.sync.interval_minutes

    logger.info("=" * 60)
    logger.info("Starting AniList offline sync service")
    logger.info(f"Interval: {interval} minutes ({interval // 60}h {interval % 60}m)")
    logger.info("=" * 60)

    async def _loop(service: SyncService):
        stop_event = asyncio.Event()
        await service.engine.run_periodic(stop_event, interval * 60)

    try:
        _run_with_service(ctx, _loop)
    except KeyboardInterrupt:
        logger.info("")
        logger.info("=" * 60)
        logger.info("Service stopped by user")
        logger.info("=" * 60)
        sys.exit(0)


@main.command()
@click.option("--port", type=int, default=DEFAULT_WEB_UI_PORT, help="Web UI port")
@click.option("--host", type=str, default="127.0.0.1", help="Web UI host")
@click.option("--interval", type=int, default=None, help="Minutes between background syncs")
@click.pass_context
def web(ctx: click.Context, port: int, host: str, interval: Optional[int]):
    """Run the local web UI with background sync."""
    import uvicorn

    from .web import create_app

    settings: Settings = ctx.obj["settings"]
    _require_valid_config(ctx)

    logger.info("=" * 60)
    logger.info("AniList offline sync - Web UI Mode")
    logger.info("=" * 60)
    logger.info(f"Web UI: http://{host}:{port}")
    logger.info(f"Sync Interval: {interval or settings.sync.interval_minutes} minutes")
    logger.info("=" * 60)

    app = create_app(settings, sync_interval_minutes=interval)
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    except KeyboardInterrupt:
        logger.info("Web UI stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
