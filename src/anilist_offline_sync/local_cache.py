"""SQLite store for cached media and the user's list entries.

Every public method is a single transaction on a short-lived connection, so
callers on different threads can interleave freely. Nothing here knows about
the network; staleness and sync decisions live in the sync engine.
"""

import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from .constants import ListStatus, SyncState
from .errors import CacheCorruptError, CacheIOError, ConflictPendingError
from .models import ListEntry, MediaEntity, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STATUSES = ", ".join(f"'{s.value}'" for s in ListStatus)
_STATES = ", ".join(f"'{s.value}'" for s in SyncState)

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS media_cache (
    id INTEGER PRIMARY KEY,
    title TEXT NOT NULL,
    episode_count INTEGER,
    payload_json TEXT NOT NULL,
    last_fetched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS list_entries (
    local_id INTEGER PRIMARY KEY AUTOINCREMENT,
    media_id INTEGER NOT NULL UNIQUE,
    remote_id INTEGER UNIQUE,
    status TEXT NOT NULL CHECK (status IN ({_STATUSES})),
    score REAL,
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress >= 0),
    updated_at_local TEXT,
    updated_at_remote TEXT,
    sync_state TEXT NOT NULL CHECK (sync_state IN ({_STATES})),
    -- a pending edit always carries its edit time
    CHECK (sync_state != 'DIRTY' OR updated_at_local IS NOT NULL),
    -- CLEAN means confirmed by the server
    CHECK (sync_state != 'CLEAN' OR remote_id IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_list_entries_state ON list_entries(sync_state);
"""

_ENTRY_COLUMNS = (
    "local_id, media_id, remote_id, status, score, progress, "
    "updated_at_local, updated_at_remote, sync_state"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so that string order equals time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _is_contention(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class LocalCache:
    """SQLite-based local cache for offline operation."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._run(lambda conn: conn.executescript(SCHEMA), "initialize schema")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=5000")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def _run(self, op: Callable[[sqlite3.Connection], T], what: str) -> T:
        """Run op in one transaction; lock contention is retried once."""
        for attempt in (1, 2):
            try:
                with closing(self._connect()) as conn:
                    with conn:
                        return op(conn)
            except sqlite3.IntegrityError:
                raise
            except sqlite3.OperationalError as e:
                if attempt == 1 and _is_contention(e):
                    logger.warning(f"Cache busy during {what}, retrying once")
                    continue
                raise CacheIOError(f"Cache {what} failed: {e}") from e
            except sqlite3.DatabaseError as e:
                raise CacheCorruptError(f"Cache database {self.db_path} is unreadable: {e}") from e
        raise CacheIOError(f"Cache {what} failed")

    # ===== Media =====

    def get_media(self, media_id: int) -> Optional[MediaEntity]:
        row = self._run(
            lambda conn: conn.execute("SELECT payload_json FROM media_cache WHERE id = ?", (media_id,)).fetchone(),
            "read media",
        )
        if row is None:
            return None
        try:
            return MediaEntity.model_validate_json(row["payload_json"])
        except PydanticValidationError as e:
            logger.warning(f"Discarding unreadable cached media {media_id}: {e}")
            return None

    def put_media(self, media: MediaEntity) -> bool:
        """Upsert media unless the stored copy was fetched more recently."""
        def _op(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                """
                INSERT INTO media_cache (id, title, episode_count, payload_json, last_fetched_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    episode_count = excluded.episode_count,
                    payload_json = excluded.payload_json,
                    last_fetched_at = excluded.last_fetched_at
                WHERE excluded.last_fetched_at >= media_cache.last_fetched_at
                """,
                (
                    media.id,
                    media.title.preferred,
                    media.episode_count,
                    media.model_dump_json(),
                    _ts(media.last_fetched_at),
                ),
            )
            return cursor.rowcount > 0

        stored = self._run(_op, "write media")
        if stored:
            logger.debug(f"Cached media {media.id} ({media.title.preferred})")
        return stored

    def invalidate_media(self, media_id: int) -> None:
        self._run(lambda conn: conn.execute("DELETE FROM media_cache WHERE id = ?", (media_id,)), "invalidate media")

    # ===== List entries =====

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ListEntry:
        return ListEntry(
            local_id=row["local_id"],
            media_id=row["media_id"],
            remote_id=row["remote_id"],
            status=ListStatus(row["status"]),
            score=row["score"],
            progress=row["progress"],
            updated_at_local=_parse_ts(row["updated_at_local"]) or utcnow(),
            updated_at_remote=_parse_ts(row["updated_at_remote"]),
            sync_state=SyncState(row["sync_state"]),
        )

    def _select_one(self, conn: sqlite3.Connection, where: str, params: tuple) -> Optional[ListEntry]:
        row = conn.execute(f"SELECT {_ENTRY_COLUMNS} FROM list_entries WHERE {where}", params).fetchone()
        return self._row_to_entry(row) if row else None

    def get_list_entries(self, state: Optional[SyncState] = None) -> list[ListEntry]:
        """All entries, most recently edited first."""
        def _op(conn: sqlite3.Connection) -> list[ListEntry]:
            if state is None:
                rows = conn.execute(
                    f"SELECT {_ENTRY_COLUMNS} FROM list_entries ORDER BY updated_at_local DESC, local_id"
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_ENTRY_COLUMNS} FROM list_entries WHERE sync_state = ? "
                    "ORDER BY updated_at_local DESC, local_id",
                    (SyncState(state).value,),
                ).fetchall()
            return [self._row_to_entry(r) for r in rows]

        return self._run(_op, "read list")

    def get_entries_by_state(self, state: SyncState) -> list[ListEntry]:
        return self.get_list_entries(state)

    def get_list_entry(self, local_id: int) -> Optional[ListEntry]:
        return self._run(lambda conn: self._select_one(conn, "local_id = ?", (local_id,)), "read entry")

    def get_list_entry_by_media(self, media_id: int) -> Optional[ListEntry]:
        return self._run(lambda conn: self._select_one(conn, "media_id = ?", (media_id,)), "read entry")

    def count_by_state(self) -> dict[str, int]:
        rows = self._run(
            lambda conn: conn.execute(
                "SELECT sync_state, COUNT(*) AS count FROM list_entries GROUP BY sync_state"
            ).fetchall(),
            "count entries",
        )
        counts = {s.value: 0 for s in SyncState}
        counts.update({row["sync_state"]: row["count"] for row in rows})
        return counts

    def upsert_list_entry(
        self, entry: ListEntry, expected_updated_at_local: Optional[datetime] = None
    ) -> Optional[ListEntry]:
        """Insert or fully overwrite an entry, returning the stored row.

        With expected_updated_at_local the overwrite only happens if the row
        has not been edited since; None is returned when that check fails.
        """
        values = (
            entry.media_id,
            entry.remote_id,
            entry.status.value,
            entry.score,
            entry.progress,
            _ts(entry.updated_at_local),
            _ts(entry.updated_at_remote),
            entry.sync_state.value,
        )

        def _op(conn: sqlite3.Connection) -> Optional[ListEntry]:
            if entry.local_id is None:
                conn.execute(
                    """
                    INSERT INTO list_entries (media_id, remote_id, status, score, progress,
                        updated_at_local, updated_at_remote, sync_state)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(media_id) DO UPDATE SET
                        remote_id = excluded.remote_id,
                        status = excluded.status,
                        score = excluded.score,
                        progress = excluded.progress,
                        updated_at_local = excluded.updated_at_local,
                        updated_at_remote = excluded.updated_at_remote,
                        sync_state = excluded.sync_state
                    """,
                    values,
                )
                return self._select_one(conn, "media_id = ?", (entry.media_id,))

            sql = """
                UPDATE list_entries SET media_id = ?, remote_id = ?, status = ?, score = ?, progress = ?,
                    updated_at_local = ?, updated_at_remote = ?, sync_state = ?
                WHERE local_id = ?
            """
            params = values + (entry.local_id,)
            if expected_updated_at_local is not None:
                sql += " AND updated_at_local = ?"
                params += (_ts(expected_updated_at_local),)
            if conn.execute(sql, params).rowcount == 0:
                return None
            return self._select_one(conn, "local_id = ?", (entry.local_id,))

        return self._run(_op, "write entry")

    def record_local_edit(
        self,
        media_id: int,
        status: ListStatus,
        score: Optional[float],
        progress: int,
        edited_at: Optional[datetime] = None,
    ) -> ListEntry:
        """Apply a user edit: insert or update as DIRTY in one statement.

        A CONFLICTED entry takes the new values but stays CONFLICTED until
        the conflict is resolved explicitly.
        """
        if progress < 0:
            raise ValueError("progress must be >= 0")
        edited_at = _ts(edited_at or utcnow())

        def _op(conn: sqlite3.Connection) -> ListEntry:
            conn.execute(
                """
                INSERT INTO list_entries (media_id, status, score, progress, updated_at_local, sync_state)
                VALUES (?, ?, ?, ?, ?, 'DIRTY')
                ON CONFLICT(media_id) DO UPDATE SET
                    status = excluded.status,
                    score = excluded.score,
                    progress = excluded.progress,
                    updated_at_local = excluded.updated_at_local,
                    sync_state = CASE WHEN list_entries.sync_state = 'CONFLICTED'
                                      THEN 'CONFLICTED' ELSE 'DIRTY' END
                """,
                (media_id, ListStatus(status).value, score, progress, edited_at),
            )
            return self._select_one(conn, "media_id = ?", (media_id,))

        return self._run(_op, "record edit")

    def mark_dirty(self, local_id: int, edited_at: Optional[datetime] = None) -> bool:
        def _op(conn: sqlite3.Connection) -> bool:
            return conn.execute(
                "UPDATE list_entries SET sync_state = 'DIRTY', updated_at_local = ? WHERE local_id = ?",
                (_ts(edited_at or utcnow()), local_id),
            ).rowcount > 0

        return self._run(_op, "mark dirty")

    def mark_clean(
        self,
        local_id: int,
        remote_id: int,
        updated_at_remote: datetime,
        expected_updated_at_local: Optional[datetime] = None,
    ) -> bool:
        """Record a confirmed push.

        The server identifiers are always stored. The entry only becomes
        CLEAN if it was not edited again after expected_updated_at_local;
        returns whether it did.
        """
        def _op(conn: sqlite3.Connection) -> bool:
            if expected_updated_at_local is None:
                conn.execute(
                    "UPDATE list_entries SET remote_id = ?, updated_at_remote = ?, sync_state = 'CLEAN' "
                    "WHERE local_id = ?",
                    (remote_id, _ts(updated_at_remote), local_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE list_entries SET remote_id = ?, updated_at_remote = ?,
                        sync_state = CASE WHEN updated_at_local = ? THEN 'CLEAN' ELSE sync_state END
                    WHERE local_id = ?
                    """,
                    (remote_id, _ts(updated_at_remote), _ts(expected_updated_at_local), local_id),
                )
            entry = self._select_one(conn, "local_id = ?", (local_id,))
            return entry is not None and entry.sync_state == SyncState.CLEAN

        return self._run(_op, "mark clean")

    def mark_conflicted(self, local_id: int, seen_remote_at: Optional[datetime] = None) -> bool:
        """Flag a conflict; seen_remote_at becomes the new comparison baseline."""
        def _op(conn: sqlite3.Connection) -> bool:
            return conn.execute(
                "UPDATE list_entries SET sync_state = 'CONFLICTED', "
                "updated_at_remote = COALESCE(?, updated_at_remote) WHERE local_id = ?",
                (_ts(seen_remote_at), local_id),
            ).rowcount > 0

        return self._run(_op, "mark conflicted")

    def resolve_to_remote(self, local_id: int, remote: Optional[ListEntry]) -> Optional[ListEntry]:
        """Replace a conflicted entry with the remote copy, or drop it if there is none."""
        def _op(conn: sqlite3.Connection) -> Optional[ListEntry]:
            if remote is None:
                conn.execute("DELETE FROM list_entries WHERE local_id = ?", (local_id,))
                return None
            conn.execute(
                """
                UPDATE list_entries SET remote_id = ?, status = ?, score = ?, progress = ?,
                    updated_at_local = ?, updated_at_remote = ?, sync_state = 'CLEAN'
                WHERE local_id = ?
                """,
                (
                    remote.remote_id,
                    remote.status.value,
                    remote.score,
                    remote.progress,
                    _ts(remote.updated_at_remote),
                    _ts(remote.updated_at_remote),
                    local_id,
                ),
            )
            return self._select_one(conn, "local_id = ?", (local_id,))

        return self._run(_op, "resolve entry")

    def delete_list_entry(self, local_id: int) -> bool:
        """Delete an entry; refused while it is CONFLICTED."""
        def _op(conn: sqlite3.Connection) -> bool:
            entry = self._select_one(conn, "local_id = ?", (local_id,))
            if entry is None:
                return False
            if entry.sync_state == SyncState.CONFLICTED:
                raise ConflictPendingError(f"Entry {local_id} has an unresolved conflict")
            conn.execute("DELETE FROM list_entries WHERE local_id = ?", (local_id,))
            return True

        return self._run(_op, "delete entry")

    def clear(self) -> None:
        """Remove all cached media and list entries."""
        def _op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM list_entries")
            conn.execute("DELETE FROM media_cache")

        self._run(_op, "clear")
        logger.info("Local cache cleared")
