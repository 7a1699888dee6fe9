"""SQLite durable store.

Keeps both row shapes in one database file and writes media blobs to a
directory served under a configurable base URL. Blocking sqlite3 and file
I/O run in a worker thread so the event loop keeps serving streams.
"""

import asyncio
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from ..config import get_db_path, get_media_path, get_media_url
from ..core import HistoryEntry, HistoryFilter, StoredSession
from ..durable import DurableStore
from ..errors import PersistenceError

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS chat_storage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    title TEXT NOT NULL,
    messages TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    renamed INTEGER NOT NULL DEFAULT 0,
    UNIQUE (user_id, session_id)
);

CREATE TABLE IF NOT EXISTS chat_history (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    chat_type TEXT NOT NULL,
    message_content TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    session_id TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chat_history_user_ts
    ON chat_history(user_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_chat_history_session
    ON chat_history(user_id, session_id);
"""


class SQLiteStore(DurableStore):
    """Durable store backed by a local SQLite file."""

    name = "sqlite"

    def __init__(
        self,
        db_path: str | Path | None = None,
        media_path: str | Path | None = None,
        media_url: str | None = None,
    ):
        self.db_path = Path(db_path) if db_path else get_db_path()
        self.media_path = Path(media_path) if media_path else get_media_path()
        self.media_url = (media_url or get_media_url()).rstrip("/")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
            columns = {r["name"] for r in conn.execute("PRAGMA table_info(chat_storage)")}
            # Databases created before rename tracking lack the column.
            if "renamed" not in columns:
                conn.execute("ALTER TABLE chat_storage ADD COLUMN renamed INTEGER NOT NULL DEFAULT 0")
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    def _run(self, sql: str, params=(), fetch: str | None = None):
        with self._connect() as conn:
            cursor = conn.execute(sql, params)
            if fetch == "one":
                return cursor.fetchone()
            if fetch == "all":
                return cursor.fetchall()
            return None

    async def _execute(self, sql: str, params=(), fetch: str | None = None):
        return await asyncio.to_thread(self._run, sql, params, fetch)

    # ── Chat storage rows ────────────────────────────────────────

    async def get_session(self, user_id: str, session_id: str) -> StoredSession | None:
        row = await self._execute(
            "SELECT * FROM chat_storage WHERE user_id = ? AND session_id = ?",
            (user_id, session_id),
            fetch="one",
        )
        return _row_to_session(row) if row else None

    async def list_sessions(self, user_id: str) -> list[StoredSession]:
        rows = await self._execute(
            "SELECT * FROM chat_storage WHERE user_id = ? ORDER BY updated_at DESC",
            (user_id,),
            fetch="all",
        )
        return [_row_to_session(r) for r in rows]

    async def upsert_session(self, user_id: str, record: StoredSession) -> None:
        await self._execute(
            """INSERT INTO chat_storage
               (user_id, session_id, title, messages, created_at, updated_at, renamed)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (user_id, session_id) DO UPDATE SET
                   title = excluded.title,
                   messages = excluded.messages,
                   updated_at = excluded.updated_at,
                   renamed = excluded.renamed""",
            (
                user_id,
                record.session_id,
                record.title,
                json.dumps(record.messages, ensure_ascii=False),
                record.created_at.isoformat(),
                record.updated_at.isoformat(),
                int(record.renamed),
            ),
        )

    async def update_session_title(self, user_id: str, session_id: str, title: str) -> None:
        await self._execute(
            "UPDATE chat_storage SET title = ?, renamed = 1 WHERE user_id = ? AND session_id = ?",
            (title, user_id, session_id),
        )

    async def delete_session(self, user_id: str, session_id: str) -> None:
        await self._execute(
            "DELETE FROM chat_storage WHERE user_id = ? AND session_id = ?",
            (user_id, session_id),
        )

    # ── Chat history rows ────────────────────────────────────────

    async def insert_history(self, user_id: str, entry: HistoryEntry) -> HistoryEntry:
        if not entry.id:
            entry.id = uuid.uuid4().hex
        await self._execute(
            """INSERT INTO chat_history
               (id, user_id, chat_type, message_content, metadata, session_id, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id,
                user_id,
                entry.chat_type,
                json.dumps(entry.message_content, ensure_ascii=False),
                json.dumps(entry.metadata, ensure_ascii=False),
                entry.session_id,
                entry.timestamp.isoformat(),
            ),
        )
        return entry

    async def query_history(self, user_id: str, flt: HistoryFilter) -> list[HistoryEntry]:
        sql = "SELECT * FROM chat_history WHERE user_id = ?"
        params: list = [user_id]
        if flt.chat_type:
            sql += " AND chat_type = ?"
            params.append(flt.chat_type)
        if flt.session_id:
            sql += " AND session_id = ?"
            params.append(flt.session_id)
        if flt.start:
            sql += " AND timestamp >= ?"
            params.append(flt.start.isoformat())
        if flt.end:
            sql += " AND timestamp <= ?"
            params.append(flt.end.isoformat())
        sql += " ORDER BY timestamp DESC"
        if flt.limit is not None or flt.offset:
            sql += " LIMIT ? OFFSET ?"
            params.extend([flt.limit if flt.limit is not None else -1, flt.offset])

        rows = await self._execute(sql, params, fetch="all")
        return [_row_to_entry(r) for r in rows]

    async def search_history(
        self, user_id: str, term: str, chat_type: str | None = None
    ) -> list[HistoryEntry]:
        sql = "SELECT * FROM chat_history WHERE user_id = ? AND message_content LIKE ?"
        params: list = [user_id, f"%{term}%"]
        if chat_type:
            sql += " AND chat_type = ?"
            params.append(chat_type)
        sql += " ORDER BY timestamp DESC"

        rows = await self._execute(sql, params, fetch="all")
        # LIKE matched the JSON text; keep only hits inside actual values.
        needle = term.lower()
        return [
            e for e in map(_row_to_entry, rows)
            if any(needle in v.lower() for v in _strings(e.message_content))
        ]

    async def delete_history_entry(self, user_id: str, entry_id: str) -> None:
        await self._execute(
            "DELETE FROM chat_history WHERE user_id = ? AND id = ?", (user_id, entry_id)
        )

    async def delete_session_history(self, user_id: str, session_id: str) -> None:
        await self._execute(
            "DELETE FROM chat_history WHERE user_id = ? AND session_id = ?",
            (user_id, session_id),
        )

    async def delete_all_history(self, user_id: str) -> None:
        await self._execute("DELETE FROM chat_history WHERE user_id = ?", (user_id,))

    # ── Blobs ────────────────────────────────────────────────────

    async def upload_media(
        self, user_id: str, session_id: str, filename: str, data: bytes, content_type: str
    ) -> str:
        target = self.media_path / user_id / session_id / filename
        await asyncio.to_thread(_write_new_file, target, data)
        logger.debug("Stored %s (%s, %d bytes)", target, content_type, len(data))
        return f"{self.media_url}/{user_id}/{session_id}/{filename}"


def _write_new_file(target: Path, data: bytes) -> None:
    if target.exists():
        raise PersistenceError(f"Media already exists: {target}")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
    except OSError as e:
        raise PersistenceError(f"Failed to write media {target}: {e}") from e


def _row_to_session(row: sqlite3.Row) -> StoredSession:
    return StoredSession(
        session_id=row["session_id"],
        title=row["title"],
        messages=json.loads(row["messages"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        renamed=bool(row["renamed"]),
    )


def _row_to_entry(row: sqlite3.Row) -> HistoryEntry:
    return HistoryEntry(
        id=row["id"],
        session_id=row["session_id"],
        chat_type=row["chat_type"],
        message_content=json.loads(row["message_content"]),
        metadata=json.loads(row["metadata"] or "{}"),
        timestamp=datetime.fromisoformat(row["timestamp"]),
    )


def _strings(value):
    """Yield every string inside a JSON-like value."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _strings(v)
