"""Tests for the durable store backends."""

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from aichat_engine.backends import get_durable_store
from aichat_engine.backends.rest import RestStore
from aichat_engine.backends.sqlite import SQLiteStore
from aichat_engine.core import HistoryEntry, HistoryFilter, StoredSession
from aichat_engine.errors import PersistenceError

T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2025, 1, 15, 11, 0, 0, tzinfo=timezone.utc)


def record(session_id="s1", title="Chat", updated=T1):
    return StoredSession(
        session_id=session_id,
        title=title,
        messages=[{"id": "1", "role": "user", "content": "hi", "timestamp": 1736935200000}],
        created_at=T0,
        updated_at=updated,
    )


class TestRegistry:
    def test_sqlite_by_name(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AICHAT_DATA_PATH", str(tmp_path))
        assert isinstance(get_durable_store("sqlite"), SQLiteStore)

    def test_env_selects_rest(self, monkeypatch):
        monkeypatch.setenv("AICHAT_STORE", "rest")
        monkeypatch.setenv("AICHAT_REST_URL", "https://db.test")
        store = get_durable_store()
        assert isinstance(store, RestStore)
        assert store.url == "https://db.test"

    def test_unknown(self):
        with pytest.raises(ValueError):
            get_durable_store("mongo")


@pytest.mark.asyncio
class TestSQLiteStore:
    async def test_upsert_keeps_one_row(self, sqlite_store):
        await sqlite_store.upsert_session("u", record(title="One"))
        await sqlite_store.upsert_session("u", record(title="Two"))
        rows = await sqlite_store.list_sessions("u")
        assert len(rows) == 1
        assert rows[0].title == "Two"
        assert rows[0].created_at == T0

    async def test_rows_scoped_per_user(self, sqlite_store):
        await sqlite_store.upsert_session("u", record())
        await sqlite_store.upsert_session("v", record())
        assert len(await sqlite_store.list_sessions("u")) == 1
        await sqlite_store.delete_session("v", "s1")
        assert await sqlite_store.get_session("u", "s1") is not None

    async def test_list_newest_first(self, sqlite_store):
        await sqlite_store.upsert_session("u", record("old", updated=T0))
        await sqlite_store.upsert_session("u", record("new", updated=T1))
        assert [r.session_id for r in await sqlite_store.list_sessions("u")] == ["new", "old"]

    async def test_history_insert_assigns_id(self, sqlite_store):
        entry = await sqlite_store.insert_history(
            "u", HistoryEntry(session_id="s1", chat_type="text", message_content={"prompt": "hi"})
        )
        assert entry.id
        await sqlite_store.delete_history_entry("u", entry.id)
        assert await sqlite_store.query_history("u", HistoryFilter()) == []

    async def test_delete_all_history(self, sqlite_store, history_entries):
        for entry in history_entries:
            await sqlite_store.insert_history("u", entry)
        await sqlite_store.delete_all_history("u")
        assert await sqlite_store.query_history("u", HistoryFilter()) == []

    async def test_upload_media(self, sqlite_store, tmp_path):
        url = await sqlite_store.upload_media("u", "s1", "image-1.png", b"PNG", "image/png")
        assert url == "http://media.test/u/s1/image-1.png"
        assert (tmp_path / "media" / "u" / "s1" / "image-1.png").read_bytes() == b"PNG"

    async def test_upload_media_refuses_overwrite(self, sqlite_store):
        await sqlite_store.upload_media("u", "s1", "a.png", b"1", "image/png")
        with pytest.raises(PersistenceError):
            await sqlite_store.upload_media("u", "s1", "a.png", b"2", "image/png")

    async def test_rename_flag_round_trip(self, sqlite_store):
        await sqlite_store.upsert_session("u", record())
        assert not (await sqlite_store.get_session("u", "s1")).renamed
        await sqlite_store.update_session_title("u", "s1", "Renamed")
        row = await sqlite_store.get_session("u", "s1")
        assert row.title == "Renamed"
        assert row.renamed

    async def test_upsert_carries_rename_flag(self, sqlite_store):
        flagged = record()
        flagged.renamed = True
        await sqlite_store.upsert_session("u", flagged)
        assert (await sqlite_store.get_session("u", "s1")).renamed

    async def test_adds_rename_column_to_existing_database(self, tmp_path):
        db = tmp_path / "old.db"
        conn = sqlite3.connect(db)
        conn.execute(
            """CREATE TABLE chat_storage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                title TEXT NOT NULL,
                messages TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (user_id, session_id)
            )"""
        )
        conn.execute(
            "INSERT INTO chat_storage (user_id, session_id, title, messages, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            ("u", "s1", "Old", "[]", T0.isoformat(), T1.isoformat()),
        )
        conn.commit()
        conn.close()

        store = SQLiteStore(db_path=db, media_path=tmp_path / "media", media_url="http://media.test")
        row = await store.get_session("u", "s1")
        assert row.title == "Old"
        assert not row.renamed

    async def test_queries_run_off_the_event_loop(self, sqlite_store):
        with patch("aichat_engine.backends.sqlite.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            await sqlite_store.upsert_session("u", record())
            await sqlite_store.list_sessions("u")
            await sqlite_store.upload_media("u", "s1", "b.png", b"PNG", "image/png")
        assert to_thread.call_count == 3


@pytest.mark.asyncio
class TestRestStore:
    async def test_upsert_request_shape(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["prefer"] = request.headers.get("prefer")
            seen["apikey"] = request.headers.get("apikey")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201)

        store = RestStore("https://db.test", api_key="key", transport=httpx.MockTransport(handler))
        await store.upsert_session("u", record())
        assert seen["method"] == "POST"
        assert seen["path"] == "/rest/v1/chat_storage"
        assert seen["params"] == {"on_conflict": "user_id,session_id"}
        assert "resolution=merge-duplicates" in seen["prefer"]
        assert seen["apikey"] == "key"
        assert seen["body"]["session_id"] == "s1"
        assert seen["body"]["messages"][0]["content"] == "hi"
        assert seen["body"]["renamed"] is False

    async def test_rename_marks_row(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["params"] = dict(request.url.params)
            seen["body"] = json.loads(request.content)
            return httpx.Response(204)

        store = RestStore("https://db.test", transport=httpx.MockTransport(handler))
        await store.update_session_title("u", "s1", "My Title")
        assert seen["method"] == "PATCH"
        assert seen["params"] == {"user_id": "eq.u", "session_id": "eq.s1"}
        assert seen["body"] == {"title": "My Title", "renamed": True}

    async def test_list_sessions(self):
        def handler(request):
            assert request.url.params["user_id"] == "eq.u"
            return httpx.Response(200, json=[{
                "session_id": "s1",
                "title": "Chat",
                "messages": json.dumps([{"role": "user", "content": "hi"}]),
                "created_at": "2025-01-15T10:00:00Z",
                "updated_at": "2025-01-15T11:00:00+00:00",
            }])

        store = RestStore("https://db.test", transport=httpx.MockTransport(handler))
        rows = await store.list_sessions("u")
        assert rows[0].messages == [{"role": "user", "content": "hi"}]
        assert rows[0].created_at == T0
        assert rows[0].updated_at == T1
        assert rows[0].renamed is False

    async def test_query_history_filters(self):
        seen = {}

        def handler(request):
            seen["params"] = request.url.params
            return httpx.Response(200, json=[{
                "id": 7,
                "session_id": "s1",
                "chat_type": "text",
                "message_content": {"prompt": "hi", "response": "hello"},
                "metadata": {},
                "timestamp": "2025-01-15T10:00:00+00:00",
            }])

        store = RestStore("https://db.test", transport=httpx.MockTransport(handler))
        entries = await store.query_history("u", HistoryFilter(chat_type="text", start=T0, end=T1, limit=5))
        params = seen["params"]
        assert params["chat_type"] == "eq.text"
        assert params.get_list("timestamp") == [f"gte.{T0.isoformat()}", f"lte.{T1.isoformat()}"]
        assert params["limit"] == "5"
        assert params["order"] == "timestamp.desc"
        assert entries[0].id == "7"
        assert entries[0].message_content["response"] == "hello"

    async def test_upload_media_public_url(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["type"] = request.headers.get("content-type")
            return httpx.Response(200, json={"Key": "s3/u/s1/a.png"})

        store = RestStore("https://db.test", transport=httpx.MockTransport(handler))
        url = await store.upload_media("u", "s1", "a.png", b"PNG", "image/png")
        assert seen["path"] == "/storage/v1/object/s3/u/s1/a.png"
        assert seen["type"] == "image/png"
        assert url == "https://db.test/storage/v1/object/public/s3/u/s1/a.png"

    async def test_error_status_raises(self):
        store = RestStore(
            "https://db.test", transport=httpx.MockTransport(lambda r: httpx.Response(401, text="no"))
        )
        with pytest.raises(PersistenceError, match="401"):
            await store.list_sessions("u")

    async def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("down")

        store = RestStore("https://db.test", transport=httpx.MockTransport(handler))
        with pytest.raises(PersistenceError):
            await store.delete_session("u", "s1")
