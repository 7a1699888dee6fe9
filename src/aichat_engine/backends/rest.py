"""Hosted backend-as-a-service store.

Talks to a PostgREST-style row API (``/rest/v1/<table>``) holding the
``chat_storage`` and ``chat_history`` tables, and to an object storage
bucket (``/storage/v1/object/<bucket>/<path>``) for generated media.
"""

import json
import logging
from datetime import datetime

import httpx

from ..config import get_rest_key, get_rest_url, get_timeout
from ..core import HistoryEntry, HistoryFilter, StoredSession
from ..durable import DurableStore
from ..errors import PersistenceError

logger = logging.getLogger(__name__)

MEDIA_BUCKET = "s3"


class RestStore(DurableStore):
    """Durable store over a PostgREST row API and object storage."""

    name = "rest"

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = (url or get_rest_url()).rstrip("/")
        self.api_key = api_key if api_key is not None else get_rest_key()
        self.timeout = timeout or get_timeout()
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, f"{self.url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("REST store %s %s failed: %s", method, path, e)
            raise PersistenceError(str(e)) from e
        if resp.status_code >= 400:
            raise PersistenceError(f"HTTP {resp.status_code}: {resp.text[:200]}")
        return resp

    # ── Chat storage rows ────────────────────────────────────────

    async def get_session(self, user_id: str, session_id: str) -> StoredSession | None:
        resp = await self._request(
            "GET",
            "/rest/v1/chat_storage",
            params={"user_id": f"eq.{user_id}", "session_id": f"eq.{session_id}", "select": "*"},
        )
        rows = resp.json()
        return _row_to_session(rows[0]) if rows else None

    async def list_sessions(self, user_id: str) -> list[StoredSession]:
        resp = await self._request(
            "GET",
            "/rest/v1/chat_storage",
            params={"user_id": f"eq.{user_id}", "select": "*", "order": "updated_at.desc"},
        )
        return [_row_to_session(r) for r in resp.json()]

    async def upsert_session(self, user_id: str, record: StoredSession) -> None:
        body = {
            "user_id": user_id,
            "session_id": record.session_id,
            "title": record.title,
            "messages": record.messages,
            "created_at": record.created_at.isoformat(),
            "updated_at": record.updated_at.isoformat(),
            "renamed": record.renamed,
        }
        await self._request(
            "POST",
            "/rest/v1/chat_storage",
            params={"on_conflict": "user_id,session_id"},
            json=body,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def update_session_title(self, user_id: str, session_id: str, title: str) -> None:
        await self._request(
            "PATCH",
            "/rest/v1/chat_storage",
            params={"user_id": f"eq.{user_id}", "session_id": f"eq.{session_id}"},
            json={"title": title, "renamed": True},
        )

    async def delete_session(self, user_id: str, session_id: str) -> None:
        await self._request(
            "DELETE",
            "/rest/v1/chat_storage",
            params={"user_id": f"eq.{user_id}", "session_id": f"eq.{session_id}"},
        )

    # ── Chat history rows ────────────────────────────────────────

    async def insert_history(self, user_id: str, entry: HistoryEntry) -> HistoryEntry:
        body = {
            "user_id": user_id,
            "chat_type": entry.chat_type,
            "message_content": entry.message_content,
            "metadata": entry.metadata,
            "session_id": entry.session_id,
            "timestamp": entry.timestamp.isoformat(),
        }
        resp = await self._request(
            "POST",
            "/rest/v1/chat_history",
            json=body,
            headers={"Prefer": "return=representation"},
        )
        rows = resp.json()
        if rows:
            entry.id = str(rows[0].get("id", entry.id))
        return entry

    async def query_history(self, user_id: str, flt: HistoryFilter) -> list[HistoryEntry]:
        params: list[tuple[str, str]] = [
            ("user_id", f"eq.{user_id}"),
            ("select", "*"),
            ("order", "timestamp.desc"),
        ]
        if flt.chat_type:
            params.append(("chat_type", f"eq.{flt.chat_type}"))
        if flt.session_id:
            params.append(("session_id", f"eq.{flt.session_id}"))
        if flt.start:
            params.append(("timestamp", f"gte.{flt.start.isoformat()}"))
        if flt.end:
            params.append(("timestamp", f"lte.{flt.end.isoformat()}"))
        if flt.limit is not None:
            params.append(("limit", str(flt.limit)))
        if flt.offset:
            params.append(("offset", str(flt.offset)))

        resp = await self._request("GET", "/rest/v1/chat_history", params=params)
        return [_row_to_entry(r) for r in resp.json()]

    async def search_history(
        self, user_id: str, term: str, chat_type: str | None = None
    ) -> list[HistoryEntry]:
        params: list[tuple[str, str]] = [
            ("user_id", f"eq.{user_id}"),
            ("select", "*"),
            ("message_content", f"fts.{term}"),
            ("order", "timestamp.desc"),
        ]
        if chat_type:
            params.append(("chat_type", f"eq.{chat_type}"))
        resp = await self._request("GET", "/rest/v1/chat_history", params=params)
        return [_row_to_entry(r) for r in resp.json()]

    async def delete_history_entry(self, user_id: str, entry_id: str) -> None:
        await self._request(
            "DELETE",
            "/rest/v1/chat_history",
            params={"user_id": f"eq.{user_id}", "id": f"eq.{entry_id}"},
        )

    async def delete_session_history(self, user_id: str, session_id: str) -> None:
        await self._request(
            "DELETE",
            "/rest/v1/chat_history",
            params={"user_id": f"eq.{user_id}", "session_id": f"eq.{session_id}"},
        )

    async def delete_all_history(self, user_id: str) -> None:
        await self._request(
            "DELETE", "/rest/v1/chat_history", params={"user_id": f"eq.{user_id}"}
        )

    # ── Blobs ────────────────────────────────────────────────────

    async def upload_media(
        self, user_id: str, session_id: str, filename: str, data: bytes, content_type: str
    ) -> str:
        path = f"{user_id}/{session_id}/{filename}"
        await self._request(
            "POST",
            f"/storage/v1/object/{MEDIA_BUCKET}/{path}",
            content=data,
            headers={
                "Content-Type": content_type,
                "Cache-Control": "3600",
                "x-upsert": "false",
            },
        )
        return f"{self.url}/storage/v1/object/public/{MEDIA_BUCKET}/{path}"


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _json_field(value):
    # jsonb columns come back decoded; text columns do not.
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _row_to_session(row: dict) -> StoredSession:
    return StoredSession(
        session_id=row["session_id"],
        title=row.get("title") or "",
        messages=_json_field(row.get("messages")) or [],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        renamed=bool(row.get("renamed")),
    )


def _row_to_entry(row: dict) -> HistoryEntry:
    return HistoryEntry(
        id=str(row.get("id", "")),
        session_id=row["session_id"],
        chat_type=row["chat_type"],
        message_content=_json_field(row.get("message_content")) or {},
        metadata=_json_field(row.get("metadata")) or {},
        timestamp=_parse_ts(row["timestamp"]),
    )
