"""FastAPI web server for aichat-engine."""

import asyncio
import json
import logging
from datetime import datetime

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel

from .commands import CommandPalette
from .core import CHAT_TYPES, Attachment, HistoryFilter, message_to_dict
from .engine import ChatEngine
from .errors import InvalidStateError, NotFoundError
from .export import session_to_json, session_to_markdown

logger = logging.getLogger(__name__)

app = FastAPI(title="aichat-engine", version="0.1.0")

palette = CommandPalette()

# Engine cache (built and hydrated on first request)
_engine: ChatEngine | None = None
# Keeps streaming send tasks referenced until they finish
_background: set[asyncio.Task] = set()


def build_engine() -> ChatEngine:
    return ChatEngine.from_config()


async def _get_engine() -> ChatEngine:
    """Lazily build, hydrate and cache the engine."""
    global _engine
    if _engine is None:
        engine = build_engine()
        await engine.start()
        _engine = engine
        logger.info("Engine ready with %d sessions", len(engine.sessions))
    return _engine


def _session_to_dict(session, active_id: str | None = None) -> dict:
    """Convert a Session dataclass to a JSON-serializable summary."""
    return {
        "id": session.id,
        "title": session.title,
        "message_count": len(session.messages),
        "created": session.created.isoformat(),
        "updated": session.updated.isoformat(),
        "active": session.id == active_id,
    }


def _entry_to_dict(entry) -> dict:
    return {
        "id": entry.id,
        "session_id": entry.session_id,
        "chat_type": entry.chat_type,
        "message_content": entry.message_content,
        "metadata": entry.metadata,
        "timestamp": entry.timestamp.isoformat(),
    }


def _get_session(engine: ChatEngine, session_id: str):
    try:
        return engine.sessions.get(session_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")


def _check_chat_type(chat_type: str | None) -> None:
    if chat_type is not None and chat_type not in CHAT_TYPES:
        raise HTTPException(
            status_code=400, detail=f"chat_type must be one of: {', '.join(CHAT_TYPES)}"
        )


class AttachmentBody(BaseModel):
    kind: str = "file"
    url: str
    name: str = ""


class SendBody(BaseModel):
    content: str
    model: str | None = None
    attachments: list[AttachmentBody] = []
    stream: bool = False


class RenameBody(BaseModel):
    title: str


class ActiveBody(BaseModel):
    session_id: str | None = None


class RagBody(BaseModel):
    enabled: bool


class SelectBody(BaseModel):
    prefix: str


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/status")
async def get_status():
    """Return identity, persistence and mode flags."""
    engine = await _get_engine()
    return {
        "authenticated": engine.identity.authenticated,
        "active_session": engine.sessions.active_id,
        "rag_mode": engine.rag_mode,
        "persistence_error": engine.synchronizer.last_error,
        "loading": engine.synchronizer.loading,
    }


@app.get("/api/sessions")
async def get_sessions(
    search: str | None = Query(None, description="Search in titles and messages"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Return sessions, most recently updated first."""
    engine = await _get_engine()
    sessions = engine.sessions.list_sessions()

    if search:
        search_lower = search.lower()
        sessions = [
            s for s in sessions
            if search_lower in s.title.lower()
            or any(search_lower in m.content.lower() for m in s.messages)
        ]

    total = len(sessions)
    sessions = sessions[offset: offset + limit]
    active_id = engine.sessions.active_id

    return {
        "total": total,
        "sessions": [_session_to_dict(s, active_id) for s in sessions],
    }


@app.post("/api/sessions", status_code=201)
async def create_session():
    engine = await _get_engine()
    session_id = await engine.create_session()
    return _session_to_dict(engine.sessions.get(session_id), session_id)


@app.put("/api/active")
async def set_active(body: ActiveBody):
    engine = await _get_engine()
    try:
        engine.set_active(body.session_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"active_session": engine.sessions.active_id}


@app.put("/api/rag")
async def set_rag_mode(body: RagBody):
    engine = await _get_engine()
    engine.rag_mode = body.enabled
    return {"rag_mode": engine.rag_mode}


@app.get("/api/session/{session_id}")
async def get_session(session_id: str):
    """Return full messages for a session plus any reply still streaming."""
    engine = await _get_engine()
    session = _get_session(engine, session_id)
    return {
        "session": _session_to_dict(session, engine.sessions.active_id),
        "messages": [message_to_dict(m) for m in session.messages],
        "draft": engine.partial(session_id),
        "state": engine.accumulator.state(session_id).value,
    }


@app.patch("/api/session/{session_id}")
async def rename_session(session_id: str, body: RenameBody):
    engine = await _get_engine()
    try:
        await engine.rename_session(session_id, body.title)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return _session_to_dict(engine.sessions.get(session_id), engine.sessions.active_id)


@app.delete("/api/session/{session_id}", status_code=204)
async def delete_session(session_id: str):
    engine = await _get_engine()
    try:
        await engine.delete_session(session_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


@app.post("/api/session/{session_id}/messages")
async def send_message(session_id: str, body: SendBody):
    """Send user input to a session.

    With ``stream`` set, the reply is delivered as server-sent events:
    ``partial`` events carry the text so far, then one ``done`` (or
    ``error``) event carries the final message.
    """
    engine = await _get_engine()
    _get_session(engine, session_id)
    attachments = [Attachment(kind=a.kind, url=a.url, name=a.name) for a in body.attachments]

    if not body.stream:
        try:
            message = await engine.send(
                body.content, model=body.model, session_id=session_id, attachments=attachments
            )
        except InvalidStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"message": message_to_dict(message) if message else None}

    if engine.accumulator.is_streaming(session_id):
        raise HTTPException(status_code=409, detail="Session is already streaming")

    queue: asyncio.Queue = asyncio.Queue()

    def on_partial(sid: str, partial: str):
        if sid == session_id:
            queue.put_nowait(("partial", partial))

    remove = engine.accumulator.add_listener(on_partial)

    async def run():
        try:
            message = await engine.send(
                body.content, model=body.model, session_id=session_id, attachments=attachments
            )
            queue.put_nowait(("done", message_to_dict(message) if message else None))
        except (InvalidStateError, NotFoundError) as e:
            queue.put_nowait(("error", str(e)))
        except Exception as e:
            logger.error("Streaming send for %s failed: %s", session_id, e)
            queue.put_nowait(("error", str(e)))
        finally:
            remove()

    task = asyncio.create_task(run())
    _background.add(task)
    task.add_done_callback(_background.discard)

    async def events():
        while True:
            kind, payload = await queue.get()
            yield f"event: {kind}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"
            if kind != "partial":
                break

    return StreamingResponse(events(), media_type="text/event-stream")


@app.get("/api/commands")
async def get_commands(text: str = Query("", description="Current input text")):
    """Return command palette state for the current input."""
    return {
        "open": palette.is_open(text),
        "suggestions": [
            {"label": s.label, "description": s.description, "prefix": s.prefix}
            for s in palette.matches(text)
        ],
    }


@app.post("/api/commands/select")
async def select_command(body: SelectBody):
    engine = await _get_engine()
    try:
        choice = palette.select(body.prefix)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown command: {body.prefix}")
    if choice.rag_mode:
        engine.rag_mode = True
    return {"text": choice.text, "rag_mode": engine.rag_mode}


@app.get("/api/history")
async def get_history(
    chat_type: str | None = Query(None, description="text, image, video or knowledge_search"),
    session_id: str | None = Query(None),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Return per-turn history entries, newest first."""
    _check_chat_type(chat_type)
    engine = await _get_engine()
    entries = await engine.indexer.entries(HistoryFilter(
        chat_type=chat_type,
        session_id=session_id,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    ))
    return {"entries": [_entry_to_dict(e) for e in entries]}


@app.get("/api/history/search")
async def search_history(
    q: str = Query(..., description="Text to search for"),
    chat_type: str | None = Query(None),
):
    _check_chat_type(chat_type)
    engine = await _get_engine()
    entries = await engine.indexer.search(q, chat_type)
    return {"entries": [_entry_to_dict(e) for e in entries]}


@app.delete("/api/history/{entry_id}", status_code=204)
async def delete_history_entry(entry_id: str):
    engine = await _get_engine()
    if not await engine.delete_history_entry(entry_id):
        raise HTTPException(status_code=503, detail="History storage unavailable")


@app.delete("/api/history", status_code=204)
async def clear_history():
    engine = await _get_engine()
    if not await engine.clear_history():
        raise HTTPException(status_code=503, detail="History storage unavailable")


@app.get("/api/history/sessions")
async def recent_history_sessions(limit: int = Query(10, ge=1, le=100)):
    engine = await _get_engine()
    return {"sessions": await engine.indexer.recent_sessions(limit)}


@app.get("/api/history/stats")
async def history_stats():
    engine = await _get_engine()
    stats = await engine.indexer.stats()
    if stats is None:
        return None
    return {
        "total_chats": stats.total_chats,
        "text_chats": stats.text_chats,
        "image_chats": stats.image_chats,
        "video_chats": stats.video_chats,
        "knowledge_search_chats": stats.knowledge_search_chats,
        "total_sessions": stats.total_sessions,
        "first_chat": stats.first_chat.isoformat() if stats.first_chat else None,
        "last_chat": stats.last_chat.isoformat() if stats.last_chat else None,
    }


@app.get("/api/export/{session_id}")
async def export_session(
    session_id: str,
    format: str = Query("md", description="Export format: md or json"),
):
    """Export a session as Markdown or JSON."""
    engine = await _get_engine()
    session = _get_session(engine, session_id)

    safe_title = "".join(c if c.isalnum() or c in "-_ " else "" for c in session.title)[:50]

    if format == "json":
        content = session_to_json(session)
        return Response(
            content=content,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{safe_title}.json"'},
        )
    else:
        content = session_to_markdown(session)
        return Response(
            content=content,
            media_type="text/markdown",
            headers={"Content-Disposition": f'attachment; filename="{safe_title}.md"'},
        )
