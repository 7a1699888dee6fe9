"""Mirror sessions to the durable store and rebuild them on startup.

Persistence is best-effort. Every operation here catches and logs
failures, records them in ``last_error`` and returns a neutral result;
nothing raises into the conversation flow. Callers without an
authenticated identity get a silent no-op.

Two durable shapes exist. "Chat storage" rows hold a whole session and
are preferred. Older data lives only as "chat history" rows, one per
turn; load_all() folds those back into sessions when no storage rows
exist.
"""

import json
import logging
import time
from collections import defaultdict
from datetime import timedelta

from .config import KNOWLEDGE_MODEL
from .core import (
    RESTORED_TITLE,
    Attachment,
    HistoryEntry,
    HistoryFilter,
    Identity,
    Message,
    Session,
    StoredSession,
    derive_title,
    message_from_dict,
    message_to_dict,
)
from .durable import DurableStore

logger = logging.getLogger(__name__)

DEFAULT_RESTORED_MODEL = "gpt-4"
REPLY_OFFSET = timedelta(seconds=1)


class PersistenceSynchronizer:
    def __init__(
        self,
        durable: DurableStore,
        identity: Identity | None = None,
        history_limit: int | None = None,
    ):
        self.durable = durable
        self.identity = identity or Identity.anonymous()
        self.history_limit = history_limit
        self.last_error: str | None = None
        self.loading = False

    @property
    def enabled(self) -> bool:
        return self.identity.authenticated and bool(self.identity.user_id)

    def clear_error(self) -> None:
        self.last_error = None

    def _failed(self, action: str, error: Exception) -> None:
        logger.error("Failed to %s: %s", action, error)
        self.last_error = str(error) or error.__class__.__name__

    # ── Session mirror ───────────────────────────────────────────

    async def save(self, session: Session) -> bool:
        """Upsert the session's storage row. Saving unchanged content is a no-op."""
        if not self.enabled:
            logger.debug("Not authenticated, skipping save of %s", session.id)
            return True
        record = StoredSession(
            session_id=session.id,
            title=session.title,
            messages=[message_to_dict(m) for m in session.messages],
            created_at=session.created,
            updated_at=session.updated,
            renamed=session.renamed,
        )
        try:
            await self.durable.upsert_session(self.identity.user_id, record)
        except Exception as e:
            self._failed(f"save session {session.id}", e)
            return False
        logger.debug("Saved session %s with %d messages", session.id, len(session.messages))
        return True

    async def rename(self, session_id: str, title: str) -> bool:
        if not self.enabled:
            return True
        try:
            await self.durable.update_session_title(self.identity.user_id, session_id, title)
        except Exception as e:
            self._failed(f"rename session {session_id}", e)
            return False
        return True

    async def delete(self, session_id: str) -> bool:
        """Remove the session row and its per-turn history."""
        if not self.enabled:
            return True
        try:
            await self.durable.delete_session(self.identity.user_id, session_id)
            await self.durable.delete_session_history(self.identity.user_id, session_id)
        except Exception as e:
            self._failed(f"delete session {session_id}", e)
            return False
        return True

    async def delete_history_entry(self, entry_id: str) -> bool:
        if not self.enabled:
            return True
        try:
            await self.durable.delete_history_entry(self.identity.user_id, entry_id)
        except Exception as e:
            self._failed(f"delete history entry {entry_id}", e)
            return False
        return True

    async def clear_history(self) -> bool:
        """Remove every per-turn history entry of the current user."""
        if not self.enabled:
            return True
        try:
            await self.durable.delete_all_history(self.identity.user_id)
        except Exception as e:
            self._failed("clear history", e)
            return False
        return True

    async def load_all(self) -> list[Session]:
        """Rebuild every session of the current user, newest update first."""
        if not self.enabled:
            logger.debug("Not authenticated, skipping history load")
            return []

        self.loading = True
        self.last_error = None
        try:
            records = await self.durable.list_sessions(self.identity.user_id)
            if records:
                sessions = [session_from_record(r) for r in records]
                logger.info("Loaded %d sessions from chat storage", len(sessions))
            else:
                entries = await self.durable.query_history(
                    self.identity.user_id, HistoryFilter(limit=self.history_limit)
                )
                sessions = sessions_from_history(entries)
                logger.info(
                    "Restored %d sessions from %d history entries", len(sessions), len(entries)
                )
        except Exception as e:
            self._failed("load sessions", e)
            return []
        finally:
            self.loading = False

        sessions.sort(key=lambda s: s.updated, reverse=True)
        return sessions

    # ── Per-turn history ─────────────────────────────────────────

    async def _insert(self, entry: HistoryEntry) -> bool:
        if not self.enabled:
            return True
        try:
            await self.durable.insert_history(self.identity.user_id, entry)
        except Exception as e:
            self._failed(f"store {entry.chat_type} history entry", e)
            return False
        return True

    async def store_text_conversation(
        self, session_id: str, prompt: str, response: str, model: str
    ) -> bool:
        return await self._insert(HistoryEntry(
            session_id=session_id,
            chat_type="text",
            message_content={
                "prompt": prompt,
                "response": response,
                "model": model,
                "type": "conversation",
            },
            metadata={
                "model": model,
                "response_length": len(response),
                "prompt_length": len(prompt),
            },
        ))

    async def store_image_generation(
        self, session_id: str, prompt: str, image_urls: list[str], model: str
    ) -> bool:
        return await self._insert(HistoryEntry(
            session_id=session_id,
            chat_type="image",
            message_content={
                "prompt": prompt,
                "image_urls": image_urls,
                "model": model,
                "type": "image_generation",
                "image_count": len(image_urls),
            },
            metadata={
                "model": model,
                "image_count": len(image_urls),
                "prompt_length": len(prompt),
                "image_urls": image_urls,
            },
        ))

    async def store_video_generation(
        self, session_id: str, prompt: str, video_urls: list[str], model: str
    ) -> bool:
        return await self._insert(HistoryEntry(
            session_id=session_id,
            chat_type="video",
            message_content={
                "prompt": prompt,
                "video_urls": video_urls,
                "model": model,
                "type": "video_generation",
                "video_count": len(video_urls),
            },
            metadata={
                "model": model,
                "video_count": len(video_urls),
                "prompt_length": len(prompt),
                "video_urls": video_urls,
            },
        ))

    async def store_knowledge_search(self, session_id: str, query: str, results) -> bool:
        count = len(results) if isinstance(results, list) else 1
        return await self._insert(HistoryEntry(
            session_id=session_id,
            chat_type="knowledge_search",
            message_content={
                "query": query,
                "results": results,
                "type": "knowledge_search",
                "result_count": count,
            },
            metadata={"query_length": len(query), "result_count": count},
        ))

    # ── Media ────────────────────────────────────────────────────

    async def upload_media(
        self, session_id: str, data: bytes, content_type: str = "image/png", filename: str | None = None
    ) -> str | None:
        """Upload generated media; returns its public URL, or None if not stored."""
        if not self.enabled:
            return None
        filename = filename or f"image-{int(time.time() * 1000)}.png"
        try:
            return await self.durable.upload_media(
                self.identity.user_id, session_id, filename, data, content_type
            )
        except Exception as e:
            self._failed(f"upload media for {session_id}", e)
            return None


# ── Shape reconciliation ─────────────────────────────────────────


def session_from_record(record: StoredSession) -> Session:
    """Convert a chat-storage row into a Session."""
    return Session(
        id=record.session_id,
        title=record.title,
        messages=[message_from_dict(m) for m in record.messages or []],
        created=record.created_at,
        updated=max(record.updated_at, record.created_at),
        renamed=record.renamed,
    )


def sessions_from_history(entries: list[HistoryEntry]) -> list[Session]:
    """Group per-turn history rows by session and expand them into messages."""
    groups: dict[str, list[HistoryEntry]] = defaultdict(list)
    for entry in entries:
        groups[entry.session_id].append(entry)

    sessions = []
    for session_id, group in groups.items():
        group.sort(key=lambda e: e.timestamp)
        title = RESTORED_TITLE
        messages: list[Message] = []
        for index, entry in enumerate(group):
            user_text, reply = _expand_entry(entry)
            if user_text:
                ts = entry.timestamp
                if messages and ts < messages[-1].timestamp:
                    ts = messages[-1].timestamp
                messages.append(Message(
                    id=f"{entry.id}_user",
                    role="user",
                    content=user_text,
                    timestamp=ts,
                ))
                if index == 0:
                    title = derive_title(user_text)
            if reply is not None:
                reply.id = f"{entry.id}_assistant"
                reply.timestamp = entry.timestamp + REPLY_OFFSET
                messages.append(reply)

        if not messages:
            continue
        sessions.append(Session(
            id=session_id,
            title=title,
            messages=messages,
            created=group[0].timestamp,
            updated=group[-1].timestamp,
        ))

    sessions.sort(key=lambda s: s.updated, reverse=True)
    return sessions


def _expand_entry(entry: HistoryEntry) -> tuple[str, Message | None]:
    """Return (user text, assistant reply) for one history row."""
    content = entry.message_content or {}
    model = content.get("model") or DEFAULT_RESTORED_MODEL

    if entry.chat_type == "text":
        reply = None
        if content.get("response"):
            reply = Message(role="assistant", content=content["response"], model=model)
        return content.get("prompt") or "", reply

    if entry.chat_type == "knowledge_search":
        reply = None
        results = content.get("results")
        if results:
            if isinstance(results, str):
                text = results
            elif isinstance(results, dict) and results.get("answer"):
                text = results["answer"]
            else:
                text = json.dumps(results)
            reply = Message(role="assistant", content=text, model=KNOWLEDGE_MODEL)
        return content.get("query") or "", reply

    if entry.chat_type == "image":
        reply = None
        urls = content.get("image_urls")
        if isinstance(urls, list):
            count = content.get("image_count") or len(urls)
            reply = Message(
                role="assistant",
                content=f"Generated {count} image{'s' if count > 1 else ''} based on your prompt.",
                model=model,
                attachments=[Attachment(kind="image", url=u, name=f"image-{i + 1}") for i, u in enumerate(urls)],
            )
        return content.get("prompt") or "", reply

    if entry.chat_type == "video":
        reply = None
        urls = content.get("video_urls")
        if isinstance(urls, list):
            count = content.get("video_count") or len(urls)
            reply = Message(
                role="assistant",
                content=f"Generated {count} video{'s' if count > 1 else ''} based on your prompt.",
                model=model,
                video_urls=list(urls),
            )
        return content.get("prompt") or "", reply

    logger.debug("Skipping history entry %s of unknown type %s", entry.id, entry.chat_type)
    return "", None
