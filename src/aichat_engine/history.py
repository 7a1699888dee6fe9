"""Read-only queries over durable per-turn history."""

import logging

from .core import ChatStats, HistoryEntry, HistoryFilter, Identity
from .durable import DurableStore

logger = logging.getLogger(__name__)


class HistoryIndexer:
    """Filter, search and summarize a user's chat history.

    Nothing here writes. Unauthenticated callers and backend failures get
    an empty list (or None for stats) instead of an exception.
    """

    def __init__(self, durable: DurableStore, identity: Identity | None = None):
        self.durable = durable
        self.identity = identity or Identity.anonymous()

    @property
    def enabled(self) -> bool:
        return self.identity.authenticated and bool(self.identity.user_id)

    async def entries(self, flt: HistoryFilter | None = None) -> list[HistoryEntry]:
        if not self.enabled:
            return []
        try:
            return await self.durable.query_history(self.identity.user_id, flt or HistoryFilter())
        except Exception as e:
            logger.error("Failed to fetch chat history: %s", e)
            return []

    async def session_entries(self, session_id: str) -> list[HistoryEntry]:
        return await self.entries(HistoryFilter(session_id=session_id))

    async def recent_sessions(self, limit: int = 10) -> list[str]:
        """Unique session ids, most recent activity first."""
        # Over-fetch so repeated turns of one session do not crowd out others.
        entries = await self.entries(HistoryFilter(limit=limit * 5))
        seen: list[str] = []
        for entry in entries:
            if entry.session_id not in seen:
                seen.append(entry.session_id)
            if len(seen) == limit:
                break
        return seen

    async def search(self, term: str, chat_type: str | None = None) -> list[HistoryEntry]:
        if not self.enabled or not term.strip():
            return []
        try:
            return await self.durable.search_history(self.identity.user_id, term.strip(), chat_type)
        except Exception as e:
            logger.error("Failed to search chat history: %s", e)
            return []

    async def stats(self) -> ChatStats | None:
        if not self.enabled:
            return None
        try:
            entries = await self.durable.query_history(self.identity.user_id, HistoryFilter())
        except Exception as e:
            logger.error("Failed to fetch chat stats: %s", e)
            return None

        stats = ChatStats(total_chats=len(entries))
        for entry in entries:
            if entry.chat_type == "text":
                stats.text_chats += 1
            elif entry.chat_type == "image":
                stats.image_chats += 1
            elif entry.chat_type == "video":
                stats.video_chats += 1
            elif entry.chat_type == "knowledge_search":
                stats.knowledge_search_chats += 1
        stats.total_sessions = len({e.session_id for e in entries})
        if entries:
            stats.first_chat = min(e.timestamp for e in entries)
            stats.last_chat = max(e.timestamp for e in entries)
        return stats
