"""Abstract base class for durable chat stores."""

from abc import ABC, abstractmethod

from .core import HistoryEntry, HistoryFilter, StoredSession


class DurableStore(ABC):
    """Base class for persistent backends.

    Two row shapes are kept per user: "chat storage" rows holding a whole
    session, and legacy "chat history" rows holding one turn each. Media
    blobs are stored alongside and exposed by public URL. Implementations
    raise PersistenceError on any failure.
    """

    name: str  # "sqlite", "rest"

    # ── Chat storage rows ────────────────────────────────────────

    @abstractmethod
    async def get_session(self, user_id: str, session_id: str) -> StoredSession | None:
        ...

    @abstractmethod
    async def list_sessions(self, user_id: str) -> list[StoredSession]:
        """Return all session rows for a user, newest update first."""
        ...

    @abstractmethod
    async def upsert_session(self, user_id: str, record: StoredSession) -> None:
        """Update the row for (user, session id) or insert it."""
        ...

    @abstractmethod
    async def update_session_title(self, user_id: str, session_id: str, title: str) -> None:
        ...

    @abstractmethod
    async def delete_session(self, user_id: str, session_id: str) -> None:
        ...

    # ── Chat history rows ────────────────────────────────────────

    @abstractmethod
    async def insert_history(self, user_id: str, entry: HistoryEntry) -> HistoryEntry:
        """Insert one turn; returns it with its assigned id."""
        ...

    @abstractmethod
    async def query_history(self, user_id: str, flt: HistoryFilter) -> list[HistoryEntry]:
        """Return matching turns, newest first."""
        ...

    @abstractmethod
    async def search_history(
        self, user_id: str, term: str, chat_type: str | None = None
    ) -> list[HistoryEntry]:
        """Full-text search over turn content, newest first."""
        ...

    @abstractmethod
    async def delete_history_entry(self, user_id: str, entry_id: str) -> None:
        ...

    @abstractmethod
    async def delete_session_history(self, user_id: str, session_id: str) -> None:
        ...

    @abstractmethod
    async def delete_all_history(self, user_id: str) -> None:
        ...

    # ── Blobs ────────────────────────────────────────────────────

    @abstractmethod
    async def upload_media(
        self, user_id: str, session_id: str, filename: str, data: bytes, content_type: str
    ) -> str:
        """Store a generated media file and return its public URL."""
        ...
