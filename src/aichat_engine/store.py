"""In-memory table of conversation sessions.

The store owns session state only. It knows nothing about the durable
schema or the network; callers mirror mutations to persistence themselves.
UI layers observe changes through subscribe().
"""

import logging
import time
from typing import Callable, Iterable, Optional

from .core import DEFAULT_TITLE, Message, Session, derive_title, utc_now
from .errors import NotFoundError

logger = logging.getLogger(__name__)

Listener = Callable[[str, Optional[str]], None]


def _time_id(taken) -> str:
    """Epoch-millisecond id, bumped until it is not in ``taken``."""
    candidate = int(time.time() * 1000)
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)


class SessionStore:
    """Ordered mapping of session id to Session plus the active pointer."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._active_id: str | None = None
        self._listeners: list[Listener] = []

    # ── Observation ──────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str, session_id: str | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session_id)
            except Exception as e:
                logger.error("Session listener failed on %s: %s", event, e)

    # ── Queries ──────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def active_id(self) -> str | None:
        return self._active_id

    def active(self) -> Session | None:
        if self._active_id is None:
            return None
        return self._sessions.get(self._active_id)

    def get(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise NotFoundError(session_id) from None

    def list_sessions(self) -> list[Session]:
        """All sessions, most recently updated first."""
        return sorted(self._sessions.values(), key=lambda s: s.updated, reverse=True)

    # ── Mutations ────────────────────────────────────────────────

    def create_session(self, title: str = DEFAULT_TITLE) -> str:
        """Insert an empty session at the front and make it active."""
        session_id = _time_id(self._sessions)
        now = utc_now()
        session = Session(id=session_id, title=title, created=now, updated=now)
        self._sessions = {session_id: session, **self._sessions}
        self._active_id = session_id
        logger.debug("Created session %s", session_id)
        self._notify("created", session_id)
        return session_id

    def append_message(self, session_id: str, message: Message) -> Message:
        """Append a finalized message to a session.

        Assigns an id when the message has none, keeps stored timestamps
        non-decreasing and derives the title from the first message unless
        the session was renamed.
        """
        session = self.get(session_id)

        ids = {m.id for m in session.messages}
        if not message.id:
            message.id = _time_id(ids)
        elif message.id in ids:
            raise ValueError(f"Duplicate message id {message.id!r} in session {session_id}")

        if session.messages and message.timestamp < session.messages[-1].timestamp:
            message.timestamp = session.messages[-1].timestamp

        first = not session.messages
        session.messages.append(message)
        session.updated = max(utc_now(), message.timestamp, session.created)
        if first and not session.renamed:
            session.title = derive_title(message.content)

        self._notify("appended", session_id)
        return message

    def rename_session(self, session_id: str, title: str) -> None:
        session = self.get(session_id)
        session.title = title
        session.renamed = True
        session.updated = max(utc_now(), session.updated)
        self._notify("renamed", session_id)

    def delete_session(self, session_id: str) -> None:
        if session_id not in self._sessions:
            raise NotFoundError(session_id)
        del self._sessions[session_id]
        if self._active_id == session_id:
            self._active_id = None
        self._notify("deleted", session_id)

    def set_active(self, session_id: str | None) -> None:
        if session_id is not None and session_id not in self._sessions:
            raise NotFoundError(session_id)
        self._active_id = session_id
        self._notify("activated", session_id)

    def replace_all(self, sessions: Iterable[Session]) -> None:
        """Replace the table with rehydrated sessions; newest becomes active."""
        ordered = sorted(sessions, key=lambda s: s.updated, reverse=True)
        self._sessions = {s.id: s for s in ordered}
        self._active_id = ordered[0].id if ordered else None
        logger.info("Loaded %d sessions", len(ordered))
        self._notify("loaded", self._active_id)
