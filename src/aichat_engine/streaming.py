"""Streaming accumulator: folds chat-completion fragments into a session.

A draft lives outside the session's message list until the stream ends.
Completion appends one assistant message built from the whole buffer;
failure discards the buffer and appends one notice instead. Drafts are
keyed by the session that started them, so the active-session pointer
may change freely while a stream is in flight.

State per session::

    IDLE -> SENDING -> STREAMING -> FINALIZING -> IDLE
               \\            \\
                +-> ERRORING -+-> IDLE
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable

from .core import Message, utc_now
from .errors import InvalidStateError, NotFoundError
from .store import SessionStore

logger = logging.getLogger(__name__)

PartialListener = Callable[[str, str], None]


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    ERRORING = "erroring"


@dataclass
class Draft:
    """In-progress assistant text for one session."""

    session_id: str
    state: StreamState = StreamState.SENDING
    fragments: list[str] = field(default_factory=list)

    @property
    def content(self) -> str:
        return "".join(self.fragments)


@dataclass
class StreamResult:
    """Outcome of consume(): the appended message and whether the stream succeeded."""

    message: Message | None
    ok: bool


class StreamingAccumulator:
    def __init__(self, store: SessionStore):
        self.store = store
        self._drafts: dict[str, Draft] = {}
        self._listeners: list[PartialListener] = []

    def add_listener(self, listener: PartialListener) -> Callable[[], None]:
        """Receive (session_id, partial_text) after every fragment."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def state(self, session_id: str) -> StreamState:
        draft = self._drafts.get(session_id)
        return draft.state if draft else StreamState.IDLE

    def is_streaming(self, session_id: str) -> bool:
        return session_id in self._drafts

    def partial(self, session_id: str) -> str | None:
        draft = self._drafts.get(session_id)
        return draft.content if draft else None

    # ── Transitions ──────────────────────────────────────────────

    def begin(self, session_id: str) -> Draft:
        if session_id in self._drafts:
            raise InvalidStateError(f"Session {session_id} is already streaming")
        draft = Draft(session_id=session_id)
        self._drafts[session_id] = draft
        return draft

    def feed(self, session_id: str, fragment: str) -> str:
        draft = self._require(session_id)
        if draft.state not in (StreamState.SENDING, StreamState.STREAMING):
            raise InvalidStateError(f"Cannot feed session {session_id} in state {draft.state.value}")
        draft.state = StreamState.STREAMING
        draft.fragments.append(fragment)
        partial = draft.content
        for listener in list(self._listeners):
            try:
                listener(session_id, partial)
            except Exception as e:
                logger.error("Partial listener failed for %s: %s", session_id, e)
        return partial

    def complete(self, session_id: str, model: str | None = None) -> Message | None:
        """Turn the draft into a final assistant message and append it.

        Returns None when the session was deleted while streaming.
        """
        draft = self._require(session_id)
        draft.state = StreamState.FINALIZING
        del self._drafts[session_id]
        message = Message(role="assistant", content=draft.content, timestamp=utc_now(), model=model)
        return self._append(session_id, message)

    def fail(self, session_id: str, notice: str, model: str | None = None) -> Message | None:
        """Drop any partial text and append the failure notice instead."""
        draft = self._drafts.pop(session_id, None)
        if draft is not None:
            draft.state = StreamState.ERRORING
            logger.debug("Discarded %d fragments for %s", len(draft.fragments), session_id)
        message = Message(role="assistant", content=notice, timestamp=utc_now(), model=model)
        return self._append(session_id, message)

    def discard(self, session_id: str) -> None:
        self._drafts.pop(session_id, None)

    async def consume(
        self,
        session_id: str,
        fragments: AsyncIterator[str],
        notice: str,
        model: str | None = None,
    ) -> StreamResult:
        """Run a fragment stream for a session started with begin().

        Any exception raised by the fragment iterator counts as a transport
        failure. If the draft is discarded mid-stream the remaining
        fragments are ignored and nothing is appended.
        """
        draft = self._require(session_id)
        try:
            async for fragment in fragments:
                if self._drafts.get(session_id) is not draft:
                    return StreamResult(None, ok=False)
                self.feed(session_id, fragment)
        except Exception as e:
            logger.error("Streaming error for session %s: %s", session_id, e)
            if self._drafts.get(session_id) is not draft:
                return StreamResult(None, ok=False)
            return StreamResult(self.fail(session_id, notice, model=model), ok=False)
        if self._drafts.get(session_id) is not draft:
            return StreamResult(None, ok=False)
        return StreamResult(self.complete(session_id, model=model), ok=True)

    # ── Helpers ──────────────────────────────────────────────────

    def _require(self, session_id: str) -> Draft:
        draft = self._drafts.get(session_id)
        if draft is None:
            raise InvalidStateError(f"No stream in progress for session {session_id}")
        return draft

    def _append(self, session_id: str, message: Message) -> Message | None:
        try:
            return self.store.append_message(session_id, message)
        except NotFoundError:
            logger.warning("Session %s was deleted before its reply arrived", session_id)
            return None
