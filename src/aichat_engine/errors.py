"""Exception types raised by the conversation engine."""


class ChatEngineError(Exception):
    """Base class for aichat-engine errors."""


class NotFoundError(ChatEngineError):
    """An operation referenced a session id the store does not hold."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class InvalidStateError(ChatEngineError):
    """A second stream was started for a session that is already streaming."""


class TransportError(ChatEngineError):
    """A generation or knowledge-base collaborator failed."""


class PersistenceError(ChatEngineError):
    """The durable store failed."""
