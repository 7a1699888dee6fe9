"""Core data models for aichat-engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

TITLE_MAX_LEN = 50
DEFAULT_TITLE = "New Chat"
RESTORED_TITLE = "Restored Conversation"

CHAT_TYPES = ("text", "image", "video", "knowledge_search")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def derive_title(text: str) -> str:
    """Title for a session from its first message."""
    if len(text) <= TITLE_MAX_LEN:
        return text
    return text[:TITLE_MAX_LEN] + "..."


@dataclass
class Attachment:
    """A file or image attached to a user message, or produced for one."""

    kind: str  # "image" | "file"
    url: str
    name: str = ""


@dataclass
class Message:
    """A single finalized message within a chat session."""

    role: str  # "user" | "assistant"
    content: str
    id: str = ""
    timestamp: datetime = field(default_factory=utc_now)
    model: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    video_urls: list[str] = field(default_factory=list)


@dataclass
class Session:
    """A single chat conversation."""

    id: str
    title: str = DEFAULT_TITLE
    messages: list[Message] = field(default_factory=list)
    created: datetime = field(default_factory=utc_now)
    updated: datetime = field(default_factory=utc_now)
    renamed: bool = False  # explicit rename wins over first-message titles

    def snapshot(self) -> "Session":
        """Copy with its own message list, safe to hand to a background save."""
        return Session(
            id=self.id,
            title=self.title,
            messages=list(self.messages),
            created=self.created,
            updated=self.updated,
            renamed=self.renamed,
        )


@dataclass(frozen=True)
class Identity:
    """Who is calling; gates every durable operation."""

    user_id: Optional[str] = None
    authenticated: bool = False

    @classmethod
    def anonymous(cls) -> "Identity":
        return cls()

    @classmethod
    def user(cls, user_id: str) -> "Identity":
        return cls(user_id=user_id, authenticated=True)


@dataclass
class StoredSession:
    """A "chat storage" row: one session with its full message list."""

    session_id: str
    title: str
    messages: list[dict]  # message_to_dict() shape
    created_at: datetime
    updated_at: datetime
    renamed: bool = False


@dataclass
class HistoryEntry:
    """A "chat history" row: one prompt/response turn of a session."""

    session_id: str
    chat_type: str  # "text" | "image" | "video" | "knowledge_search"
    message_content: dict
    id: str = ""
    metadata: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class HistoryFilter:
    chat_type: Optional[str] = None
    session_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class ChatStats:
    total_chats: int = 0
    text_chats: int = 0
    image_chats: int = 0
    video_chats: int = 0
    knowledge_search_chats: int = 0
    total_sessions: int = 0
    first_chat: Optional[datetime] = None
    last_chat: Optional[datetime] = None


# ── Row (de)serialization ────────────────────────────────────────


def to_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_millis(ms: int | float) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def message_to_dict(msg: Message) -> dict:
    """Convert a Message to the JSON shape kept inside a chat-storage row."""
    data = {
        "id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "timestamp": to_millis(msg.timestamp),
    }
    if msg.model:
        data["model"] = msg.model
    if msg.attachments:
        data["attachments"] = [
            {"type": a.kind, "url": a.url, "name": a.name} for a in msg.attachments
        ]
    if msg.video_urls:
        data["videoUrls"] = list(msg.video_urls)
    return data


def message_from_dict(data: dict) -> Message:
    """Inverse of message_to_dict(); tolerant of missing optional keys."""
    ts = data.get("timestamp")
    if isinstance(ts, (int, float)):
        timestamp = from_millis(ts)
    elif isinstance(ts, str) and ts:
        timestamp = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    else:
        timestamp = utc_now()
    return Message(
        id=str(data.get("id", "")),
        role=data.get("role", "assistant"),
        content=data.get("content", ""),
        timestamp=timestamp,
        model=data.get("model"),
        attachments=[
            Attachment(kind=a.get("type", "file"), url=a.get("url", ""), name=a.get("name", ""))
            for a in data.get("attachments") or []
        ],
        video_urls=list(data.get("videoUrls") or []),
    )
