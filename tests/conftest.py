"""Shared test fixtures for aichat-engine."""

from datetime import datetime, timezone

import pytest

from aichat_engine.backends.sqlite import SQLiteStore
from aichat_engine.core import HistoryEntry, Identity
from aichat_engine.clients import KnowledgeAnswer
from aichat_engine.engine import ChatEngine
from aichat_engine.errors import TransportError
from aichat_engine.persistence import PersistenceSynchronizer


class FakeChat:
    """Chat client whose stream yields canned fragments, then optionally fails."""

    def __init__(self, fragments=("Hel", "lo", "!"), error=None):
        self.fragments = list(fragments)
        self.error = error
        self.calls = []

    async def stream(self, messages, model):
        self.calls.append((list(messages), model))
        for fragment in self.fragments:
            yield fragment
        if self.error is not None:
            raise self.error


class FakeImages:
    def __init__(self, urls=("https://cdn.test/img-1.png",), error=None):
        self.urls = list(urls)
        self.error = error
        self.calls = []

    async def generate(self, model, prompt, count=1, size="1024x1024"):
        self.calls.append((model, prompt, count, size))
        if self.error is not None:
            raise self.error
        return list(self.urls)

    async def download(self, url):
        return b"\x89PNG fake image bytes"


class FakeVideos:
    def __init__(self, urls=("https://cdn.test/clip.mp4",), error=None):
        self.urls = list(urls)
        self.error = error
        self.calls = []

    async def generate(self, model, prompt, ratio="9:16", quality="720p", duration=8):
        self.calls.append((model, prompt, ratio, quality, duration))
        if self.error is not None:
            raise self.error
        return list(self.urls)


class FakeKnowledge:
    def __init__(self, answer="From the docs.", error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    async def query(self, query, session_id):
        self.calls.append((query, session_id))
        if self.error is not None:
            raise self.error
        return KnowledgeAnswer(answer=self.answer, session_id=session_id, sources=["doc.md"])


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteStore(
        db_path=tmp_path / "chat.db",
        media_path=tmp_path / "media",
        media_url="http://media.test",
    )


@pytest.fixture
def identity():
    return Identity.user("user-1")


@pytest.fixture
def synchronizer(sqlite_store, identity):
    return PersistenceSynchronizer(sqlite_store, identity)


@pytest.fixture
def fakes():
    return {
        "chat": FakeChat(),
        "images": FakeImages(),
        "videos": FakeVideos(),
        "knowledge": FakeKnowledge(),
    }


@pytest.fixture
def make_engine(synchronizer, fakes):
    """Build an engine over the temp SQLite store; keyword args override fakes."""

    def build(**overrides):
        clients = {**fakes, **overrides}
        return ChatEngine(
            synchronizer=synchronizer,
            chat=clients["chat"],
            images=clients["images"],
            videos=clients["videos"],
            knowledge=clients["knowledge"],
            chat_model="provider-5/gpt-4o",
            image_model="provider-3/FLUX.1-schnell",
            video_model="provider-6/wan-2.1",
        )

    return build


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def transport_error():
    return TransportError("connection reset")


@pytest.fixture
def history_entries():
    """Two legacy per-turn rows of one session, plus one of another session."""
    return [
        HistoryEntry(
            id="h1",
            session_id="s1",
            chat_type="text",
            message_content={"prompt": "hi", "response": "hello", "model": "m", "type": "conversation"},
            timestamp=datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
        ),
        HistoryEntry(
            id="h2",
            session_id="s1",
            chat_type="text",
            message_content={"prompt": "bye", "response": "goodbye", "model": "m", "type": "conversation"},
            timestamp=datetime(2025, 1, 15, 10, 5, 0, tzinfo=timezone.utc),
        ),
        HistoryEntry(
            id="h3",
            session_id="s2",
            chat_type="image",
            message_content={
                "prompt": "a red fox",
                "image_urls": ["https://cdn.test/fox.png"],
                "model": "provider-3/FLUX.1-schnell",
                "type": "image_generation",
                "image_count": 1,
            },
            timestamp=datetime(2025, 1, 16, 9, 0, 0, tzinfo=timezone.utc),
        ),
    ]
