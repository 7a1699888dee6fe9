"""Conversation engine: routes user input and keeps sessions in sync.

Flow for one send: dispatch the input, append the user message, run the
chosen path, append exactly one assistant message, then queue the durable
save. Generation failures become a fixed notice in the conversation.
Persistence runs in the background in the order it was queued and never
holds up the next interaction.
"""

import asyncio
import contextlib
import functools
import logging
from typing import Awaitable, Callable

from .clients import ChatCompletionClient, ImageClient, KnowledgeBaseClient, VideoClient
from .commands import Route, dispatch
from .config import (
    IMAGE_MODELS,
    KNOWLEDGE_MODEL,
    get_chat_model,
    get_identity,
    get_image_model,
    get_video_model,
)
from .core import Attachment, Identity, Message, utc_now
from .errors import NotFoundError, TransportError
from .history import HistoryIndexer
from .persistence import PersistenceSynchronizer
from .store import SessionStore
from .streaming import StreamingAccumulator

logger = logging.getLogger(__name__)

CHAT_ERROR = "Sorry, I encountered an error while processing your request. Please try again."
IMAGE_ERROR = "Sorry, I encountered an error while generating the image. Please try again."
VIDEO_ERROR = "Sorry, I encountered an error while generating the video. Please try again."
KNOWLEDGE_ERROR = "Sorry, I encountered an error while searching the knowledge base. Please try again."
NO_IMAGE = "Sorry, no image was generated. Please try again."
NO_VIDEO = "Sorry, no video was generated. Please try again."

Job = Callable[[], Awaitable[object]]


class ChatEngine:
    def __init__(
        self,
        synchronizer: PersistenceSynchronizer,
        chat: ChatCompletionClient,
        images: ImageClient,
        videos: VideoClient,
        knowledge: KnowledgeBaseClient,
        sessions: SessionStore | None = None,
        chat_model: str | None = None,
        image_model: str | None = None,
        video_model: str | None = None,
        image_models=IMAGE_MODELS,
    ):
        self.sessions = sessions or SessionStore()
        self.accumulator = StreamingAccumulator(self.sessions)
        self.synchronizer = synchronizer
        self.indexer = HistoryIndexer(synchronizer.durable, synchronizer.identity)
        self.chat = chat
        self.images = images
        self.videos = videos
        self.knowledge = knowledge
        self.chat_model = chat_model or get_chat_model()
        self.image_model = image_model or get_image_model()
        self.video_model = video_model or get_video_model()
        self.image_models = image_models
        self.rag_mode = False

        self._writes: asyncio.Queue[Job] = asyncio.Queue()
        self._writer: asyncio.Task | None = None

    @classmethod
    def from_config(cls) -> "ChatEngine":
        from .backends import get_durable_store

        return cls(
            synchronizer=PersistenceSynchronizer(get_durable_store(), get_identity()),
            chat=ChatCompletionClient(),
            images=ImageClient(),
            videos=VideoClient(),
            knowledge=KnowledgeBaseClient(),
        )

    # ── Identity & lifecycle ─────────────────────────────────────

    @property
    def identity(self) -> Identity:
        return self.synchronizer.identity

    def set_identity(self, identity: Identity) -> None:
        self.synchronizer.identity = identity
        self.indexer.identity = identity

    async def start(self) -> None:
        """Rehydrate sessions from durable storage."""
        if not self.synchronizer.enabled:
            logger.info("Not authenticated, running memory-only")
            return
        self.sessions.replace_all(await self.synchronizer.load_all())

    async def flush(self) -> None:
        """Wait until every queued persistence job has run."""
        await self._writes.join()

    async def aclose(self) -> None:
        await self.flush()
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer

    def _schedule(self, job: Job) -> None:
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._run_writes())
        self._writes.put_nowait(job)

    async def _run_writes(self) -> None:
        while True:
            job = await self._writes.get()
            try:
                await job()
            except Exception as e:
                logger.error("Background persistence job failed: %s", e)
            finally:
                self._writes.task_done()

    async def _run_ordered(self, job: Job):
        """Queue a job behind pending writes and wait for its result."""
        result = asyncio.get_running_loop().create_future()

        async def wrapped():
            try:
                result.set_result(await job())
            except Exception as e:
                result.set_exception(e)

        self._schedule(wrapped)
        return await result

    def _schedule_save(self, session_id: str, record: Job | None = None) -> None:
        try:
            snapshot = self.sessions.get(session_id).snapshot()
        except NotFoundError:
            return

        async def job():
            await self.synchronizer.save(snapshot)
            if record is not None:
                await record()

        self._schedule(job)

    # ── Session operations ───────────────────────────────────────

    async def create_session(self) -> str:
        session_id = self.sessions.create_session()
        self._schedule_save(session_id)
        return session_id

    async def rename_session(self, session_id: str, title: str) -> None:
        self.sessions.rename_session(session_id, title)
        self._schedule(functools.partial(self.synchronizer.rename, session_id, title))

    async def delete_session(self, session_id: str) -> None:
        self.sessions.delete_session(session_id)
        self.accumulator.discard(session_id)
        self._schedule(functools.partial(self.synchronizer.delete, session_id))

    async def delete_history_entry(self, entry_id: str) -> bool:
        """Remove one per-turn history entry once earlier writes have landed."""
        return await self._run_ordered(
            functools.partial(self.synchronizer.delete_history_entry, entry_id)
        )

    async def clear_history(self) -> bool:
        return await self._run_ordered(self.synchronizer.clear_history)

    def set_active(self, session_id: str | None) -> None:
        self.sessions.set_active(session_id)

    def partial(self, session_id: str) -> str | None:
        """Live text of a reply still streaming into a session."""
        return self.accumulator.partial(session_id)

    # ── Sending ──────────────────────────────────────────────────

    async def send(
        self,
        text: str,
        model: str | None = None,
        session_id: str | None = None,
        attachments: list[Attachment] | None = None,
    ) -> Message | None:
        """Handle one user input; returns the assistant reply appended for it.

        Raises NotFoundError for an unknown session id and
        InvalidStateError when the session is already streaming a reply.
        Returns None for blank input or when the session disappeared
        before the reply could be appended.
        """
        text = text.strip()
        if not text:
            return None
        model = model or self.chat_model
        routed = dispatch(text, model, self.rag_mode, self.image_models)

        if session_id is None:
            session_id = self.sessions.active_id or await self.create_session()
        else:
            self.sessions.get(session_id)

        if routed.route is Route.CHAT:
            self.accumulator.begin(session_id)
        try:
            self.sessions.append_message(
                session_id,
                Message(role="user", content=text, attachments=list(attachments or [])),
            )
        except Exception:
            self.accumulator.discard(session_id)
            raise

        logger.debug("Routing input for %s via %s", session_id, routed.route.value)
        if routed.route is Route.CHAT:
            reply, record = await self._chat(session_id, model)
        elif routed.route is Route.KNOWLEDGE:
            self.rag_mode = False
            reply, record = await self._knowledge(session_id, routed.prompt)
        elif routed.route is Route.VIDEO:
            reply, record = await self._video(session_id, routed.prompt)
        else:
            reply, record = await self._image(session_id, routed.prompt, model)

        if reply is not None:
            self._schedule_save(session_id, record)
        return reply

    def _reply(self, session_id: str, content: str, **fields) -> Message | None:
        message = Message(role="assistant", content=content, timestamp=utc_now(), **fields)
        try:
            return self.sessions.append_message(session_id, message)
        except NotFoundError:
            logger.warning("Session %s was deleted before its reply arrived", session_id)
            return None

    async def _chat(self, session_id: str, model: str):
        session = self.sessions.get(session_id)
        context = [{"role": m.role, "content": m.content} for m in session.messages]
        prompt = context[-1]["content"]
        result = await self.accumulator.consume(
            session_id, self.chat.stream(context, model), CHAT_ERROR, model=model
        )
        if not result.ok or result.message is None:
            return result.message, None
        reply = result.message.content
        return result.message, functools.partial(
            self.synchronizer.store_text_conversation, session_id, prompt, reply, model
        )

    async def _knowledge(self, session_id: str, query: str):
        try:
            answer = await self.knowledge.query(query, session_id)
        except Exception as e:
            logger.error("Error querying knowledge base: %s", e)
            return self._reply(session_id, KNOWLEDGE_ERROR, model=KNOWLEDGE_MODEL), None

        reply = self._reply(session_id, answer.answer, model=KNOWLEDGE_MODEL)
        results = {"answer": answer.answer, "sources": answer.sources}
        return reply, functools.partial(
            self.synchronizer.store_knowledge_search, session_id, query, results
        )

    async def _image(self, session_id: str, prompt: str, model: str):
        model = model if model in self.image_models else self.image_model
        try:
            urls = await self.images.generate(model, prompt, count=1, size="1024x1024")
        except Exception as e:
            logger.error("Image generation error: %s", e)
            return self._reply(session_id, IMAGE_ERROR), None
        if not urls:
            return self._reply(session_id, NO_IMAGE), None

        stored = [await self._store_image(session_id, url) for url in urls]
        embeds = "\n\n".join(f"![Generated Image]({url})" for url in stored)
        reply = self._reply(
            session_id,
            f'I\'ve generated an image for you based on your prompt: "{prompt}"\n\n{embeds}',
            model=model,
            attachments=[
                Attachment(kind="image", url=url, name=f"image-{i + 1}.png")
                for i, url in enumerate(stored)
            ],
        )
        return reply, functools.partial(
            self.synchronizer.store_image_generation, session_id, prompt, stored, model
        )

    async def _store_image(self, session_id: str, url: str) -> str:
        """Copy a provider image into durable media storage when possible."""
        if not self.synchronizer.enabled:
            return url
        try:
            data = await self.images.download(url)
        except TransportError as e:
            logger.warning("Keeping provider URL for %s: %s", session_id, e)
            return url
        return await self.synchronizer.upload_media(session_id, data, "image/png") or url

    async def _video(self, session_id: str, prompt: str):
        model = self.video_model
        try:
            urls = await self.videos.generate(model, prompt, ratio="9:16", quality="720p", duration=8)
        except Exception as e:
            logger.error("Video generation error: %s", e)
            return self._reply(session_id, VIDEO_ERROR), None
        if not urls:
            return self._reply(session_id, NO_VIDEO), None

        players = "\n\n".join(_video_tag(url) for url in urls)
        plural = "s" if len(urls) > 1 else ""
        reply = self._reply(
            session_id,
            f'I\'ve generated {len(urls)} video{plural} for you based on your prompt: "{prompt}"\n\n{players}',
            model=model,
            video_urls=list(urls),
        )
        return reply, functools.partial(
            self.synchronizer.store_video_generation, session_id, prompt, list(urls), model
        )


def _video_tag(url: str) -> str:
    return (
        '<video controls style="max-width: 100%; height: auto; margin: 10px 0;">\n'
        f'  <source src="{url}" type="video/mp4">\n'
        "  Your browser does not support the video tag.\n"
        "</video>"
    )
