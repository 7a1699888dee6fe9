"""HTTP clients for the generation and knowledge-base services.

The chat, image and video clients speak the OpenAI-compatible API
(``/chat/completions``, ``/images/generations``, ``/video/generations``).
The knowledge-base client posts to a webhook. Every failure surfaces as
TransportError; callers turn that into a visible chat message.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

import httpx

from .config import get_api_base, get_api_key, get_knowledge_url, get_timeout
from .errors import TransportError

logger = logging.getLogger(__name__)


class _ApiClient:
    """Shared plumbing: base URL, bearer auth, timeout, optional transport."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = (url or get_api_base()).rstrip("/")
        self.api_key = api_key if api_key is not None else get_api_key()
        self.timeout = timeout or get_timeout()
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _post_json(self, path: str, body: dict, what: str) -> dict:
        try:
            async with self._client() as client:
                resp = await client.post(f"{self.url}{path}", json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.warning("%s timed out after %ss", what, self.timeout)
            raise TransportError(f"{what} timed out") from e
        except httpx.HTTPError as e:
            logger.warning("%s failed: %s", what, e)
            raise TransportError(f"{what} failed: {e}") from e

        if resp.status_code >= 400:
            raise TransportError(f"{what} failed with status {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"{what} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise TransportError(f"{what} returned {type(data).__name__}, expected an object")
        return data


class ChatCompletionClient(_ApiClient):
    """Streaming chat completions."""

    async def stream(self, messages: list[dict], model: str) -> AsyncIterator[str]:
        """Yield content fragments in arrival order until the stream ends."""
        body = {"model": model, "messages": messages, "stream": True}
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", f"{self.url}/chat/completions", json=body, headers=self._headers()
                ) as resp:
                    if resp.status_code >= 400:
                        detail = (await resp.aread()).decode("utf-8", errors="replace")
                        raise TransportError(
                            f"API request failed with status {resp.status_code}: {detail[:200]}"
                        )
                    async for line in resp.aiter_lines():
                        fragment, done = _parse_sse_line(line)
                        if done:
                            return
                        if fragment:
                            yield fragment
        except httpx.TimeoutException as e:
            logger.warning("Chat stream timed out after %ss", self.timeout)
            raise TransportError("Chat stream timed out") from e
        except httpx.HTTPError as e:
            logger.warning("Chat stream failed: %s", e)
            raise TransportError(f"Chat stream failed: {e}") from e


def _parse_sse_line(line: str) -> tuple[str, bool]:
    """Return (content fragment, end-of-stream) for one SSE line."""
    if not line.startswith("data:"):
        return "", False
    payload = line[5:].strip()
    if payload == "[DONE]":
        return "", True
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed stream chunk: %s", payload[:100])
        return "", False
    choices = data.get("choices") or [{}]
    return (choices[0].get("delta") or {}).get("content") or "", False


class ImageClient(_ApiClient):
    async def generate(self, model: str, prompt: str, count: int = 1, size: str = "1024x1024") -> list[str]:
        data = await self._post_json(
            "/images/generations",
            {"model": model, "prompt": prompt, "n": count, "size": size},
            "Image generation",
        )
        return _result_urls(data, "Image generation")

    async def download(self, url: str) -> bytes:
        try:
            async with self._client() as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to download generated image: {e}") from e
        if resp.status_code >= 400:
            raise TransportError(f"Failed to download generated image: HTTP {resp.status_code}")
        return resp.content


class VideoClient(_ApiClient):
    async def generate(
        self,
        model: str,
        prompt: str,
        ratio: str = "9:16",
        quality: str = "720p",
        duration: int = 8,
    ) -> list[str]:
        data = await self._post_json(
            "/video/generations",
            {"model": model, "prompt": prompt, "ratio": ratio, "quality": quality, "duration": duration},
            "Video generation",
        )
        return _result_urls(data, "Video generation")


def _result_urls(data: dict, what: str) -> list[str]:
    """URLs from a generation response's ``data`` list."""
    items = data.get("data") or []
    if not isinstance(items, list):
        raise TransportError(f"{what} returned malformed data: {type(items).__name__}")
    urls = []
    for item in items:
        if not isinstance(item, dict):
            raise TransportError(f"{what} returned malformed item: {type(item).__name__}")
        if isinstance(item.get("url"), str) and item["url"]:
            urls.append(item["url"])
    return urls


@dataclass
class KnowledgeAnswer:
    answer: str
    session_id: str
    sources: list = field(default_factory=list)


class KnowledgeBaseClient:
    """Query a knowledge-base webhook."""

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url if url is not None else get_knowledge_url()
        self.timeout = timeout or get_timeout()
        self._transport = transport

    async def query(self, query: str, session_id: str) -> KnowledgeAnswer:
        if not self.url:
            raise TransportError("No knowledge base URL configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json={"message": query, "session_id": session_id})
        except httpx.HTTPError as e:
            logger.warning("Knowledge base query failed: %s", e)
            raise TransportError("Failed to query knowledge base") from e
        if resp.status_code >= 400:
            raise TransportError(f"Knowledge base query failed with status {resp.status_code}")
        return parse_knowledge_response(resp.text, session_id)


def parse_knowledge_response(text: str, session_id: str) -> KnowledgeAnswer:
    """Interpret a webhook body; anything that is not JSON is the answer itself."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return KnowledgeAnswer(answer=text, session_id=session_id)

    if isinstance(data, list) and data and isinstance(data[0], dict) and data[0].get("output"):
        return KnowledgeAnswer(
            answer=_as_text(data[0]["output"]),
            session_id=session_id,
            sources=data[0].get("sources") or [],
        )
    if isinstance(data, dict):
        return KnowledgeAnswer(
            answer=_as_text(
                data.get("answer") or data.get("response") or data.get("result") or "No answer received"
            ),
            session_id=str(data.get("sessionId") or session_id),
            sources=data.get("sources") or [],
        )
    # JSON scalars ("hello", 42) read as plain text answers.
    return KnowledgeAnswer(answer=text if not isinstance(data, str) else data, session_id=session_id)


def _as_text(value) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)
