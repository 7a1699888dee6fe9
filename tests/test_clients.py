"""Tests for the generation and knowledge-base HTTP clients."""

import json

import httpx
import pytest

from aichat_engine.clients import (
    ChatCompletionClient,
    ImageClient,
    KnowledgeBaseClient,
    VideoClient,
    parse_knowledge_response,
)
from aichat_engine.errors import TransportError

API = "https://api.test/v1"


def sse(*chunks):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}" for c in chunks]
    return "\n\n".join(lines + ["data: [DONE]"]) + "\n\n"


async def collect(stream):
    return [fragment async for fragment in stream]


@pytest.mark.asyncio
class TestChatStream:
    async def test_yields_fragments_in_order(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, text=sse("Hel", "lo", "!"))

        client = ChatCompletionClient(API, api_key="k", transport=httpx.MockTransport(handler))
        fragments = await collect(client.stream([{"role": "user", "content": "hi"}], "m"))
        assert fragments == ["Hel", "lo", "!"]
        assert seen["body"]["stream"] is True
        assert seen["body"]["model"] == "m"
        assert seen["auth"] == "Bearer k"

    async def test_stops_at_done(self):
        body = sse("a") + "data: " + json.dumps({"choices": [{"delta": {"content": "late"}}]}) + "\n\n"
        client = ChatCompletionClient(API, transport=httpx.MockTransport(lambda r: httpx.Response(200, text=body)))
        assert await collect(client.stream([], "m")) == ["a"]

    async def test_skips_malformed_and_empty_chunks(self):
        body = (
            "data: {not json}\n\n"
            + 'data: {"choices": [{"delta": {}}]}\n\n'
            + ": keep-alive\n\n"
            + sse("ok")
        )
        client = ChatCompletionClient(API, transport=httpx.MockTransport(lambda r: httpx.Response(200, text=body)))
        assert await collect(client.stream([], "m")) == ["ok"]

    async def test_error_status(self):
        client = ChatCompletionClient(
            API, transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom"))
        )
        with pytest.raises(TransportError, match="500"):
            await collect(client.stream([], "m"))

    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        client = ChatCompletionClient(API, transport=httpx.MockTransport(handler))
        with pytest.raises(TransportError):
            await collect(client.stream([], "m"))

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        client = ChatCompletionClient(API, transport=httpx.MockTransport(handler))
        with pytest.raises(TransportError, match="timed out"):
            await collect(client.stream([], "m"))


@pytest.mark.asyncio
class TestImageAndVideo:
    async def test_image_urls(self):
        def handler(request):
            assert request.url.path == "/v1/images/generations"
            body = json.loads(request.content)
            assert body == {"model": "img", "prompt": "a cat", "n": 1, "size": "1024x1024"}
            return httpx.Response(200, json={"data": [{"url": "https://cdn.test/1.png"}, {"b64_json": "x"}]})

        client = ImageClient(API, transport=httpx.MockTransport(handler))
        assert await client.generate("img", "a cat") == ["https://cdn.test/1.png"]

    async def test_image_error(self):
        client = ImageClient(API, transport=httpx.MockTransport(lambda r: httpx.Response(429, text="slow down")))
        with pytest.raises(TransportError):
            await client.generate("img", "a cat")

    async def test_download(self):
        client = ImageClient(API, transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"PNG")))
        assert await client.download("https://cdn.test/1.png") == b"PNG"

    async def test_video_params(self):
        def handler(request):
            assert request.url.path == "/v1/video/generations"
            body = json.loads(request.content)
            assert body["ratio"] == "9:16"
            assert body["quality"] == "720p"
            assert body["duration"] == 8
            return httpx.Response(200, json={"data": [{"url": "https://cdn.test/v.mp4"}]})

        client = VideoClient(API, transport=httpx.MockTransport(handler))
        assert await client.generate("vid", "waves") == ["https://cdn.test/v.mp4"]

    async def test_video_empty(self):
        client = VideoClient(API, transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"data": []})))
        assert await client.generate("vid", "waves") == []


@pytest.mark.asyncio
class TestKnowledgeBase:
    async def test_posts_message_and_session(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"answer": "42", "sources": ["a.md"]})

        client = KnowledgeBaseClient("https://kb.test/hook", transport=httpx.MockTransport(handler))
        answer = await client.query("meaning?", "s1")
        assert seen["body"] == {"message": "meaning?", "session_id": "s1"}
        assert answer.answer == "42"
        assert answer.sources == ["a.md"]

    async def test_no_url_configured(self):
        with pytest.raises(TransportError):
            await KnowledgeBaseClient("").query("q", "s1")

    async def test_error_status(self):
        client = KnowledgeBaseClient(
            "https://kb.test/hook", transport=httpx.MockTransport(lambda r: httpx.Response(502))
        )
        with pytest.raises(TransportError):
            await client.query("q", "s1")


class TestParseKnowledgeResponse:
    def test_plain_text(self):
        assert parse_knowledge_response("just words", "s1").answer == "just words"

    def test_output_list(self):
        answer = parse_knowledge_response(json.dumps([{"output": "from list"}]), "s1")
        assert answer.answer == "from list"

    @pytest.mark.parametrize("key", ["answer", "response", "result"])
    def test_answer_keys(self, key):
        assert parse_knowledge_response(json.dumps({key: "yes"}), "s1").answer == "yes"

    def test_missing_answer(self):
        assert parse_knowledge_response("{}", "s1").answer == "No answer received"

    def test_session_id_from_body(self):
        answer = parse_knowledge_response(json.dumps({"answer": "a", "sessionId": "kb-9"}), "s1")
        assert answer.session_id == "kb-9"

    def test_structured_answer_becomes_text(self):
        answer = parse_knowledge_response(json.dumps({"answer": {"text": "x"}}), "s1")
        assert isinstance(answer.answer, str)
        assert json.loads(answer.answer) == {"text": "x"}

    def test_structured_output_becomes_text(self):
        answer = parse_knowledge_response(json.dumps([{"output": ["a", "b"]}]), "s1")
        assert answer.answer == '["a", "b"]'

    def test_numeric_session_id_is_text(self):
        answer = parse_knowledge_response(json.dumps({"answer": "a", "sessionId": 7}), "s1")
        assert answer.session_id == "7"


@pytest.mark.asyncio
class TestMalformedGenerationBodies:
    @pytest.mark.parametrize(
        "payload",
        [[{"url": "https://cdn.test/1.png"}], {"data": "oops"}, {"data": [None]}, {"data": {"url": "x"}}],
    )
    async def test_image_rejects_unexpected_shapes(self, payload):
        client = ImageClient(API, transport=httpx.MockTransport(lambda r: httpx.Response(200, json=payload)))
        with pytest.raises(TransportError, match="Image generation"):
            await client.generate("img", "a cat")

    async def test_video_rejects_list_body(self):
        client = VideoClient(
            API, transport=httpx.MockTransport(lambda r: httpx.Response(200, json=[{"url": "x"}]))
        )
        with pytest.raises(TransportError, match="Video generation"):
            await client.generate("vid", "waves")

    async def test_invalid_json(self):
        client = ImageClient(API, transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")))
        with pytest.raises(TransportError, match="invalid JSON"):
            await client.generate("img", "a cat")

    async def test_items_without_url_are_skipped(self):
        client = ImageClient(
            API, transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"data": [{"url": 5}]}))
        )
        assert await client.generate("img", "a cat") == []
