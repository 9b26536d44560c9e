"""流式事件通道与流式客户端测试。"""

import asyncio
import json

import httpx
import pytest

from ai_drawing.exceptions import StreamStateError
from ai_drawing.models import StreamComplete, StreamError, StreamMessage
from ai_drawing.stream_client import (
    ChatImageStreamClient,
    StreamEventChannel,
    StreamGenerateRequest,
    StreamState,
    collect_stream,
    extract_image_reference,
)


async def _aiter(events):
    for event in events:
        yield event


def _collect(events, on_message=None):
    return asyncio.run(collect_stream(_aiter(events), on_message=on_message))


def _sse_body(fragments, extra_chunks=()):
    lines = []
    for fragment in fragments:
        chunk = {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 1,
            "model": "sora_image",
            "choices": [{"index": 0, "delta": {"content": fragment}, "finish_reason": None}],
        }
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    for chunk in extra_chunks:
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _stream_client(handler) -> ChatImageStreamClient:
    return ChatImageStreamClient(
        api_key="sk-test",
        base_url="https://api.example.com",
        transport=httpx.MockTransport(handler),
    )


async def _drain(client, request):
    return [event async for event in client.stream(request)]


class TestChannel:
    def test_state_transitions(self):
        channel = StreamEventChannel()
        assert channel.state is StreamState.IDLE

        channel.message("a")
        assert channel.state is StreamState.STREAMING

        channel.complete("https://img.example.com/a.png")
        assert channel.state is StreamState.COMPLETE
        assert channel.closed

    def test_only_one_terminal_event(self):
        channel = StreamEventChannel()
        channel.error("boom")

        assert channel.state is StreamState.ERRORED
        with pytest.raises(StreamStateError):
            channel.complete("https://img.example.com/a.png")
        with pytest.raises(StreamStateError):
            channel.message("late")

    def test_text_concatenates_in_order(self):
        channel = StreamEventChannel()
        for fragment in ["Hel", "lo, ", "world"]:
            channel.message(fragment)
        assert channel.text == "Hello, world"

    def test_error_accepts_plain_and_structured_values(self):
        assert StreamEventChannel().error("plain") == StreamError("plain")
        assert StreamEventChannel().error({"message": "bad", "code": 500}) == StreamError("bad", code="500")


class TestCollectStream:
    def test_accumulates_fragments(self, stream_events):
        received = []

        outcome = _collect(stream_events, on_message=received.append)

        assert outcome.text == "Hello, world"
        assert received == ["Hel", "lo, ", "world"]
        assert outcome.image_url == "https://img.example.com/stream.png"
        assert outcome.error is None

    def test_error_event(self, stream_error_events):
        outcome = _collect(stream_error_events)

        assert outcome.text == "正在生成"
        assert outcome.image_url is None
        assert outcome.error == StreamError("rate limited", code="429")

    def test_missing_terminal_event(self):
        outcome = _collect([StreamMessage("half")])

        assert outcome.error.code == "incomplete"

    def test_stops_after_terminal_event(self):
        outcome = _collect([
            StreamComplete("https://img.example.com/a.png"),
            StreamMessage("ignored"),
        ])

        assert outcome.text == ""
        assert outcome.image_url == "https://img.example.com/a.png"


class TestExtractImageReference:
    def test_markdown_image(self):
        text = "生成中...\n![image](https://img.example.com/a.png)\n![final](https://img.example.com/b.png)"
        assert extract_image_reference(text) == "https://img.example.com/b.png"

    def test_data_uri(self):
        assert extract_image_reference("结果: data:image/png;base64,QUJD") == "data:image/png;base64,QUJD"

    def test_bare_url(self):
        assert extract_image_reference("下载地址 https://cdn.example.com/x/y.jpg?sig=1 完成") == \
            "https://cdn.example.com/x/y.jpg?sig=1"

    def test_no_image(self):
        assert extract_image_reference("排队中，请稍候") is None


class TestStreamGenerateRequest:
    def test_extra_fields(self):
        request = StreamGenerateRequest(
            prompt="p",
            model="sora_image",
            source_image="data:image/png;base64,QQ==",
            source_images=("data:image/png;base64,QQ==", "data:image/png;base64,Qg=="),
            is_image_to_image=True,
            aspect_ratio="16:9",
        )

        assert request.extra_fields() == {
            "modelType": "openai",
            "isImageToImage": True,
            "aspectRatio": "16:9",
        }
        assert request.reference_images() == ["data:image/png;base64,QQ==", "data:image/png;base64,Qg=="]


class TestChatImageStreamClient:
    def test_streams_fragments_then_image(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            body = _sse_body(["Hel", "lo, ", "world ", "![img](https://img.example.com/s.png)"])
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        request = StreamGenerateRequest(
            prompt="a cat",
            model="sora_image",
            source_image="data:image/png;base64,QQ==",
            source_images=("data:image/png;base64,QQ==",),
            is_image_to_image=True,
        )
        events = asyncio.run(_drain(_stream_client(handler), request))

        assert [e.content for e in events if isinstance(e, StreamMessage)] == [
            "Hel", "lo, ", "world ", "![img](https://img.example.com/s.png)",
        ]
        assert events[-1] == StreamComplete("https://img.example.com/s.png")
        assert seen["url"] == "https://api.example.com/v1/chat/completions"
        assert seen["body"]["stream"] is True
        assert seen["body"]["modelType"] == "openai"
        assert seen["body"]["isImageToImage"] is True
        assert seen["body"]["aspectRatio"] == "1:1"
        content = seen["body"]["messages"][0]["content"]
        assert content[0] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,QQ=="}}
        assert content[-1] == {"type": "text", "text": "a cat"}

    def test_no_image_yields_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=_sse_body(["只有文字"]), headers={"content-type": "text/event-stream"})

        events = asyncio.run(_drain(_stream_client(handler), StreamGenerateRequest(prompt="p", model="m")))

        assert events[0] == StreamMessage("只有文字")
        assert events[-1] == StreamError("响应中没有找到图片", code="no_image")

    def test_http_error_yields_structured_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": {"message": "rate limited", "code": "rate_limit"}})

        events = asyncio.run(_drain(_stream_client(handler), StreamGenerateRequest(prompt="p", model="m")))

        assert events == [StreamError("rate limited", code="rate_limit")]

    @pytest.mark.parametrize("status", [200, 429])
    def test_client_is_closed_after_stream(self, status):
        created = []

        class RecordingClient(ChatImageStreamClient):
            def _client(self):
                client = super()._client()
                created.append(client)
                return client

        def handler(request: httpx.Request) -> httpx.Response:
            if status != 200:
                return httpx.Response(status, json={"error": {"message": "busy"}})
            body = _sse_body(["![img](https://img.example.com/s.png)"])
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        client = RecordingClient(api_key="sk-test", base_url="https://api.example.com", transport=httpx.MockTransport(handler))
        asyncio.run(_drain(client, StreamGenerateRequest(prompt="p", model="m")))
        asyncio.run(_drain(client, StreamGenerateRequest(prompt="p", model="m")))

        assert len(created) == 2
        assert all(c.is_closed() for c in created)
