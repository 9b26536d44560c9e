"""生成调度器测试。"""

import asyncio

import pytest

from ai_drawing.dispatcher import GenerationDispatcher
from ai_drawing.exceptions import APIError, ConfigurationError, MissingInputError, MissingPromptError, UpstreamError
from ai_drawing.models import (
    GenerationMode,
    GenerationRequest,
    GenerationStatus,
    ModelType,
    StreamComplete,
    StreamError,
    StreamMessage,
)
from ai_drawing.storage import HISTORY_SLOT

from conftest import FakeBatchClient, FakeStreamClient

SOURCE_A = "data:image/png;base64,QQ=="
SOURCE_B = "data:image/png;base64,Qg=="


def make_dispatcher(history, batch_client=None, stream_client=None):
    return GenerationDispatcher(
        history=history,
        batch_client=batch_client,
        stream_client=stream_client,
        id_factory=lambda: "fixed-id",
        clock=lambda: "2026-10-19T12:00:00",
    )


def run(dispatcher, request, on_message=None):
    return asyncio.run(dispatcher.dispatch(request, on_message=on_message))


class TestModelSelection:
    @pytest.mark.parametrize("model,model_type,expected", [
        ("gpt-image-1", ModelType.OPENAI, ModelType.DALLE),
        ("dall-e-3", ModelType.OPENAI, ModelType.DALLE),
        ("my-dalle-proxy", ModelType.DALLE, ModelType.DALLE),
        ("sora_image", ModelType.OPENAI, ModelType.OPENAI),
        ("gpt_4o_image", ModelType.OPENAI, ModelType.OPENAI),
    ])
    def test_select_model_type(self, model, model_type, expected):
        request = GenerationRequest(prompt="p", model=model, model_type=model_type)
        assert GenerationDispatcher.select_model_type(request) is expected


class TestValidation:
    def test_missing_input_before_network(self, history):
        batch = FakeBatchClient()
        stream = FakeStreamClient([])
        dispatcher = make_dispatcher(history, batch, stream)
        request = GenerationRequest(prompt="a cat", mode=GenerationMode.IMAGE_TO_IMAGE)

        with pytest.raises(MissingInputError):
            run(dispatcher, request)

        assert batch.calls == []
        assert stream.requests == []

    @pytest.mark.parametrize("prompt", ["", "   ", "\n\t"])
    def test_blank_prompt(self, history, prompt):
        batch = FakeBatchClient()
        dispatcher = make_dispatcher(history, batch)

        with pytest.raises(MissingPromptError):
            run(dispatcher, GenerationRequest(prompt=prompt))

        assert batch.calls == []

    def test_out_of_range_count(self, history):
        dispatcher = make_dispatcher(history, FakeBatchClient())

        with pytest.raises(ConfigurationError):
            run(dispatcher, GenerationRequest(prompt="a cat", n=5))


class TestBatch:
    def test_create_scenario(self, history):
        batch = FakeBatchClient(entries=[{"b64_json": "QQ=="}])
        dispatcher = make_dispatcher(history, batch)
        request = GenerationRequest(prompt="a cat", model="gpt-image-1", size="1024x1024", n=1, quality="auto")

        result = run(dispatcher, request)

        assert batch.calls == [{
            "action": "generate",
            "prompt": "a cat",
            "model": "gpt-image-1",
            "size": "1024x1024",
            "n": 1,
            "quality": "auto",
        }]
        assert result.status is GenerationStatus.SUCCESS
        assert result.images == ["data:image/png;base64,QQ=="]
        records = history.list()
        assert len(records) == 1
        assert records[0].url == "data:image/png;base64,QQ=="
        assert records[0].id == "fixed-id"
        assert records[0].model == "gpt-image-1"

    def test_first_image_recorded_with_square_ratio(self, history):
        batch = FakeBatchClient(entries=[
            {},
            {"url": "https://img.example.com/1.png"},
            {"b64_json": "Qg=="},
        ])
        dispatcher = make_dispatcher(history, batch)

        result = run(dispatcher, GenerationRequest(prompt="a cat", n=3, size="1792x1024", aspect_ratio="16:9"))

        assert result.images == ["https://img.example.com/1.png", "data:image/png;base64,Qg=="]
        assert result.record.url == "https://img.example.com/1.png"
        assert result.record.aspect_ratio == "1:1"
        assert len(history.list()) == 1

    def test_edit_sends_first_image_and_mentions_count(self, history):
        batch = FakeBatchClient()
        dispatcher = make_dispatcher(history, batch)
        request = GenerationRequest(
            prompt="make it blue",
            model="gpt-image-1",
            mode=GenerationMode.IMAGE_TO_IMAGE,
            source_images=(SOURCE_A, SOURCE_B),
            mask=SOURCE_B,
        )

        run(dispatcher, request)

        call = batch.calls[0]
        assert call["action"] == "edit"
        assert call["source_image"] == SOURCE_A
        assert call["mask"] == SOURCE_B
        assert "上传了2张参考图片" in call["prompt"]
        assert "图片生成比例" not in call["prompt"]
        assert history.list()[0].prompt == call["prompt"]

    def test_empty_response_is_soft_failure(self, history):
        dispatcher = make_dispatcher(history, FakeBatchClient(entries=[{"url": ""}, {}]))

        result = run(dispatcher, GenerationRequest(prompt="a cat"))

        assert result.status is GenerationStatus.EMPTY
        assert result.images == []
        assert result.record is None
        assert history.list() == []

    def test_upstream_error_passes_through(self, history):
        error = APIError("生成图片失败: rejected", code="content_policy_violation", status_code=400)
        dispatcher = make_dispatcher(history, FakeBatchClient(error=error))

        with pytest.raises(UpstreamError) as exc_info:
            run(dispatcher, GenerationRequest(prompt="a cat"))

        assert exc_info.value is error
        assert history.list() == []


class TestStreaming:
    def test_accumulates_text_and_records_once(self, history, stream_events):
        stream = FakeStreamClient(stream_events)
        dispatcher = make_dispatcher(history, stream_client=stream)
        received = []
        request = GenerationRequest(prompt="a cat", model="sora_image", model_type=ModelType.OPENAI, aspect_ratio="16:9")

        result = run(dispatcher, request, on_message=received.append)

        assert "".join(received) == "Hello, world"
        assert result.text == "Hello, world"
        assert result.images == ["https://img.example.com/stream.png"]
        records = history.list()
        assert len(records) == 1
        assert records[0].aspect_ratio == "16:9"
        assert records[0].prompt == "a cat\n图片生成比例为：16:9"

    def test_request_shape_for_image_to_image(self, history):
        stream = FakeStreamClient([StreamComplete("https://img.example.com/x.png")])
        dispatcher = make_dispatcher(history, stream_client=stream)
        request = GenerationRequest(
            prompt="水彩风格",
            model="sora_image",
            model_type=ModelType.OPENAI,
            mode=GenerationMode.IMAGE_TO_IMAGE,
            source_images=(SOURCE_A, SOURCE_B),
            aspect_ratio="9:16",
        )

        run(dispatcher, request)

        sent = stream.requests[0]
        assert sent.source_image == SOURCE_A
        assert sent.source_images == (SOURCE_A, SOURCE_B)
        assert sent.extra_fields() == {"modelType": "openai", "isImageToImage": True, "aspectRatio": "9:16"}
        assert "上传了2张参考图片" in sent.prompt
        assert sent.prompt.endswith("图片生成比例为：9:16")

    def test_text_to_image_sends_no_source_images(self, history):
        stream = FakeStreamClient([StreamComplete("https://img.example.com/x.png")])
        dispatcher = make_dispatcher(history, stream_client=stream)

        run(dispatcher, GenerationRequest(prompt="a cat", model="sora_image", model_type=ModelType.OPENAI))

        sent = stream.requests[0]
        assert sent.source_image is None
        assert sent.source_images is None
        assert sent.is_image_to_image is False

    def test_error_event_raises_upstream_error(self, history, stream_error_events):
        dispatcher = make_dispatcher(history, stream_client=FakeStreamClient(stream_error_events))

        with pytest.raises(UpstreamError) as exc_info:
            run(dispatcher, GenerationRequest(prompt="a cat", model="sora_image", model_type=ModelType.OPENAI))

        assert exc_info.value.message == "rate limited"
        assert exc_info.value.code == "429"
        assert exc_info.value.partial_text == "正在生成"
        assert history.list() == []

    def test_structured_error_without_code(self, history):
        events = [StreamError.from_value({"message": "server busy"})]
        dispatcher = make_dispatcher(history, stream_client=FakeStreamClient(events))

        with pytest.raises(UpstreamError) as exc_info:
            run(dispatcher, GenerationRequest(prompt="a cat", model="sora_image", model_type=ModelType.OPENAI))

        assert exc_info.value.code is None

    def test_missing_terminal_event_is_upstream_error(self, history):
        dispatcher = make_dispatcher(history, stream_client=FakeStreamClient([StreamMessage("half")]))

        with pytest.raises(UpstreamError) as exc_info:
            run(dispatcher, GenerationRequest(prompt="a cat", model="sora_image", model_type=ModelType.OPENAI))

        assert exc_info.value.code == "incomplete"


def test_dispatch_sync(history):
    dispatcher = make_dispatcher(history, FakeBatchClient(entries=[{"b64_json": "QQ=="}]))

    result = dispatcher.dispatch_sync(GenerationRequest(prompt="a cat"))

    assert result.success
    assert history.list()[0].url == "data:image/png;base64,QQ=="


def test_missing_client_is_configuration_error(history):
    dispatcher = make_dispatcher(history)

    with pytest.raises(ConfigurationError):
        run(dispatcher, GenerationRequest(prompt="a cat"))


def test_unreadable_history_does_not_lose_result(medium, history):
    medium.set(HISTORY_SLOT, "{not json")
    dispatcher = make_dispatcher(history, FakeBatchClient(entries=[{"b64_json": "QQ=="}]))

    result = dispatcher.dispatch_sync(GenerationRequest(prompt="a cat"))

    assert result.images == ["data:image/png;base64,QQ=="]
    assert [image.id for image in history.list()] == ["fixed-id"]
