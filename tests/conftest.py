"""测试公共夹具。"""

from typing import Any, AsyncIterator, Dict, List, Optional

import pytest

from ai_drawing.exceptions import QuotaExceededError
from ai_drawing.history import HistoryLog
from ai_drawing.models import GeneratedImage, StreamComplete, StreamError, StreamMessage
from ai_drawing.storage import MemoryStorageMedium, RecordStore


class FlakyMedium(MemoryStorageMedium):
    """前 fail_writes 次写入抛出存储空间不足。"""

    def __init__(self, fail_writes: int = 0):
        super().__init__(quota_bytes=None)
        self.fail_writes = fail_writes
        self.write_attempts = 0

    def set(self, slot: str, text: str):
        self.write_attempts += 1
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise QuotaExceededError(slot)
        super().set(slot, text)


class FakeBatchClient:
    """记录调用参数的批量客户端。"""

    def __init__(self, entries: Optional[List[Dict[str, Any]]] = None, error: Exception = None):
        self.entries = entries if entries is not None else [{"url": "https://img.example.com/1.png"}]
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, **kwargs):
        self.calls.append(dict(kwargs, action="generate"))
        if self.error:
            raise self.error
        return self.entries

    async def edit(self, **kwargs):
        self.calls.append(dict(kwargs, action="edit"))
        if self.error:
            raise self.error
        return self.entries


class FakeStreamClient:
    """按给定事件序列返回的流式客户端。"""

    def __init__(self, events):
        self.events = events
        self.requests = []

    async def stream(self, request) -> AsyncIterator:
        self.requests.append(request)
        for event in self.events:
            yield event


def make_image(index: int) -> GeneratedImage:
    return GeneratedImage(
        id=f"img-{index}",
        prompt=f"prompt {index}",
        url=f"https://img.example.com/{index}.png",
        model="gpt-image-1",
        created_at=f"2026-01-01T00:00:{index % 60:02d}",
        aspect_ratio="1:1",
    )


@pytest.fixture
def medium():
    return MemoryStorageMedium()


@pytest.fixture
def store(medium):
    return RecordStore(medium)


@pytest.fixture
def history(store):
    return HistoryLog(store)


@pytest.fixture
def stream_events():
    return [
        StreamMessage("Hel"),
        StreamMessage("lo, "),
        StreamMessage("world"),
        StreamComplete("https://img.example.com/stream.png"),
    ]


@pytest.fixture
def stream_error_events():
    return [
        StreamMessage("正在生成"),
        StreamError("rate limited", code="429"),
    ]
