"""
流式图片生成 - 对话接口逐段返回文本，最后给出一张图片

事件通道的状态: IDLE -> STREAMING -> COMPLETE | ERRORED
每次生成产生零个或多个 StreamMessage，之后恰好一个 StreamComplete 或 StreamError。
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import httpx
from openai import APIError as OpenAIAPIError
from openai import APIStatusError, AsyncOpenAI

from .dalle_client import api_root
from .exceptions import StreamStateError
from .models import (
    AspectRatio,
    ModelType,
    StreamComplete,
    StreamError,
    StreamEvent,
    StreamMessage,
)

logger = logging.getLogger(__name__)

# ![image](https://...) 形式的 markdown 图片
MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[[^\]]*\]\(\s*<?([^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
DATA_URI_PATTERN = re.compile(r"data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=]+")
IMAGE_URL_PATTERN = re.compile(r"https?://[^\s)\"'<>]+\.(?:png|jpe?g|webp|gif)(?:\?[^\s)\"'<>]*)?", re.IGNORECASE)


class StreamState(Enum):
    """事件通道状态"""
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERRORED = "errored"


class StreamEventChannel:
    """流式事件通道，保证恰好产生一个终止事件"""

    def __init__(self):
        self.state = StreamState.IDLE
        self._fragments: List[str] = []

    @property
    def closed(self) -> bool:
        return self.state in (StreamState.COMPLETE, StreamState.ERRORED)

    @property
    def text(self) -> str:
        """按到达顺序拼接的全部文本"""
        return "".join(self._fragments)

    def _ensure_open(self, action: str):
        if self.closed:
            raise StreamStateError(f"通道已结束，无法{action}", state=self.state.value)

    def open(self):
        self._ensure_open("开始")
        self.state = StreamState.STREAMING

    def message(self, content: str) -> StreamMessage:
        self._ensure_open("发送消息")
        self.state = StreamState.STREAMING
        self._fragments.append(content)
        return StreamMessage(content)

    def complete(self, image_url: str) -> StreamComplete:
        self._ensure_open("完成")
        self.state = StreamState.COMPLETE
        return StreamComplete(image_url)

    def error(self, error: Any) -> StreamError:
        self._ensure_open("报告错误")
        self.state = StreamState.ERRORED
        if isinstance(error, StreamError):
            return error
        return StreamError.from_value(error)


@dataclass
class StreamOutcome:
    """消费流式事件的结果"""
    text: str = ""
    image_url: Optional[str] = None
    error: Optional[StreamError] = None
    fragments: List[str] = field(default_factory=list)


async def collect_stream(
    events: AsyncIterator[StreamEvent],
    on_message: Optional[Callable[[str], None]] = None,
) -> StreamOutcome:
    """
    按顺序消费事件直到终止事件

    Args:
        events: 事件序列
        on_message: 每段增量文本的回调

    Returns:
        拼接后的文本以及图片或错误
    """
    outcome = StreamOutcome()
    async for event in events:
        if isinstance(event, StreamMessage):
            outcome.fragments.append(event.content)
            if on_message:
                on_message(event.content)
        elif isinstance(event, StreamComplete):
            outcome.image_url = event.image_url
            break
        elif isinstance(event, StreamError):
            outcome.error = event
            break
    else:
        outcome.error = StreamError("流式响应意外结束", code="incomplete")

    outcome.text = "".join(outcome.fragments)
    return outcome


def extract_image_reference(text: str) -> Optional[str]:
    """从流式文本中取最后一张图片"""
    matches = MARKDOWN_IMAGE_PATTERN.findall(text)
    if matches:
        return matches[-1]
    matches = DATA_URI_PATTERN.findall(text)
    if matches:
        return matches[-1]
    matches = IMAGE_URL_PATTERN.findall(text)
    if matches:
        return matches[-1]
    return None


def _extract_delta_image(delta: Any) -> Optional[str]:
    """
    部分服务在 delta 中直接返回图片:
    {"images": [{"type": "image_url", "image_url": {"url": "data:image/png;base64,..."}}]}
    """
    images = getattr(delta, "images", None)
    if not images:
        return None
    for image in images:
        image_url = image.get("image_url") if isinstance(image, dict) else getattr(image, "image_url", None)
        if isinstance(image_url, dict):
            url = image_url.get("url")
        else:
            url = getattr(image_url, "url", None)
        if url:
            return url
    return None


def _error_value(error: OpenAIAPIError, default_code: Any = None) -> Dict[str, Any]:
    """优先使用响应体中的 message，保留原始错误码"""
    message = error.message
    body = error.body
    if isinstance(body, dict) and body.get("message"):
        message = body["message"]
    return {"message": message, "code": error.code or default_code}


@dataclass(frozen=True)
class StreamGenerateRequest:
    """流式生成请求"""
    prompt: str
    model: str
    model_type: ModelType = ModelType.OPENAI
    source_image: Optional[str] = None
    source_images: Optional[Tuple[str, ...]] = None
    is_image_to_image: bool = False
    aspect_ratio: str = AspectRatio.SQUARE.value

    def extra_fields(self) -> Dict[str, Any]:
        """对话接口标准参数之外随请求发送的字段"""
        return {
            "modelType": self.model_type.value,
            "isImageToImage": self.is_image_to_image,
            "aspectRatio": self.aspect_ratio,
        }

    def reference_images(self) -> List[str]:
        images: List[str] = []
        if self.source_image:
            images.append(self.source_image)
        for image in self.source_images or ():
            if image not in images:
                images.append(image)
        return images


class ChatImageStreamClient:
    """基于 OpenAI 兼容对话接口的流式图片生成客户端"""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 300.0,
        proxy: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        初始化客户端

        Args:
            api_key: API密钥
            base_url: API基础URL
            timeout: 请求超时时间（秒）
            proxy: 代理地址
            transport: 自定义 httpx 传输层（测试用）
        """
        self.api_key = api_key
        self.model_base_url = api_root(base_url)
        self.timeout = timeout
        self.proxy = proxy
        self.transport = transport

    def _client(self) -> AsyncOpenAI:
        """每次请求新建客户端，随 async with 一起关闭"""
        http_client = None
        if self.transport is not None:
            http_client = httpx.AsyncClient(transport=self.transport, timeout=self.timeout)
        elif self.proxy:
            http_client = httpx.AsyncClient(proxy=self.proxy, timeout=self.timeout)
        return AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.model_base_url,
            timeout=self.timeout,
            max_retries=0,
            http_client=http_client,
        )

    def _build_messages(self, request: StreamGenerateRequest) -> List[Dict[str, Any]]:
        """构建消息内容（支持图片输入）"""
        content: List[Dict[str, Any]] = []
        if request.is_image_to_image:
            for image in request.reference_images():
                content.append({
                    "type": "image_url",
                    "image_url": {"url": image},
                })
        content.append({"type": "text", "text": request.prompt})
        return [{"role": "user", "content": content}]

    async def stream(self, request: StreamGenerateRequest) -> AsyncIterator[StreamEvent]:
        """
        发起流式生成

        Yields:
            StreamMessage 若干，之后一个 StreamComplete 或 StreamError
        """
        channel = StreamEventChannel()
        channel.open()
        image_url = None

        logger.debug(
            f"发送流式请求: model={request.model}, 图生图={request.is_image_to_image}, "
            f"比例={request.aspect_ratio}"
        )

        try:
            async with self._client() as client:
                response = await client.chat.completions.create(
                    model=request.model,
                    messages=self._build_messages(request),
                    stream=True,
                    extra_body=request.extra_fields(),
                )
                async for chunk in response:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    if delta is None:
                        continue
                    image_url = _extract_delta_image(delta) or image_url
                    if delta.content:
                        yield channel.message(delta.content)
        except APIStatusError as e:
            logger.error(f"流式接口 HTTP 错误: {e.status_code} - {e.message}")
            yield channel.error(_error_value(e, default_code=e.status_code))
            return
        except OpenAIAPIError as e:
            logger.error(f"流式接口请求失败: {e.message}")
            yield channel.error(_error_value(e))
            return

        image_url = image_url or extract_image_reference(channel.text)
        if image_url:
            logger.info("✅ 流式生成完成")
            yield channel.complete(image_url)
        else:
            logger.error(f"流式接口未返回图片，响应: {channel.text[:200]}")
            yield channel.error({"message": "响应中没有找到图片", "code": "no_image"})
