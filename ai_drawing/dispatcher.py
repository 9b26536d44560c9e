"""
生成调度器 - 核心协调器

根据模型选择批量协议（文生图 / 图生图编辑）或流式协议，统一返回图片列表，
成功后写入历史记录。
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from .dalle_client import DalleClient
from .exceptions import ConfigurationError, MissingInputError, MissingPromptError, UpstreamError
from .history import HistoryLog
from .image_utils import normalize_entries
from .models import (
    BATCH_MODELS,
    AspectRatio,
    GeneratedImage,
    GenerationRequest,
    GenerationResult,
    GenerationStatus,
    ModelType,
)
from .prompt_builder import PromptBuilder
from .stream_client import ChatImageStreamClient, StreamGenerateRequest, collect_stream

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> str:
    return datetime.now().isoformat()


class GenerationDispatcher:
    """生成调度器"""

    def __init__(
        self,
        history: HistoryLog,
        batch_client: Optional[DalleClient] = None,
        stream_client: Optional[ChatImageStreamClient] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        id_factory: Callable[[], str] = _new_id,
        clock: Callable[[], str] = _now,
    ):
        """
        初始化调度器

        Args:
            history: 历史记录
            batch_client: 批量协议客户端
            stream_client: 流式协议客户端
            prompt_builder: 提示词构建器
            id_factory: 记录 ID 生成函数
            clock: 时间戳生成函数
        """
        self.history = history
        self.batch_client = batch_client
        self.stream_client = stream_client
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.id_factory = id_factory
        self.clock = clock

    @staticmethod
    def select_model_type(request: GenerationRequest) -> ModelType:
        """固定批量模型或声明为批量协议的模型走批量协议，其余走流式协议"""
        if request.model in BATCH_MODELS or request.model_type is ModelType.DALLE:
            return ModelType.DALLE
        return ModelType.OPENAI

    def _validate(self, request: GenerationRequest):
        if request.is_image_to_image and not request.source_images:
            raise MissingInputError()
        if not request.prompt.strip():
            raise MissingPromptError()
        request.validate()

    def _record(self, request: GenerationRequest, prompt: str, url: str, aspect_ratio: str) -> GeneratedImage:
        image = GeneratedImage(
            id=self.id_factory(),
            prompt=prompt,
            url=url,
            model=request.model,
            created_at=self.clock(),
            aspect_ratio=aspect_ratio,
        )
        self.history.append(image)
        return image

    async def dispatch(
        self,
        request: GenerationRequest,
        on_message: Optional[Callable[[str], None]] = None,
    ) -> GenerationResult:
        """
        执行一次生成

        Args:
            request: 生成请求
            on_message: 流式协议每段增量文本的回调

        Returns:
            GenerationResult，没有可用图片时 status 为 EMPTY

        Raises:
            MissingInputError: 图生图没有源图片
            MissingPromptError: 提示词为空
            UpstreamError: 远程调用失败
        """
        self._validate(request)
        model_type = self.select_model_type(request)

        if model_type is ModelType.DALLE:
            prompt = self.prompt_builder.build(request.prompt, image_count=len(request.source_images))
            return await self._dispatch_batch(request, prompt)

        prompt = self.prompt_builder.build(
            request.prompt,
            image_count=len(request.source_images),
            aspect_ratio=request.aspect_ratio,
        )
        return await self._dispatch_stream(request, prompt, on_message)

    async def _dispatch_batch(self, request: GenerationRequest, prompt: str) -> GenerationResult:
        if self.batch_client is None:
            raise ConfigurationError("未配置批量接口客户端", field="batch_client")

        if request.is_image_to_image:
            # 接口仅支持使用第一张图片进行编辑，其余图片数量已写入提示词
            entries = await self.batch_client.edit(
                prompt=prompt,
                model=request.model,
                source_image=request.source_images[0],
                size=request.size,
                n=request.n,
                quality=request.quality,
                mask=request.mask,
                model_type=request.model_type,
            )
        else:
            entries = await self.batch_client.generate(
                prompt=prompt,
                model=request.model,
                size=request.size,
                n=request.n,
                quality=request.quality,
            )

        images = normalize_entries(entries)
        if not images:
            logger.warning(f"接口调用成功但没有返回可用图片: model={request.model}")
            return GenerationResult(images=[], model_type=ModelType.DALLE, status=GenerationStatus.EMPTY)

        # 批量协议按尺寸而非比例生成，记录为默认方形比例
        record = self._record(request, prompt, images[0], AspectRatio.SQUARE.value)
        logger.info(f"✅ 生成成功: {len(images)} 张图片, model={request.model}")
        return GenerationResult(images=images, model_type=ModelType.DALLE, record=record)

    async def _dispatch_stream(
        self,
        request: GenerationRequest,
        prompt: str,
        on_message: Optional[Callable[[str], None]],
    ) -> GenerationResult:
        if self.stream_client is None:
            raise ConfigurationError("未配置流式接口客户端", field="stream_client")

        stream_request = StreamGenerateRequest(
            prompt=prompt,
            model=request.model,
            model_type=request.model_type,
            source_image=request.source_images[0] if request.is_image_to_image and request.source_images else None,
            source_images=request.source_images if request.is_image_to_image else None,
            is_image_to_image=request.is_image_to_image,
            aspect_ratio=request.aspect_ratio,
        )
        outcome = await collect_stream(self.stream_client.stream(stream_request), on_message=on_message)

        if outcome.error is not None:
            raise UpstreamError(
                outcome.error.message,
                code=outcome.error.code,
                partial_text=outcome.text,
            )

        if not outcome.image_url:
            return GenerationResult(
                images=[],
                model_type=ModelType.OPENAI,
                text=outcome.text,
                status=GenerationStatus.EMPTY,
            )

        record = self._record(request, prompt, outcome.image_url, request.aspect_ratio)
        return GenerationResult(
            images=[outcome.image_url],
            model_type=ModelType.OPENAI,
            text=outcome.text,
            record=record,
        )

    def dispatch_sync(
        self,
        request: GenerationRequest,
        on_message: Optional[Callable[[str], None]] = None,
    ) -> GenerationResult:
        """同步版本的调度方法"""
        return asyncio.run(self.dispatch(request, on_message))
