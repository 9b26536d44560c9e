"""
数据模型定义
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from .exceptions import ConfigurationError


class ModelType(Enum):
    """模型协议类型"""
    DALLE = "dalle"    # 批量协议：一次请求返回完整图片列表
    OPENAI = "openai"  # 流式协议：对话接口逐段返回文本，最后给出图片


class GenerationMode(Enum):
    """生成模式"""
    TEXT_TO_IMAGE = "text_to_image"
    IMAGE_TO_IMAGE = "image_to_image"


class AspectRatio(Enum):
    """图片比例"""
    SQUARE = "1:1"
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"


class ImageSize(Enum):
    """批量协议支持的尺寸"""
    SQUARE = "1024x1024"
    LANDSCAPE = "1536x1024"
    PORTRAIT = "1024x1536"
    WIDE = "1792x1024"


class GenerationStatus(Enum):
    """生成结果状态"""
    SUCCESS = "success"
    EMPTY = "empty"  # 请求成功但没有可用图片


# 内置模型
BUILTIN_MODELS: Dict[str, str] = {
    "gpt-image-1": "GPT Image 1 模型",
    "sora_image": "GPT Sora_Image 模型",
    "gpt_4o_image": "GPT 4o_Image 模型",
    "dall-e-3": "DALL-E 3 模型",
}

# 固定走批量协议的模型
BATCH_MODELS = frozenset({"dall-e-3", "gpt-image-1"})

DEFAULT_MODEL = "gpt-image-1"

# 各模型可选的质量
DALLE3_QUALITIES = ("hd", "standard", "auto")
GPT_IMAGE_QUALITIES = ("high", "medium", "low", "auto")
ALL_QUALITIES = ("auto", "high", "medium", "low", "hd", "standard")

MAX_SOURCE_IMAGES = 4
MAX_IMAGE_COUNT = 4


def quality_options(model: str) -> Tuple[str, ...]:
    """返回模型可选的质量"""
    if model == "dall-e-3":
        return DALLE3_QUALITIES
    return GPT_IMAGE_QUALITIES


def _now_iso() -> str:
    return datetime.now().isoformat()


@dataclass(frozen=True)
class GeneratedImage:
    """一次成功生成的图片记录（创建后不可修改）"""
    id: str
    prompt: str
    url: str
    model: str
    created_at: str
    aspect_ratio: str = AspectRatio.SQUARE.value

    def to_dict(self) -> Dict[str, Any]:
        """转换为可序列化的字典"""
        return {
            "id": self.id,
            "prompt": self.prompt,
            "url": self.url,
            "model": self.model,
            "createdAt": self.created_at,
            "aspectRatio": self.aspect_ratio,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GeneratedImage":
        """从字典创建实例"""
        return cls(
            id=data["id"],
            prompt=data.get("prompt", ""),
            url=data.get("url", ""),
            model=data.get("model", ""),
            created_at=data.get("createdAt", ""),
            aspect_ratio=data.get("aspectRatio", AspectRatio.SQUARE.value),
        )


@dataclass
class ApiConfig:
    """API 连接配置（单例）"""
    key: str
    base_url: str
    created_at: str = field(default_factory=_now_iso)

    @property
    def is_secure(self) -> bool:
        return urlparse(self.base_url).scheme.lower() != "http"

    def upgraded(self) -> "ApiConfig":
        """返回将 http 升级为 https 后的配置"""
        if self.is_secure:
            return self
        scheme_end = self.base_url.index(":")
        return replace(self, base_url="https" + self.base_url[scheme_end:])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "baseUrl": self.base_url,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ApiConfig":
        return cls(
            key=data.get("key", ""),
            base_url=data.get("baseUrl", ""),
            created_at=data.get("createdAt", ""),
        )


@dataclass
class CustomModel:
    """用户自定义模型"""
    id: str
    name: str
    value: str
    type: ModelType = ModelType.OPENAI

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "value": self.value,
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CustomModel":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            value=data.get("value", ""),
            type=ModelType(data.get("type", ModelType.OPENAI.value)),
        )


@dataclass(frozen=True)
class GenerationRequest:
    """
    一次生成请求的参数快照

    每次生成时构造一次并按值传给调度器，生成过程中界面参数的修改不会影响在途请求。
    """
    prompt: str
    model: str = DEFAULT_MODEL
    model_type: ModelType = ModelType.DALLE
    mode: GenerationMode = GenerationMode.TEXT_TO_IMAGE
    source_images: Tuple[str, ...] = ()
    mask: Optional[str] = None
    size: str = ImageSize.SQUARE.value
    n: int = 1
    quality: str = "auto"
    aspect_ratio: str = AspectRatio.SQUARE.value

    @property
    def is_image_to_image(self) -> bool:
        return self.mode is GenerationMode.IMAGE_TO_IMAGE

    def validate(self):
        """校验参数范围（不检查提示词和源图片，它们由调度器分类报错）"""
        if not 1 <= self.n <= MAX_IMAGE_COUNT:
            raise ConfigurationError(f"生成数量必须在 1-{MAX_IMAGE_COUNT} 之间: {self.n}", field="n")
        if len(self.source_images) > MAX_SOURCE_IMAGES:
            raise ConfigurationError(
                f"最多支持 {MAX_SOURCE_IMAGES} 张源图片: {len(self.source_images)}",
                field="source_images",
            )
        if self.aspect_ratio not in {r.value for r in AspectRatio}:
            raise ConfigurationError(f"不支持的图片比例: {self.aspect_ratio}", field="aspect_ratio")
        if self.size not in {s.value for s in ImageSize}:
            raise ConfigurationError(f"不支持的图片尺寸: {self.size}", field="size")
        if self.quality not in ALL_QUALITIES:
            raise ConfigurationError(f"不支持的图片质量: {self.quality}", field="quality")


@dataclass(frozen=True)
class StreamMessage:
    """流式增量文本事件"""
    content: str


@dataclass(frozen=True)
class StreamComplete:
    """流式完成事件，携带一张图片"""
    image_url: str


@dataclass(frozen=True)
class StreamError:
    """流式错误事件"""
    message: str
    code: Optional[str] = None

    @classmethod
    def from_value(cls, error: Union[str, Mapping[str, Any], Exception, None]) -> "StreamError":
        """错误值可能是纯文本，也可能是 {message, code} 结构"""
        if isinstance(error, Mapping):
            code = error.get("code")
            return cls(
                message=str(error.get("message") or "未知错误"),
                code=str(code) if code is not None else None,
            )
        if error is None:
            return cls(message="未知错误")
        return cls(message=str(error))

    def display(self) -> str:
        """生成面向用户的错误信息"""
        text = f"图片生成失败: {self.message}"
        if self.code:
            text += f"\n错误代码: {self.code}"
        return text


StreamEvent = Union[StreamMessage, StreamComplete, StreamError]


@dataclass
class GenerationResult:
    """调度结果"""
    images: List[str]
    model_type: ModelType
    text: str = ""
    record: Optional[GeneratedImage] = None
    status: GenerationStatus = GenerationStatus.SUCCESS

    @property
    def success(self) -> bool:
        return self.status is GenerationStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "model_type": self.model_type.value,
            "images": self.images,
            "text": self.text,
            "record": self.record.to_dict() if self.record else None,
        }
