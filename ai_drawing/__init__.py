"""
AI Drawing - AI 绘图生成编排器

支持两类生成接口：
- 批量协议 (DALL-E 风格): 一次请求返回完整的图片列表，支持文生图和图片编辑
- 流式协议 (对话接口): 逐段返回文本，最后给出一张图片

生成结果保存在本地有容量上限的历史记录中。
"""

__version__ = "1.0.0"

from .models import (
    ModelType,
    GenerationMode,
    AspectRatio,
    ImageSize,
    GenerationStatus,
    GeneratedImage,
    ApiConfig,
    CustomModel,
    GenerationRequest,
    GenerationResult,
    StreamMessage,
    StreamComplete,
    StreamError,
)
from .exceptions import (
    DrawingError,
    ConfigurationError,
    PathNotFoundError,
    MissingPromptError,
    MissingInputError,
    APIError,
    UpstreamError,
    StorageError,
    QuotaExceededError,
    StreamStateError,
    ImageInputError,
)
from .config import AppConfig, ConfigManager
from .storage import (
    FileStorageMedium,
    MemoryStorageMedium,
    RecordStore,
    UnavailableStore,
    open_record_store,
)
from .history import HistoryLog
from .registry import CredentialStore, CustomModelRegistry
from .prompt_builder import PromptBuilder
from .dalle_client import DalleClient
from .stream_client import ChatImageStreamClient, StreamEventChannel, StreamState
from .dispatcher import GenerationDispatcher
from .output_manager import OutputManager

__all__ = [
    # Enums
    "ModelType",
    "GenerationMode",
    "AspectRatio",
    "ImageSize",
    "GenerationStatus",
    "StreamState",
    # Data Models
    "GeneratedImage",
    "ApiConfig",
    "CustomModel",
    "GenerationRequest",
    "GenerationResult",
    "StreamMessage",
    "StreamComplete",
    "StreamError",
    "AppConfig",
    # Exceptions
    "DrawingError",
    "ConfigurationError",
    "PathNotFoundError",
    "MissingPromptError",
    "MissingInputError",
    "APIError",
    "UpstreamError",
    "StorageError",
    "QuotaExceededError",
    "StreamStateError",
    "ImageInputError",
    # Components
    "ConfigManager",
    "FileStorageMedium",
    "MemoryStorageMedium",
    "RecordStore",
    "UnavailableStore",
    "open_record_store",
    "HistoryLog",
    "CredentialStore",
    "CustomModelRegistry",
    "PromptBuilder",
    "DalleClient",
    "ChatImageStreamClient",
    "StreamEventChannel",
    "GenerationDispatcher",
    "OutputManager",
]
