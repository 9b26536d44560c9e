"""
自定义异常类
"""

from typing import Optional


class DrawingError(Exception):
    """绘图系统基础异常"""
    pass


class ConfigurationError(DrawingError):
    """配置错误"""

    def __init__(self, message: str, field: str = None):
        self.field = field
        super().__init__(message)


class PathNotFoundError(DrawingError):
    """路径不存在错误"""

    def __init__(self, path: str, message: str = None):
        self.path = path
        msg = message or f"路径不存在: {path}"
        super().__init__(msg)


class MissingPromptError(DrawingError):
    """提示词为空"""

    def __init__(self, message: str = "请输入提示词"):
        super().__init__(message)


class MissingInputError(DrawingError):
    """图生图模式缺少源图片"""

    def __init__(self, message: str = "请先上传或选择图片"):
        super().__init__(message)


class APIError(DrawingError):
    """API调用错误（上游服务拒绝或传输失败）"""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: int = None,
        partial_text: str = "",
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.partial_text = partial_text
        super().__init__(message)

    def to_dict(self) -> dict:
        """转换为可序列化的字典"""
        return {
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
        }


# 上游错误即 API 错误，保留别名便于调用方按分类捕获
UpstreamError = APIError


class StorageError(DrawingError):
    """本地存储错误"""

    def __init__(self, message: str, slot: str = None):
        self.slot = slot
        super().__init__(message)


class QuotaExceededError(StorageError):
    """存储空间不足"""

    def __init__(self, slot: str, required: int = None, quota: int = None):
        self.required = required
        self.quota = quota
        msg = f"存储空间不足: {slot}"
        if required is not None and quota is not None:
            msg += f" (需要 {required} 字节, 配额 {quota} 字节)"
        super().__init__(msg, slot=slot)


class StreamStateError(DrawingError):
    """流式事件通道状态错误"""

    def __init__(self, message: str, state: str = None):
        self.state = state
        super().__init__(message)


class ImageInputError(DrawingError):
    """输入图片不合法"""

    def __init__(self, message: str, path: str = None):
        self.path = path
        super().__init__(message)
