"""
DALL-E 风格批量接口客户端 - 一次请求返回完整的图片列表

参考文档: https://platform.openai.com/docs/api-reference/images
"""

import logging
import mimetypes
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from .exceptions import APIError
from .image_utils import DEFAULT_INLINE_MIME, decode_data_uri, extension_for, is_inline_image
from .models import ModelType

logger = logging.getLogger(__name__)


def api_root(base_url: str) -> str:
    """返回带 /v1 的接口根地址"""
    base = base_url.rstrip("/")
    if base.endswith("/v1"):
        return base
    return f"{base}/v1"


def _error_from_response(response: httpx.Response, prefix: str) -> APIError:
    """从错误响应中提取 message 和 code"""
    message = None
    code = None
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        error = data.get("error", data)
        if isinstance(error, dict):
            message = error.get("message") or error.get("msg")
            code = error.get("code") or error.get("type")
        elif isinstance(error, str):
            message = error

    if not message:
        message = response.text[:200] or f"HTTP {response.status_code}"
    return APIError(
        f"{prefix}: {message}",
        code=str(code) if code is not None else None,
        status_code=response.status_code,
    )


class DalleClient:
    """批量图片接口客户端"""

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
        self.base_url = api_root(base_url)
        self.timeout = timeout
        self.proxy = proxy
        self.transport = transport

    def _client(self, authorized: bool = True) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {"timeout": self.timeout}
        if authorized:
            kwargs["headers"] = {"Authorization": f"Bearer {self.api_key}"}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        elif self.proxy:
            kwargs["proxy"] = self.proxy
        return httpx.AsyncClient(**kwargs)

    async def _post(self, path: str, action: str, **kwargs) -> List[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        start_time = time.time()
        try:
            async with self._client() as client:
                response = await client.post(url, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"{action}请求异常: {e}")
            raise APIError(f"API请求失败: {e}")

        elapsed = time.time() - start_time
        logger.debug(f"{action}响应状态码: {response.status_code}, 耗时 {elapsed:.1f}秒")

        if response.is_error:
            logger.error(f"{action}失败: {response.status_code} - {response.text[:200]}")
            raise _error_from_response(response, f"{action}失败")

        try:
            data = response.json()
        except ValueError:
            raise APIError(f"{action}响应不是合法的 JSON: {response.text[:100]}", status_code=response.status_code)

        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            logger.warning(f"{action}响应缺少 data 列表: {str(data)[:200]}")
            return []
        return entries

    async def _load_image(self, reference: str) -> Tuple[str, bytes]:
        """读取内联图片或下载远程图片，返回 (mime_type, bytes)"""
        if is_inline_image(reference):
            return decode_data_uri(reference)

        logger.debug(f"下载参考图片: {reference[:100]}")
        try:
            # 第三方图片地址不携带 API 密钥
            async with self._client(authorized=False) as client:
                response = await client.get(reference, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise APIError(
                f"下载参考图片失败: {reference}, HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            )
        except httpx.HTTPError as e:
            raise APIError(f"下载参考图片失败: {reference}, {e}")

        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not content_type.startswith("image/"):
            guessed, _ = mimetypes.guess_type(urlparse(reference).path)
            content_type = guessed or DEFAULT_INLINE_MIME
        return content_type, response.content

    async def generate(
        self,
        prompt: str,
        model: str,
        size: str = "1024x1024",
        n: int = 1,
        quality: str = "auto",
    ) -> List[Dict[str, Any]]:
        """
        文生图

        Returns:
            接口返回的 data 列表 [{url?, b64_json?}, ...]
        """
        payload = {
            "prompt": prompt,
            "model": model,
            "size": size,
            "n": n,
            "quality": quality,
        }
        logger.debug(f"创建图片: model={model}, size={size}, n={n}, quality={quality}")
        return await self._post("/images/generations", "生成图片", json=payload)

    async def edit(
        self,
        prompt: str,
        model: str,
        source_image: str,
        size: str = "1024x1024",
        n: int = 1,
        quality: str = "auto",
        mask: Optional[str] = None,
        model_type: ModelType = ModelType.DALLE,
    ) -> List[Dict[str, Any]]:
        """
        图生图（编辑），接口只接受一张参考图

        Args:
            source_image: 源图片，内联图片或远程地址
            mask: 蒙版图片，透明区域为编辑区域

        Returns:
            接口返回的 data 列表
        """
        image_type, image_bytes = await self._load_image(source_image)
        files = {"image": (f"image{extension_for(image_type)}", image_bytes, image_type)}
        if mask:
            mask_type, mask_bytes = await self._load_image(mask)
            files["mask"] = (f"mask{extension_for(mask_type)}", mask_bytes, mask_type)

        data = {
            "prompt": prompt,
            "model": model,
            "modelType": model_type.value,
            "size": size,
            "n": str(n),
            "quality": quality,
        }
        logger.debug(f"编辑图片: model={model}, size={size}, n={n}, mask={'有' if mask else '无'}")
        return await self._post("/images/edits", "编辑图片", data=data, files=files)
