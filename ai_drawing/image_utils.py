"""
图片引用工具

图片引用有两种形式：以 data:image 开头的内联图片，以及可下载的远程地址。
批量接口返回的每一项要么是 url，要么是 b64_json，这里统一转换为图片引用字符串。
"""

import base64
import binascii
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

import requests

from .exceptions import APIError, ImageInputError

logger = logging.getLogger(__name__)

INLINE_IMAGE_PREFIX = "data:image"
DEFAULT_INLINE_MIME = "image/png"

# 上传图片限制
MAX_IMAGE_BYTES = 10 * 1024 * 1024
SUPPORTED_UPLOAD_TYPES = ("image/jpeg", "image/png")


@dataclass(frozen=True)
class RemoteReference:
    """远程图片地址"""
    url: str


@dataclass(frozen=True)
class InlinePayload:
    """内联 base64 图片数据（可能已带 data URI 前缀）"""
    data: str


ImageReference = Union[RemoteReference, InlinePayload]


def is_inline_image(value: str) -> bool:
    return value.startswith(INLINE_IMAGE_PREFIX)


def to_data_uri(payload: str, mime_type: str = DEFAULT_INLINE_MIME) -> str:
    """为 base64 数据加上 data URI 前缀，已有前缀时原样返回"""
    if is_inline_image(payload):
        return payload
    return f"data:{mime_type};base64,{payload}"


def parse_image_entry(entry: Mapping[str, Any]) -> Optional[ImageReference]:
    """解析批量接口返回的单项，优先使用 url"""
    url = entry.get("url")
    if url:
        return RemoteReference(str(url))
    b64 = entry.get("b64_json")
    if b64:
        return InlinePayload(str(b64))
    return None


def normalize_reference(reference: Optional[ImageReference]) -> str:
    """转换为图片引用字符串，无法使用时返回空字符串"""
    if isinstance(reference, RemoteReference):
        return reference.url
    if isinstance(reference, InlinePayload):
        return to_data_uri(reference.data) if reference.data else ""
    return ""


def normalize_entries(entries: Iterable[Mapping[str, Any]]) -> List[str]:
    """
    转换批量接口的 data 列表

    Args:
        entries: [{url?, b64_json?}, ...]

    Returns:
        图片引用列表，空项已过滤
    """
    urls = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        url = normalize_reference(parse_image_entry(entry))
        if url:
            urls.append(url)
    return urls


def decode_data_uri(data_uri: str) -> Tuple[str, bytes]:
    """
    解析 data URI

    Returns:
        (mime_type, 图片字节)
    """
    if data_uri.startswith("data:"):
        header, _, payload = data_uri.partition(",")
        mime_type = header[len("data:"):].split(";")[0] or DEFAULT_INLINE_MIME
    else:
        mime_type, payload = DEFAULT_INLINE_MIME, data_uri
    try:
        return mime_type, base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageInputError(f"图片数据不是合法的 base64: {e}")


def extension_for(mime_type: str) -> str:
    ext = mimetypes.guess_extension(mime_type) or ".png"
    return ".jpg" if ext in (".jpe", ".jpeg") else ext


def load_image_file(path: Union[str, Path]) -> str:
    """
    读取本地图片并转换为 data URI

    只支持 10MB 以内的 JPG 和 PNG 图片。
    """
    path = Path(path)
    if not path.exists():
        raise ImageInputError(f"图片不存在: {path}", path=str(path))

    if path.stat().st_size > MAX_IMAGE_BYTES:
        raise ImageInputError("图片大小不能超过10MB", path=str(path))

    mime_type, _ = mimetypes.guess_type(path.name)
    if mime_type not in SUPPORTED_UPLOAD_TYPES:
        raise ImageInputError("只支持JPG和PNG格式的图片", path=str(path))

    data = base64.b64encode(path.read_bytes()).decode("utf-8")
    logger.debug(f"读取图片: {path} -> {mime_type}, {len(data)} bytes")
    return f"data:{mime_type};base64,{data}"


def save_image(reference: str, output_path: Path, timeout: float = 60.0) -> Path:
    """
    保存图片到本地

    Args:
        reference: 内联图片或远程地址
        output_path: 输出路径
        timeout: 下载超时时间（秒）

    Returns:
        实际输出路径
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if is_inline_image(reference):
        _, image_data = decode_data_uri(reference)
        output_path.write_bytes(image_data)
        logger.debug(f"图片已保存: {output_path}")
        return output_path

    try:
        response = requests.get(reference, timeout=timeout, stream=True)
        response.raise_for_status()
        with open(output_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=8192):
                f.write(chunk)
    except requests.RequestException as e:
        raise APIError(f"下载失败: {reference}, {e}")

    logger.debug(f"下载完成: {output_path}")
    return output_path
