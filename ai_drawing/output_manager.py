"""
输出管理器 - 负责保存生成的图片
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .image_utils import decode_data_uri, extension_for, is_inline_image, save_image
from .models import GeneratedImage, GenerationResult

logger = logging.getLogger(__name__)


def _safe_slug(s: str, max_length: int = 40) -> str:
    """将字符串转换为安全的文件名"""
    s = s.strip()
    s = re.sub(r"\s+", "_", s)
    s = re.sub(r"[^0-9A-Za-z\u4e00-\u9fff_\-]", "", s)
    return s[:max_length] or "output"


def _extension_of(reference: str) -> str:
    if is_inline_image(reference):
        mime_type, _ = decode_data_uri(reference)
        return extension_for(mime_type)
    suffix = Path(reference.split("?", 1)[0]).suffix.lower()
    return suffix if suffix in (".png", ".jpg", ".jpeg", ".webp", ".gif") else ".png"


class OutputManager:
    """输出管理器"""

    def __init__(self, base_dir: Path):
        """
        Args:
            base_dir: 输出基础目录
        """
        self.base_dir = Path(base_dir)

    def create_run_directory(self, name: str) -> Path:
        """创建以提示词和时间命名的输出目录"""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        run_dir = self.base_dir / f"{_safe_slug(name)}_{timestamp}"
        run_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"创建输出目录: {run_dir}")
        return run_dir

    def save_result(self, result: GenerationResult, prompt: str) -> List[Path]:
        """
        保存一次生成的全部图片和结果信息

        Returns:
            图片文件路径列表
        """
        if not result.images:
            return []

        run_dir = self.create_run_directory(prompt)
        paths = []
        for index, reference in enumerate(result.images, start=1):
            output_path = run_dir / f"{index:02d}{_extension_of(reference)}"
            paths.append(save_image(reference, output_path))

        info = {
            "prompt": prompt,
            "model_type": result.model_type.value,
            "files": [p.name for p in paths],
            "text": result.text,
            "record_id": result.record.id if result.record else None,
        }
        with open(run_dir / "result.json", "w", encoding="utf-8") as f:
            json.dump(info, f, ensure_ascii=False, indent=2)

        logger.info(f"保存 {len(paths)} 张图片到 {run_dir}")
        return paths

    def export_image(self, image: GeneratedImage, output_path: Optional[Path] = None) -> Path:
        """导出一条历史记录的图片"""
        if output_path is None:
            output_path = self.base_dir / f"image-{image.id}{_extension_of(image.url)}"
        return save_image(image.url, output_path)
