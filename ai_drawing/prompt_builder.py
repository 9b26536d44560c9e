"""
提示词构建 - 基于 Jinja2 模板追加参考图片说明和比例提示
"""

import logging
from typing import Any, Dict, Optional

from jinja2 import Environment, StrictUndefined, TemplateError

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_TEMPLATE = (
    "\n\n参考图片信息：上传了{{ image_count }}张参考图片，"
    "第一张作为主要参考，其他图片作为额外参考。"
)
DEFAULT_ASPECT_RATIO_TEMPLATE = "\n图片生成比例为：{{ aspect_ratio }}"


class PromptBuilder:
    """提示词构建器"""

    def __init__(
        self,
        reference_template: str = DEFAULT_REFERENCE_TEMPLATE,
        aspect_ratio_template: str = DEFAULT_ASPECT_RATIO_TEMPLATE,
    ):
        """
        初始化提示词构建器

        Args:
            reference_template: 多张源图片时追加的说明，可用变量 image_count
            aspect_ratio_template: 流式模型追加的比例提示，可用变量 aspect_ratio
        """
        # prompt不需要HTML转义
        self.env = Environment(autoescape=False, undefined=StrictUndefined, keep_trailing_newline=True)
        try:
            self._reference = self.env.from_string(reference_template)
            self._aspect_ratio = self.env.from_string(aspect_ratio_template)
        except TemplateError as e:
            raise ConfigurationError(f"提示词模板格式错误: {e}", field="prompt_templates")

    def _render(self, template, context: Dict[str, Any]) -> str:
        try:
            return template.render(**context)
        except TemplateError as e:
            raise ConfigurationError(f"提示词模板渲染失败: {e}", field="prompt_templates")

    def build(
        self,
        prompt: str,
        image_count: int = 0,
        aspect_ratio: Optional[str] = None,
    ) -> str:
        """
        构建最终提示词

        Args:
            prompt: 用户输入的提示词
            image_count: 源图片数量，超过1张时追加说明
            aspect_ratio: 需要追加的比例，None 表示不追加

        Returns:
            最终提示词
        """
        result = prompt.strip()
        if image_count > 1:
            result += self._render(self._reference, {"image_count": image_count})
        if aspect_ratio:
            result += self._render(self._aspect_ratio, {"aspect_ratio": aspect_ratio})
        return result
