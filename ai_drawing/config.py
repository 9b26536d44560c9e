"""
配置管理器 - 负责加载和验证配置
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError, PathNotFoundError
from .models import DEFAULT_MODEL
from .prompt_builder import DEFAULT_ASPECT_RATIO_TEMPLATE, DEFAULT_REFERENCE_TEMPLATE
from .storage import DEFAULT_QUOTA_BYTES

DEFAULT_STORAGE_DIR = "~/.ai_drawing"


@dataclass
class AppConfig:
    """全局配置"""
    storage_dir: str = DEFAULT_STORAGE_DIR
    storage_quota_bytes: int = DEFAULT_QUOTA_BYTES
    no_storage: bool = False  # 无头环境下不保存任何数据
    api_key: str = ""  # 非空时覆盖已保存的 API 配置
    base_url: str = ""
    proxy: str = ""
    timeout: float = 300.0
    output_dir: str = "./outputs"
    default_model: str = DEFAULT_MODEL
    reference_template: str = DEFAULT_REFERENCE_TEMPLATE
    aspect_ratio_template: str = DEFAULT_ASPECT_RATIO_TEMPLATE


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class ConfigManager:
    """配置管理器"""

    DEFAULT_CONFIG_NAME = "config.json"

    def __init__(self, config_path: Optional[Path] = None, project_root: Optional[Path] = None):
        """
        初始化配置管理器

        Args:
            config_path: 配置文件路径 (config.json)，不存在默认文件时只使用环境变量
            project_root: 项目根目录，用于解析相对路径
        """
        self.project_root = project_root or Path.cwd()
        self.config_path = config_path
        self._config: Optional[AppConfig] = None

    def _load_json(self, path: Path) -> Dict[str, Any]:
        """加载JSON文件"""
        if not path.exists():
            raise PathNotFoundError(str(path), f"配置文件不存在: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"JSON解析错误: {path}, {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"配置文件根对象必须是字典: {path}")
        return data

    def _resolve_path(self, path_str: str) -> str:
        """解析路径，相对路径相对于项目根目录"""
        p = Path(path_str).expanduser()
        if p.is_absolute():
            return str(p)
        return str(self.project_root / p)

    def load(self) -> AppConfig:
        """加载配置（配置文件 + 环境变量，环境变量优先）"""
        if self._config:
            return self._config

        data: Dict[str, Any] = {}
        if self.config_path:
            data = self._load_json(Path(self.config_path))
        else:
            default_path = self.project_root / self.DEFAULT_CONFIG_NAME
            if default_path.exists():
                data = self._load_json(default_path)

        api_cfg = data.get("api", {})
        storage_cfg = data.get("storage", {})
        prompt_cfg = data.get("prompt", {})

        try:
            timeout = float(os.getenv("AI_DRAWING_TIMEOUT") or api_cfg.get("timeout", 300.0))
            quota = int(storage_cfg.get("quota_bytes", DEFAULT_QUOTA_BYTES))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"配置数值格式错误: {e}")

        if timeout <= 0:
            raise ConfigurationError(f"超时时间必须大于0: {timeout}", field="timeout")
        if quota < 0:
            raise ConfigurationError(f"存储配额不能为负数: {quota}", field="quota_bytes")

        storage_dir = os.getenv("AI_DRAWING_STORAGE_DIR") or storage_cfg.get("dir", DEFAULT_STORAGE_DIR)

        self._config = AppConfig(
            storage_dir=self._resolve_path(storage_dir),
            storage_quota_bytes=quota,
            no_storage=_env_flag(os.getenv("AI_DRAWING_NO_STORAGE")) or bool(storage_cfg.get("disabled", False)),
            api_key=os.getenv("AI_DRAWING_API_KEY") or api_cfg.get("key", ""),
            base_url=os.getenv("AI_DRAWING_BASE_URL") or api_cfg.get("base_url", ""),
            proxy=os.getenv("AI_DRAWING_PROXY") or api_cfg.get("proxy", ""),
            timeout=timeout,
            output_dir=self._resolve_path(data.get("output_dir", "./outputs")),
            default_model=data.get("default_model", DEFAULT_MODEL),
            reference_template=prompt_cfg.get("reference_template", DEFAULT_REFERENCE_TEMPLATE),
            aspect_ratio_template=prompt_cfg.get("aspect_ratio_template", DEFAULT_ASPECT_RATIO_TEMPLATE),
        )
        return self._config
