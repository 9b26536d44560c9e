"""
API 配置与自定义模型的存取
"""

import logging
from dataclasses import replace
from typing import Any, List, Optional

from .exceptions import QuotaExceededError
from .models import ApiConfig, CustomModel, ModelType
from .storage import API_CONFIG_SLOT, CUSTOM_MODELS_SLOT, Store

logger = logging.getLogger(__name__)


class CredentialStore:
    """API 配置（单例槽位）"""

    def __init__(self, store: Store, slot: str = API_CONFIG_SLOT):
        self.store = store
        self.slot = slot

    def get(self) -> Optional[ApiConfig]:
        """
        读取 API 配置

        保存的 http 地址会自动升级为 https 并写回。
        """
        data = self.store.read(self.slot)
        if not data:
            return None
        config = ApiConfig.from_dict(data)
        if config.base_url and not config.is_secure:
            config = config.upgraded()
            self.store.write(self.slot, config.to_dict())
            logger.info(f"API URL已自动升级到HTTPS: {config.base_url}")
        return config

    def set(self, key: str, base_url: str) -> ApiConfig:
        config = ApiConfig(key=key, base_url=base_url)
        self.store.write(self.slot, config.to_dict())
        return config

    def remove(self):
        self.store.remove(self.slot)


class CustomModelRegistry:
    """自定义模型列表，保持添加顺序"""

    def __init__(self, store: Store, slot: str = CUSTOM_MODELS_SLOT):
        self.store = store
        self.slot = slot

    def list(self) -> List[CustomModel]:
        data = self.store.read(self.slot)
        if not data:
            return []
        return [CustomModel.from_dict(item) for item in data]

    def find_by_value(self, value: str) -> Optional[CustomModel]:
        for model in self.list():
            if model.value == value:
                return model
        return None

    def _save(self, models: List[CustomModel], action: str) -> bool:
        try:
            self.store.write(self.slot, [model.to_dict() for model in models])
            return True
        except QuotaExceededError:
            logger.warning(f"存储空间不足，无法{action}自定义模型")
            return False

    def add(self, model: CustomModel) -> bool:
        models = self.list()
        models.append(model)
        return self._save(models, "添加")

    def remove(self, model_id: str) -> bool:
        models = [model for model in self.list() if model.id != model_id]
        return self._save(models, "删除")

    def update(self, model_id: str, **changes: Any) -> bool:
        """
        更新自定义模型的部分字段

        Returns:
            是否写入成功，模型不存在时返回 False
        """
        models = self.list()
        for index, model in enumerate(models):
            if model.id == model_id:
                if "type" in changes and not isinstance(changes["type"], ModelType):
                    changes["type"] = ModelType(changes["type"])
                models[index] = replace(model, **changes)
                return self._save(models, "更新")
        logger.warning(f"自定义模型不存在: {model_id}")
        return False
