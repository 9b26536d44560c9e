"""
历史记录 - 最近生成的图片，最新的在最前
"""

import logging
from typing import List, Optional

from .exceptions import QuotaExceededError, StorageError
from .models import GeneratedImage
from .storage import HISTORY_SLOT, Store

logger = logging.getLogger(__name__)

# 限制历史记录数量，防止存储空间溢出
MAX_HISTORY_COUNT = 50


class HistoryLog:
    """有容量上限的历史记录"""

    def __init__(
        self,
        store: Store,
        max_count: int = MAX_HISTORY_COUNT,
        degrade_factor: int = 2,
        slot: str = HISTORY_SLOT,
    ):
        """
        初始化历史记录

        Args:
            store: 槽位存储
            max_count: 最多保留的记录数
            degrade_factor: 存储空间不足时保留 1/degrade_factor 的记录后重试
            slot: 槽位名称
        """
        self.store = store
        self.max_count = max_count
        self.degrade_factor = degrade_factor
        self.slot = slot

    def list(self) -> List[GeneratedImage]:
        """返回全部历史记录，最新的在最前"""
        data = self.store.read(self.slot)
        if not data:
            return []
        return [GeneratedImage.from_dict(item) for item in data]

    def get(self, image_id: str) -> Optional[GeneratedImage]:
        for image in self.list():
            if image.id == image_id:
                return image
        return None

    def _write(self, history: List[GeneratedImage]):
        self.store.write(self.slot, [image.to_dict() for image in history])

    def append(self, image: GeneratedImage):
        """
        添加一条记录到最前

        存储空间不足时先删除较旧的一半记录重试，仍失败则清空历史。
        本方法不会向调用方抛出异常。
        """
        try:
            history = self.list()
        except (ValueError, KeyError, TypeError, StorageError) as e:
            # 损坏的槽位会被新记录覆盖
            logger.warning(f"历史记录无法读取，将重新开始记录: {e}")
            history = []
        history.insert(0, image)
        del history[self.max_count:]

        try:
            self._write(history)
            return
        except QuotaExceededError as e:
            logger.warning(f"存储空间不足，正在清理历史记录... ({e})")
        except StorageError as e:
            logger.warning(f"写入历史记录失败，正在清理历史记录... ({e})")

        reduced = history[:len(history) // self.degrade_factor]
        try:
            self._write(reduced)
            logger.info(f"历史记录已缩减为 {len(reduced)} 条")
            return
        except StorageError as e:
            logger.warning(f"存储空间严重不足，清空所有历史记录 ({e})")

        try:
            self.store.remove(self.slot)
        except StorageError as e:
            logger.error(f"清空历史记录失败: {e}")

    def remove_by_id(self, image_id: str):
        """
        删除指定记录

        Raises:
            QuotaExceededError: 写入失败（此时记录数只会更少，说明存储介质本身有问题）
        """
        history = self.list()
        filtered = [image for image in history if image.id != image_id]
        self._write(filtered)

    def clear(self):
        """清空历史记录"""
        self.store.remove(self.slot)
