"""
本地持久化存储 - 以命名槽位保存 JSON 数据

每个槽位保存一个完整的 JSON 文本，写入总是整体替换。
存储介质有容量上限，超出时抛出 QuotaExceededError，由上层决定如何降级。
"""

import errno
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .exceptions import QuotaExceededError, StorageError

logger = logging.getLogger(__name__)

# 槽位名称
API_CONFIG_SLOT = "ai-drawing-api-config"
HISTORY_SLOT = "ai-drawing-history"
CUSTOM_MODELS_SLOT = "ai-drawing-custom-models"

# 与浏览器本地存储相同的默认配额
DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024

# 磁盘已满或超出磁盘配额，与容量上限同样处理
QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class StorageMedium:
    """存储介质基类"""

    def __init__(self, quota_bytes: Optional[int] = DEFAULT_QUOTA_BYTES):
        """
        Args:
            quota_bytes: 所有槽位合计的字节上限，None 表示不限制
        """
        self.quota_bytes = quota_bytes

    def available(self) -> bool:
        return True

    def get(self, slot: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, slot: str, text: str):
        raise NotImplementedError

    def delete(self, slot: str):
        raise NotImplementedError

    def used_bytes(self, exclude: str = None) -> int:
        raise NotImplementedError

    def _check_quota(self, slot: str, text: str):
        if self.quota_bytes is None:
            return
        required = self.used_bytes(exclude=slot) + len(text.encode("utf-8"))
        if required > self.quota_bytes:
            raise QuotaExceededError(slot, required=required, quota=self.quota_bytes)


class MemoryStorageMedium(StorageMedium):
    """进程内存储介质"""

    def __init__(self, quota_bytes: Optional[int] = DEFAULT_QUOTA_BYTES):
        super().__init__(quota_bytes)
        self._data: Dict[str, str] = {}

    def get(self, slot: str) -> Optional[str]:
        return self._data.get(slot)

    def set(self, slot: str, text: str):
        self._check_quota(slot, text)
        self._data[slot] = text

    def delete(self, slot: str):
        self._data.pop(slot, None)

    def used_bytes(self, exclude: str = None) -> int:
        return sum(
            len(text.encode("utf-8"))
            for slot, text in self._data.items()
            if slot != exclude
        )


class FileStorageMedium(StorageMedium):
    """目录存储介质，每个槽位一个文件"""

    SUFFIX = ".json"

    def __init__(self, root: Union[str, Path], quota_bytes: Optional[int] = DEFAULT_QUOTA_BYTES):
        """
        Args:
            root: 存储目录
            quota_bytes: 所有槽位合计的字节上限
        """
        super().__init__(quota_bytes)
        self.root = Path(root).expanduser()
        self._lock = threading.Lock()

    def _path(self, slot: str) -> Path:
        return self.root / f"{slot}{self.SUFFIX}"

    def available(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"存储目录不可用: {self.root}, {e}")
            return False
        return os.access(self.root, os.R_OK | os.W_OK)

    def get(self, slot: str) -> Optional[str]:
        path = self._path(slot)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"读取存储失败: {path}, {e}", slot=slot)

    def set(self, slot: str, text: str):
        with self._lock:
            self._check_quota(slot, text)
            path = self._path(slot)
            tmp_name = None
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                # 先写临时文件再替换，读者只会看到完整的旧值或新值
                fd, tmp_name = tempfile.mkstemp(dir=str(self.root), suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(text)
                os.replace(tmp_name, path)
                tmp_name = None
            except OSError as e:
                if e.errno in QUOTA_ERRNOS:
                    raise QuotaExceededError(slot, required=len(text.encode("utf-8")), quota=self.quota_bytes)
                raise StorageError(f"写入存储失败: {path}, {e}", slot=slot)
            finally:
                if tmp_name is not None:
                    self._discard(tmp_name)

    @staticmethod
    def _discard(tmp_name: str):
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"清理临时文件失败: {tmp_name}, {e}")

    def delete(self, slot: str):
        with self._lock:
            path = self._path(slot)
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageError(f"删除存储失败: {path}, {e}", slot=slot)

    def used_bytes(self, exclude: str = None) -> int:
        if not self.root.exists():
            return 0
        excluded = self._path(exclude).name if exclude else None
        return sum(
            p.stat().st_size
            for p in self.root.glob(f"*{self.SUFFIX}")
            if p.name != excluded
        )


class RecordStore:
    """JSON 槽位读写"""

    def __init__(self, medium: StorageMedium):
        self.medium = medium

    @property
    def available(self) -> bool:
        return True

    def read(self, slot: str) -> Any:
        """
        读取槽位

        Returns:
            解析后的值，槽位不存在返回 None

        Raises:
            json.JSONDecodeError: 槽位内容损坏
        """
        text = self.medium.get(slot)
        if text is None:
            return None
        return json.loads(text)

    def write(self, slot: str, value: Any):
        """
        整体写入槽位

        Raises:
            QuotaExceededError: 存储空间不足
            StorageError: 存储介质写入失败
        """
        text = json.dumps(value, ensure_ascii=False)
        self.medium.set(slot, text)
        logger.debug(f"写入槽位 {slot}: {len(text)} 字符")

    def remove(self, slot: str):
        self.medium.delete(slot)


class UnavailableStore:
    """无存储介质时的空实现，所有操作都不生效"""

    available = False

    def read(self, slot: str) -> Any:
        return None

    def write(self, slot: str, value: Any):
        pass

    def remove(self, slot: str):
        pass


Store = Union[RecordStore, UnavailableStore]


def open_record_store(medium: Optional[StorageMedium]) -> Store:
    """
    检查存储介质是否可用并返回对应的存储

    Args:
        medium: 存储介质，None 表示当前环境没有可用介质

    Returns:
        可用时返回 RecordStore，否则返回 UnavailableStore
    """
    if medium is None:
        logger.info("未配置本地存储，历史记录与配置不会保存")
        return UnavailableStore()
    if not medium.available():
        logger.warning("本地存储不可用，历史记录与配置不会保存")
        return UnavailableStore()
    return RecordStore(medium)
