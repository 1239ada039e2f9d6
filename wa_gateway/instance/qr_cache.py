"""
配对码缓存

内存中保存每个实例最近一次签发的二维码，避免每次轮询都访问持久化存储。
缓存可随时丢失，丢失后从持久化记录恢复。
"""

import logging
from threading import Lock
from datetime import datetime
from typing import Dict, Optional
from dataclasses import dataclass


@dataclass
class PairingEntry:
    """缓存条目"""
    payload: str
    issued_at: datetime


class PairingCodeCache:
    """配对码缓存"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._entries: Dict[str, PairingEntry] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[PairingEntry]:
        """获取缓存条目

        Args:
            key: 实例 key

        Returns:
            Optional[PairingEntry]: 条目，不存在返回 None
        """
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, payload: str, issued_at: datetime) -> None:
        """写入（覆盖）缓存条目

        Args:
            key: 实例 key
            payload: 二维码数据
            issued_at: 签发时间
        """
        with self._lock:
            self._entries[key] = PairingEntry(payload=payload, issued_at=issued_at)
        self.logger.debug(f"缓存二维码: {key}")

    def clear(self, key: str) -> bool:
        """删除缓存条目

        Returns:
            bool: 条目存在并已删除返回 True
        """
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear_all(self) -> None:
        """清空缓存"""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
