"""
实例注册表

管理进程内的实例运行时状态：
- 实例 key -> 连接对象
- 实例 key -> 事件消费任务
- 正在初始化的实例（初始化守卫）
- 实例当前生命周期状态
- 待执行的自动重连任务
"""

import asyncio
import logging
from threading import Lock
from typing import Dict, List, Optional, Set, Tuple

from .instance_state import InstanceStatus
from wa_gateway.protocol.base_client import ProtocolClient


class InstanceRegistry:
    """实例注册表

    所有操作都是单 key 的原子操作；同一个 key 任何时刻最多注册一个连接。
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

        self._handles: Dict[str, ProtocolClient] = {}
        self._pumps: Dict[str, asyncio.Task] = {}
        self._initializing: Set[str] = set()
        self._statuses: Dict[str, InstanceStatus] = {}
        self._reconnect_tasks: Set[asyncio.Task] = set()
        self._lock = Lock()

    # ---------- 连接对象 ----------

    def register(self, key: str, handle: ProtocolClient) -> None:
        """注册连接对象

        Args:
            key: 实例 key
            handle: 连接对象

        Raises:
            RuntimeError: 该 key 已有连接
        """
        with self._lock:
            if key in self._handles:
                raise RuntimeError(f"实例已有活动连接: {key}")
            self._handles[key] = handle

        self.logger.debug(f"注册连接: {key}，当前连接数: {self.count()}")

    def get_handle(self, key: str) -> Optional[ProtocolClient]:
        with self._lock:
            return self._handles.get(key)

    def has_handle(self, key: str) -> bool:
        with self._lock:
            return key in self._handles

    def is_current(self, key: str, handle: ProtocolClient) -> bool:
        """判断连接对象是否仍是该 key 当前注册的连接"""
        with self._lock:
            return self._handles.get(key) is handle

    def attach_pump(self, key: str, task: asyncio.Task) -> None:
        """登记连接的事件消费任务"""
        with self._lock:
            self._pumps[key] = task

    def remove(
        self,
        key: str,
        handle: Optional[ProtocolClient] = None
    ) -> Tuple[Optional[ProtocolClient], Optional[asyncio.Task]]:
        """移除连接对象及其事件消费任务

        Args:
            key: 实例 key
            handle: 指定时只有当前注册的正是该连接才移除

        Returns:
            Tuple: (被移除的连接, 被移除的消费任务)，未移除时为 (None, None)
        """
        with self._lock:
            current = self._handles.get(key)
            if current is None or (handle is not None and current is not handle):
                return None, None
            del self._handles[key]
            pump = self._pumps.pop(key, None)

        self.logger.debug(f"移除连接: {key}，剩余连接数: {self.count()}")
        return current, pump

    def count(self) -> int:
        """活动连接数量"""
        with self._lock:
            return len(self._handles)

    def keys(self) -> List[str]:
        """有活动连接的 key 列表"""
        with self._lock:
            return list(self._handles.keys())

    # ---------- 初始化守卫 ----------

    def try_acquire_guard(self, key: str) -> bool:
        """尝试设置初始化守卫

        Returns:
            bool: 设置成功返回 True；已有初始化在进行返回 False
        """
        with self._lock:
            if key in self._initializing:
                return False
            self._initializing.add(key)
            return True

    def release_guard(self, key: str) -> None:
        with self._lock:
            self._initializing.discard(key)

    def is_initializing(self, key: str) -> bool:
        with self._lock:
            return key in self._initializing

    # ---------- 生命周期状态 ----------

    def set_status(self, key: str, status: InstanceStatus) -> None:
        with self._lock:
            old_status = self._statuses.get(key, InstanceStatus.ABSENT)
            if status == InstanceStatus.ABSENT:
                self._statuses.pop(key, None)
            else:
                self._statuses[key] = status

        if old_status != status:
            self.logger.info(f"实例状态变更: {key} {old_status.value} -> {status.value}")

    def get_status(self, key: str) -> InstanceStatus:
        with self._lock:
            return self._statuses.get(key, InstanceStatus.ABSENT)

    def status_keys(self) -> List[str]:
        with self._lock:
            return list(self._statuses.keys())

    # ---------- 重连任务 ----------

    def track_reconnect(self, task: asyncio.Task) -> None:
        """登记重连任务，任务结束后自动移除"""
        with self._lock:
            self._reconnect_tasks.add(task)
        task.add_done_callback(self._discard_reconnect)

    def pending_reconnects(self) -> List[asyncio.Task]:
        with self._lock:
            return list(self._reconnect_tasks)

    def _discard_reconnect(self, task: asyncio.Task) -> None:
        with self._lock:
            self._reconnect_tasks.discard(task)
