"""
会话记录存储

实例记录（Instance Record）的持久化契约，以及内存、JSON 文件两种实现。

记录不变量：
- pairing_payload 与 connected=True 互斥
- pairing_issued_at 当且仅当 pairing_payload 存在时存在
所有修改都通过 mark_* / clear_pairing 完成，由这些方法保证不变量。
"""

import json
import os
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Any
from dataclasses import dataclass, field, replace

from wa_gateway.exceptions import TransientIOError


def utc_now() -> datetime:
    """当前 UTC 时间"""
    return datetime.now(timezone.utc)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class SessionRecord:
    """实例记录"""
    key: str
    connected: bool = False
    pairing_payload: Optional[str] = None  # 渲染后的二维码（data URL）
    pairing_issued_at: Optional[datetime] = None
    last_connected_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """转换为可序列化的字典

        Returns:
            Dict[str, Any]: 记录字典
        """
        return {
            "key": self.key,
            "connected": self.connected,
            "pairing_payload": self.pairing_payload,
            "pairing_issued_at": _format_ts(self.pairing_issued_at),
            "last_connected_at": _format_ts(self.last_connected_at),
            "created_at": _format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        """从字典创建记录

        Args:
            data: 记录字典

        Returns:
            SessionRecord: 实例记录
        """
        return cls(
            key=data["key"],
            connected=bool(data.get("connected", False)),
            pairing_payload=data.get("pairing_payload"),
            pairing_issued_at=_parse_ts(data.get("pairing_issued_at")),
            last_connected_at=_parse_ts(data.get("last_connected_at")),
            created_at=_parse_ts(data.get("created_at")) or utc_now(),
        )


class SessionStore(ABC):
    """会话记录存储抽象接口

    子类只需实现 get / list_records / save / delete 四个基本操作，
    状态变更方法在此基础上以“读-改-写”的方式实现，并用锁串行化。

    实现类：
    - MemorySessionStore: 内存存储（测试、临时运行）
    - JsonSessionStore: JSON 文件存储
    - SqliteSessionStore: SQLite 存储
    """

    def __init__(self):
        self._write_lock = threading.RLock()

    @abstractmethod
    def get(self, key: str) -> Optional[SessionRecord]:
        """获取记录

        Args:
            key: 实例 key

        Returns:
            Optional[SessionRecord]: 记录，不存在返回 None

        Raises:
            TransientIOError: 存储读取失败
        """
        pass

    @abstractmethod
    def list_records(self) -> List[SessionRecord]:
        """获取所有记录

        Returns:
            List[SessionRecord]: 记录列表
        """
        pass

    @abstractmethod
    def save(self, record: SessionRecord) -> None:
        """写入记录（存在则覆盖）

        Args:
            record: 实例记录

        Raises:
            TransientIOError: 存储写入失败
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """删除记录

        Args:
            key: 实例 key

        Returns:
            bool: 记录存在并已删除返回 True
        """
        pass

    def upsert_placeholder(self, key: str) -> SessionRecord:
        """插入或重置占位记录

        记录不存在则创建；存在则置为未连接并清除二维码，保留其他字段。

        Args:
            key: 实例 key

        Returns:
            SessionRecord: 写入后的记录
        """
        with self._write_lock:
            record = self.get(key)
            if record is None:
                record = SessionRecord(key=key)
            else:
                record = replace(
                    record,
                    connected=False,
                    pairing_payload=None,
                    pairing_issued_at=None
                )
            self.save(record)
            return record

    def mark_pairing(self, key: str, payload: str, issued_at: datetime) -> bool:
        """记录新签发的二维码（同时置为未连接）

        Returns:
            bool: 记录存在并已更新返回 True
        """
        return self._update(key, lambda r: replace(
            r,
            connected=False,
            pairing_payload=payload,
            pairing_issued_at=issued_at
        ))

    def mark_connected(self, key: str, connected_at: datetime) -> bool:
        """记录连接成功（同时清除二维码）

        Returns:
            bool: 记录存在并已更新返回 True
        """
        return self._update(key, lambda r: replace(
            r,
            connected=True,
            pairing_payload=None,
            pairing_issued_at=None,
            last_connected_at=connected_at
        ))

    def mark_disconnected(self, key: str) -> bool:
        """记录连接断开

        Returns:
            bool: 记录存在并已更新返回 True
        """
        return self._update(key, lambda r: replace(
            r,
            connected=False,
            pairing_payload=None,
            pairing_issued_at=None
        ))

    def clear_pairing(self, key: str) -> bool:
        """清除二维码字段

        Returns:
            bool: 记录存在并已更新返回 True
        """
        return self._update(key, lambda r: replace(
            r,
            pairing_payload=None,
            pairing_issued_at=None
        ))

    def _update(self, key: str, mutate: Callable[[SessionRecord], SessionRecord]) -> bool:
        # 不做 upsert：记录被注销删除后，迟到的事件不能把它重新建出来
        with self._write_lock:
            record = self.get(key)
            if record is None:
                return False
            self.save(mutate(record))
            return True


class MemorySessionStore(SessionStore):
    """内存会话存储

    进程退出即丢失，用于测试和无需持久化的场景
    """

    def __init__(self):
        super().__init__()
        self._records: Dict[str, SessionRecord] = {}

    def get(self, key: str) -> Optional[SessionRecord]:
        record = self._records.get(key)
        return replace(record) if record else None

    def list_records(self) -> List[SessionRecord]:
        return [replace(r) for r in self._records.values()]

    def save(self, record: SessionRecord) -> None:
        self._records[record.key] = replace(record)

    def delete(self, key: str) -> bool:
        with self._write_lock:
            return self._records.pop(key, None) is not None


class JsonSessionStore(SessionStore):
    """JSON 文件会话存储

    所有记录保存在一个 JSON 文件中，{key: record}。
    写入先写临时文件再替换，避免进程中断时留下半截文件。
    """

    def __init__(self, path: str, logger: Optional[logging.Logger] = None):
        """初始化存储

        Args:
            path: JSON 文件路径
            logger: 日志记录器
        """
        super().__init__()
        self.path = Path(path)
        self.logger = logger or logging.getLogger(__name__)

        # 确保目录存在
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # 内存缓存 {key: SessionRecord}
        self._records: Dict[str, SessionRecord] = self._read_file()

        self.logger.info(
            f"JSON 会话存储已加载: {self.path}，共 {len(self._records)} 条记录"
        )

    def get(self, key: str) -> Optional[SessionRecord]:
        record = self._records.get(key)
        return replace(record) if record else None

    def list_records(self) -> List[SessionRecord]:
        return [replace(r) for r in self._records.values()]

    def save(self, record: SessionRecord) -> None:
        with self._write_lock:
            previous = self._records.get(record.key)
            self._records[record.key] = replace(record)
            try:
                self._write_file()
            except OSError as e:
                # 回滚内存状态，保持与文件一致
                if previous is None:
                    self._records.pop(record.key, None)
                else:
                    self._records[record.key] = previous
                raise TransientIOError(f"写入会话存储失败: {e}")

    def delete(self, key: str) -> bool:
        with self._write_lock:
            previous = self._records.pop(key, None)
            if previous is None:
                return False
            try:
                self._write_file()
            except OSError as e:
                self._records[key] = previous
                raise TransientIOError(f"写入会话存储失败: {e}")
            return True

    def _read_file(self) -> Dict[str, SessionRecord]:
        """读取 JSON 文件

        Returns:
            Dict[str, SessionRecord]: 记录字典

        Raises:
            TransientIOError: 文件无法读取或格式错误
        """
        if not self.path.exists():
            return {}

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise TransientIOError(f"读取会话存储失败 {self.path}: {e}")

        records = {}
        for key, item in data.items():
            try:
                records[key] = SessionRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                self.logger.error(f"跳过无效的会话记录 {key}: {e}")
        return records

    def _write_file(self) -> None:
        """原子写入 JSON 文件"""
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        data = {key: record.to_dict() for key, record in self._records.items()}

        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)

        os.replace(tmp_path, self.path)
