"""
SQLite 会话存储

把实例记录保存在单表 SQLite 数据库中
"""

import os
import sqlite3
import logging
from typing import List, Optional

from .session_store import SessionStore, SessionRecord
from wa_gateway.exceptions import TransientIOError


class SqliteSessionStore(SessionStore):
    """SQLite 会话存储"""

    def __init__(self, path: str = "data/sessions.db", logger: Optional[logging.Logger] = None):
        """初始化存储

        Args:
            path: 数据库文件路径
            logger: 日志记录器
        """
        super().__init__()
        self.path = path
        self.logger = logger or logging.getLogger(__name__)

        # 如果没有目录部分，使用当前目录
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)

        # Flask 请求线程与事件循环线程共用连接，写操作由基类锁串行化
        self.db = sqlite3.connect(path, check_same_thread=False)
        self._init()

        self.logger.info(f"SQLite 会话存储已打开: {path}")

    def _init(self) -> None:
        self.db.execute("""CREATE TABLE IF NOT EXISTS sessions(
            instance_key TEXT PRIMARY KEY,
            connected INTEGER NOT NULL DEFAULT 0,
            pairing_payload TEXT,
            pairing_issued_at TEXT,
            last_connected_at TEXT,
            created_at TEXT NOT NULL
        )""")
        self.db.commit()

    def get(self, key: str) -> Optional[SessionRecord]:
        try:
            with self._write_lock:
                cur = self.db.execute(
                    "SELECT instance_key,connected,pairing_payload,pairing_issued_at,"
                    "last_connected_at,created_at FROM sessions WHERE instance_key=?",
                    (key,)
                )
                row = cur.fetchone()
        except sqlite3.Error as e:
            raise TransientIOError(f"读取会话记录失败 {key}: {e}")

        if not row:
            return None
        return self._row_to_record(row)

    def list_records(self) -> List[SessionRecord]:
        try:
            with self._write_lock:
                cur = self.db.execute(
                    "SELECT instance_key,connected,pairing_payload,pairing_issued_at,"
                    "last_connected_at,created_at FROM sessions ORDER BY created_at"
                )
                rows = cur.fetchall()
        except sqlite3.Error as e:
            raise TransientIOError(f"读取会话记录失败: {e}")

        return [self._row_to_record(row) for row in rows]

    def save(self, record: SessionRecord) -> None:
        data = record.to_dict()
        try:
            with self._write_lock:
                self.db.execute(
                    "INSERT INTO sessions(instance_key,connected,pairing_payload,pairing_issued_at,"
                    "last_connected_at,created_at) VALUES(?,?,?,?,?,?) "
                    "ON CONFLICT(instance_key) DO UPDATE SET connected=excluded.connected, "
                    "pairing_payload=excluded.pairing_payload, "
                    "pairing_issued_at=excluded.pairing_issued_at, "
                    "last_connected_at=excluded.last_connected_at",
                    (
                        data["key"],
                        1 if data["connected"] else 0,
                        data["pairing_payload"],
                        data["pairing_issued_at"],
                        data["last_connected_at"],
                        data["created_at"],
                    )
                )
                self.db.commit()
        except sqlite3.Error as e:
            raise TransientIOError(f"写入会话记录失败 {record.key}: {e}")

    def delete(self, key: str) -> bool:
        try:
            with self._write_lock:
                cur = self.db.execute("DELETE FROM sessions WHERE instance_key=?", (key,))
                self.db.commit()
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise TransientIOError(f"删除会话记录失败 {key}: {e}")

    def close(self) -> None:
        """关闭数据库连接"""
        with self._write_lock:
            self.db.close()

    @staticmethod
    def _row_to_record(row) -> SessionRecord:
        return SessionRecord.from_dict({
            "key": row[0],
            "connected": bool(row[1]),
            "pairing_payload": row[2],
            "pairing_issued_at": row[3],
            "last_connected_at": row[4],
            "created_at": row[5],
        })
