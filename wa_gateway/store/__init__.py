"""
会话存储模块 (store)

提供实例记录的持久化，包括：
- 记录数据结构与不变量 (SessionRecord)
- 内存 / JSON 文件 / SQLite 三种存储实现
- 按配置创建存储 (create_session_store)
"""

import logging
from typing import Optional

from .session_store import SessionStore, SessionRecord, MemorySessionStore, JsonSessionStore
from .sqlite_store import SqliteSessionStore

__version__ = "0.1.0"


def create_session_store(
    backend: str,
    path: str,
    logger: Optional[logging.Logger] = None
) -> SessionStore:
    """按后端名称创建会话存储

    Args:
        backend: json / sqlite / memory
        path: 存储文件路径（memory 忽略）
        logger: 日志记录器

    Returns:
        SessionStore: 存储实例

    Raises:
        ValueError: 不支持的后端
    """
    if backend == "json":
        return JsonSessionStore(path, logger)
    if backend == "sqlite":
        return SqliteSessionStore(path, logger)
    if backend == "memory":
        return MemorySessionStore()
    raise ValueError(f"不支持的存储后端: {backend}")
