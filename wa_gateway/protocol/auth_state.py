"""
认证数据存储

每个实例一个目录，目录下每个认证条目一个 JSON 文件，
连接创建时加载，凭据更新时写回，注销时整目录删除
"""

import json
import os
import re
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from wa_gateway.utils.path_helper import (
    ensure_directory_exists,
    get_instance_dir,
    remove_directory,
)


class MultiFileAuthState:
    """多文件认证数据存储"""

    def __init__(self, sessions_dir: str, logger: Optional[logging.Logger] = None):
        """初始化存储

        Args:
            sessions_dir: 会话根目录
            logger: 日志记录器
        """
        self.sessions_dir = Path(sessions_dir)
        self.logger = logger or logging.getLogger(__name__)

        ensure_directory_exists(self.sessions_dir)

    def path_for(self, instance_key: str) -> Path:
        """获取实例认证目录"""
        return get_instance_dir(self.sessions_dir, instance_key)

    def load(self, instance_key: str) -> Dict[str, Any]:
        """加载认证数据（目录不存在时创建空目录）

        Args:
            instance_key: 实例 key

        Returns:
            Dict[str, Any]: {条目名: 数据}
        """
        folder = self.path_for(instance_key)
        ensure_directory_exists(folder)

        creds: Dict[str, Any] = {}
        for file_path in sorted(folder.glob("*.json")):
            try:
                with open(file_path, 'r', encoding='utf-8') as f:
                    creds[file_path.stem] = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                # 单个条目损坏不影响其他条目，协议端会重新协商
                self.logger.warning(f"跳过损坏的认证文件 {file_path}: {e}")

        self.logger.debug(f"已加载认证数据: {instance_key}，共 {len(creds)} 个条目")
        return creds

    def save(self, instance_key: str, creds: Dict[str, Any]) -> None:
        """写入认证数据（按条目覆盖，值为 None 的条目删除）

        Args:
            instance_key: 实例 key
            creds: {条目名: 数据}

        Raises:
            OSError: 写入失败
        """
        folder = self.path_for(instance_key)
        ensure_directory_exists(folder)

        for name, value in creds.items():
            file_path = folder / f"{self._safe_name(name)}.json"

            if value is None:
                if file_path.exists():
                    file_path.unlink()
                continue

            tmp_path = file_path.with_suffix(".json.tmp")
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(value, f, ensure_ascii=False)
            os.replace(tmp_path, file_path)

        self.logger.debug(f"已保存认证数据: {instance_key}，{len(creds)} 个条目")

    def delete(self, instance_key: str) -> bool:
        """删除实例的全部认证数据

        Args:
            instance_key: 实例 key

        Returns:
            bool: 目录存在并已删除返回 True

        Raises:
            OSError: 删除失败
        """
        removed = remove_directory(self.path_for(instance_key))
        if removed:
            self.logger.info(f"已删除认证数据: {instance_key}")
        return removed

    @staticmethod
    def _safe_name(name: str) -> str:
        # 条目名来自协议端，只保留文件名安全字符
        return re.sub(r'[^A-Za-z0-9._-]', '_', str(name)) or "_"
