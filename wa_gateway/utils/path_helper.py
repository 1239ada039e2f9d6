"""
路径处理工具

提供路径相关的辅助函数
"""

import shutil
from pathlib import Path

from wa_gateway.exceptions import ValidationError


def resolve_relative_path(relative_path: str, base_dir: Path) -> Path:
    """解析相对路径为绝对路径

    Args:
        relative_path: 相对路径
        base_dir: 基准目录

    Returns:
        Path: 绝对路径
    """
    path = Path(relative_path)

    # 如果是绝对路径，直接返回
    if path.is_absolute():
        return path

    # 相对于基准目录
    return base_dir / path


def ensure_directory_exists(dir_path: Path) -> None:
    """确保目录存在，不存在则创建

    Args:
        dir_path: 目录路径
    """
    dir_path.mkdir(parents=True, exist_ok=True)


def validate_instance_key(instance_key: str) -> str:
    """校验实例 key 能否安全地用作目录名

    Args:
        instance_key: 实例 key

    Returns:
        str: 去掉首尾空白后的 key

    Raises:
        ValidationError: key 为空或包含路径分隔符
    """
    if instance_key is None or not str(instance_key).strip():
        raise ValidationError("instanceKey is required")

    key = str(instance_key).strip()

    if key in (".", "..") or "/" in key or "\\" in key or "\x00" in key:
        raise ValidationError(f"Invalid instanceKey: {key}")

    return key


def get_instance_dir(base_dir: Path, instance_key: str) -> Path:
    """获取实例认证数据目录

    Args:
        base_dir: 会话根目录
        instance_key: 实例 key

    Returns:
        Path: 实例目录（不保证存在）
    """
    return Path(base_dir) / validate_instance_key(instance_key)


def remove_directory(dir_path: Path) -> bool:
    """递归删除目录

    Args:
        dir_path: 目录路径

    Returns:
        bool: 目录存在并已删除返回 True，不存在返回 False
    """
    if not dir_path.exists():
        return False

    shutil.rmtree(dir_path)
    return True
