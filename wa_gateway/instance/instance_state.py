"""
实例状态与操作结果

定义实例生命周期状态枚举，以及管理器各操作返回给调用方的结果对象
"""

from enum import Enum
from datetime import datetime
from typing import Any, Dict, Optional
from dataclasses import dataclass


class InstanceStatus(Enum):
    """实例状态枚举"""
    ABSENT = "absent"
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"
    CLOSED_RECOVERABLE = "closed_recoverable"
    CLOSED_TERMINAL = "closed_terminal"


@dataclass
class InstanceInfo:
    """实例信息数据类"""
    key: str
    status: InstanceStatus
    connected: bool
    live: bool
    initializing: bool = False
    last_connected_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instanceKey": self.key,
            "status": self.status.value,
            "connected": self.connected,
            "live": self.live,
            "initializing": self.initializing,
            "lastConnectedAt": self.last_connected_at.isoformat() if self.last_connected_at else None,
        }


@dataclass
class StartResult:
    """启动会话结果"""
    success: bool
    message: str
    connected: bool
    status: InstanceStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "connected": self.connected,
            "status": self.status.value,
        }


@dataclass
class QRResult:
    """二维码查询结果"""
    success: bool
    connected: bool
    qr: Optional[str] = None
    expires_in: Optional[int] = None
    message: Optional[str] = None
    needs_restart: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """转换为接口响应，只输出有值的可选字段"""
        data: Dict[str, Any] = {"success": self.success, "connected": self.connected}
        if self.qr is not None:
            data["qr"] = self.qr
        if self.expires_in is not None:
            data["expiresIn"] = self.expires_in
        if self.message is not None:
            data["message"] = self.message
        if self.needs_restart:
            data["needsRestart"] = True
        return data


@dataclass
class LogoutResult:
    """注销结果"""
    status: str  # "success" / "error"
    message: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status, "message": self.message}
        if self.error is not None:
            data["error"] = self.error
        return data
