"""
协议客户端抽象接口

定义管理器与具体消息协议实现之间的契约：
- 连接对象通过事件队列上报生命周期事件
- 管理器通过 connect / send / logout / close 操作连接
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Union
from dataclasses import dataclass, field


@dataclass
class PairingEvent:
    """配对码已就绪（可能多次触发，后一次覆盖前一次）"""
    code: str


@dataclass
class OpenEvent:
    """连接已打开，配对完成"""
    pass


@dataclass
class ClosedEvent:
    """连接已关闭

    logged_out 为 True 表示远端注销了该实例，认证数据失效
    """
    reason: str = ""
    logged_out: bool = False


@dataclass
class CredentialsEvent:
    """认证数据有更新，需要持久化"""
    creds: Dict[str, Any] = field(default_factory=dict)


ProtocolEvent = Union[PairingEvent, OpenEvent, ClosedEvent, CredentialsEvent]


class ProtocolClient(ABC):
    """协议客户端抽象接口

    每个实例 key 对应一个连接对象。事件按产生顺序放入 events 队列，
    由管理器逐个消费；同一个连接最多产生一次 ClosedEvent。

    实现类：
    - BridgeProtocolClient: 通过 WebSocket 桥接进程收发协议帧
    """

    def __init__(self, instance_key: str, auth: Optional[Dict[str, Any]] = None):
        """初始化客户端

        Args:
            instance_key: 实例 key
            auth: 已持久化的认证数据
        """
        self.instance_key = instance_key
        self.auth: Dict[str, Any] = dict(auth or {})
        self.events: "asyncio.Queue[ProtocolEvent]" = asyncio.Queue()
        self._closed_emitted = False

    def emit(self, event: ProtocolEvent) -> None:
        """上报事件

        Args:
            event: 生命周期事件
        """
        if isinstance(event, ClosedEvent):
            if self._closed_emitted:
                return
            self._closed_emitted = True
        self.events.put_nowait(event)

    @abstractmethod
    async def connect(self) -> None:
        """发起连接请求

        只等待连接请求发出，不等待配对或连接完成

        Raises:
            ProtocolClientError: 连接失败
        """
        pass

    @abstractmethod
    async def send(self, address: str, content: Dict[str, Any]) -> None:
        """发送消息

        Args:
            address: 协议地址（如 1555@s.whatsapp.net）
            content: 消息内容，文本为 {"text": ...}，
                     文件为 {"document": bytes, "mimetype": ..., "fileName": ..., "caption": ...}

        Raises:
            ProtocolClientError: 发送失败
        """
        pass

    @abstractmethod
    async def logout(self) -> None:
        """主动注销

        Raises:
            ProtocolClientError: 注销失败
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """关闭连接并释放资源（不注销，可重复调用）"""
        pass


# 工厂契约：(实例 key, 认证数据) -> 连接对象
ProtocolClientFactory = Callable[[str, Dict[str, Any]], ProtocolClient]
