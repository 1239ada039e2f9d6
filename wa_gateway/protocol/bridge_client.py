"""
WebSocket 桥接协议客户端

通过 WebSocket 连接协议桥接进程，桥接进程负责真正的消息协议
（握手、加密、分帧），本客户端只收发 JSON 文本帧：

客户端 -> 桥接:
    {"type": "hello", "instanceKey": ..., "creds": {...}}
    {"type": "send", "id": ..., "to": ..., "content": {...}}
    {"type": "logout", "id": ...}

桥接 -> 客户端:
    {"type": "qr", "qr": "..."}
    {"type": "open"}
    {"type": "close", "reason": "...", "loggedOut": false}
    {"type": "creds", "creds": {...}}
    {"type": "ack", "id": ..., "ok": true, "error": null}

连接在没有收到 close 帧的情况下断开，视为可恢复的断线。
"""

import asyncio
import base64
import json
import uuid
import logging
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .base_client import (
    ProtocolClient,
    PairingEvent,
    OpenEvent,
    ClosedEvent,
    CredentialsEvent,
)
from wa_gateway.exceptions import ProtocolClientError, TerminalLogoutError


class BridgeProtocolClient(ProtocolClient):
    """WebSocket 桥接协议客户端"""

    def __init__(
        self,
        instance_key: str,
        auth: Optional[Dict[str, Any]],
        bridge_url: str,
        connect_timeout: float = 20.0,
        request_timeout: float = 30.0,
        logger: Optional[logging.Logger] = None
    ):
        """初始化客户端

        Args:
            instance_key: 实例 key
            auth: 已持久化的认证数据
            bridge_url: 桥接进程地址（ws:// 或 wss://）
            connect_timeout: 连接超时（秒）
            request_timeout: 单个请求等待应答的超时（秒）
            logger: 日志记录器
        """
        super().__init__(instance_key, auth)
        self.bridge_url = bridge_url
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(f"bridge.{instance_key}")

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None

        # 等待应答的请求 {request_id: Future}
        self._pending: Dict[str, asyncio.Future] = {}
        self._closing = False
        self._logged_out = False

    async def connect(self) -> None:
        """连接桥接进程并发送 hello 帧

        Raises:
            ProtocolClientError: 连接失败
        """
        self.logger.info(f"连接协议桥接: {self.bridge_url} ({self.instance_key})")

        try:
            self._ws = await websockets.connect(
                self.bridge_url,
                open_timeout=self.connect_timeout
            )
            await self._ws.send(json.dumps({
                "type": "hello",
                "instanceKey": self.instance_key,
                "creds": self.auth,
            }))
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            await self._close_socket()
            raise ProtocolClientError(f"连接协议桥接失败: {e}")

        self._reader_task = asyncio.create_task(
            self._read_loop(),
            name=f"bridge-reader-{self.instance_key}"
        )

    async def send(self, address: str, content: Dict[str, Any]) -> None:
        """发送消息

        Args:
            address: 协议地址
            content: 消息内容（document 字段为 bytes 时按 base64 编码）

        Raises:
            ProtocolClientError: 发送失败或桥接拒绝
        """
        payload = dict(content)
        if isinstance(payload.get("document"), (bytes, bytearray)):
            payload["document"] = base64.b64encode(payload["document"]).decode("ascii")

        await self._request({"type": "send", "to": address, "content": payload})

    async def logout(self) -> None:
        """请求桥接进程注销实例

        Raises:
            ProtocolClientError: 注销失败
        """
        await self._request({"type": "logout"})

    async def close(self) -> None:
        """关闭连接（可重复调用）"""
        self._closing = True

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

        await self._close_socket()
        self._fail_pending("连接已关闭")

    async def _request(self, frame: Dict[str, Any]) -> None:
        """发送请求帧并等待 ack

        Args:
            frame: 请求帧（自动附加 id）

        Raises:
            TerminalLogoutError: 实例已被远端注销
            ProtocolClientError: 未连接、超时或桥接返回失败
        """
        if self._logged_out:
            raise TerminalLogoutError(f"实例已被远端注销: {self.instance_key}")
        if self._ws is None:
            raise ProtocolClientError("协议桥接未连接")

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._ws.send(json.dumps({**frame, "id": request_id}))
            ack = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise ProtocolClientError(f"等待协议桥接应答超时 ({self.request_timeout}秒)")
        except ConnectionClosed as e:
            raise ProtocolClientError(f"协议桥接连接已断开: {e}")
        finally:
            self._pending.pop(request_id, None)

        if not ack.get("ok"):
            if self._logged_out:
                raise TerminalLogoutError(f"实例已被远端注销: {self.instance_key}")
            raise ProtocolClientError(ack.get("error") or "协议桥接拒绝了请求")

    async def _read_loop(self) -> None:
        """读取桥接帧并转换为生命周期事件"""
        reason = "connection lost"
        try:
            async for message in self._ws:
                try:
                    frame = json.loads(message)
                except (TypeError, ValueError):
                    self.logger.warning(f"忽略无法解析的桥接帧: {message!r:.200}")
                    continue

                if self._handle_frame(frame):
                    return
        except ConnectionClosed as e:
            reason = f"connection lost: {e}"
        except Exception as e:
            self.logger.error(f"读取协议桥接失败: {e}", exc_info=True)
            reason = f"reader error: {e}"
        finally:
            self._fail_pending("连接已断开")

        if not self._closing:
            self.emit(ClosedEvent(reason=reason, logged_out=False))

    def _handle_frame(self, frame: Dict[str, Any]) -> bool:
        """处理单个桥接帧

        Args:
            frame: 已解析的帧

        Returns:
            bool: 收到 close 帧返回 True（读取循环结束）
        """
        frame_type = frame.get("type")

        if frame_type == "qr":
            self.emit(PairingEvent(code=str(frame.get("qr", ""))))
        elif frame_type == "open":
            self.emit(OpenEvent())
        elif frame_type == "close":
            self._logged_out = bool(frame.get("loggedOut", False))
            self.emit(ClosedEvent(
                reason=str(frame.get("reason") or ""),
                logged_out=self._logged_out
            ))
            return True
        elif frame_type == "creds":
            creds = frame.get("creds") or {}
            self.auth.update(creds)
            self.emit(CredentialsEvent(creds=creds))
        elif frame_type == "ack":
            future = self._pending.get(frame.get("id"))
            if future and not future.done():
                future.set_result(frame)
        else:
            self.logger.debug(f"忽略未知类型的桥接帧: {frame_type}")

        return False

    def _fail_pending(self, message: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_result({"ok": False, "error": message})

    async def _close_socket(self) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.close()
        except Exception as e:
            self.logger.debug(f"关闭桥接连接异常: {e}")
        finally:
            self._ws = None


class BridgeClientFactory:
    """桥接客户端工厂

    满足 ProtocolClientFactory 契约：factory(instance_key, auth) -> ProtocolClient
    """

    def __init__(
        self,
        bridge_url: str,
        connect_timeout: float = 20.0,
        request_timeout: float = 30.0,
        logger: Optional[logging.Logger] = None
    ):
        self.bridge_url = bridge_url
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.logger = logger or logging.getLogger(__name__)

    def __call__(self, instance_key: str, auth: Dict[str, Any]) -> BridgeProtocolClient:
        return BridgeProtocolClient(
            instance_key,
            auth,
            bridge_url=self.bridge_url,
            connect_timeout=self.connect_timeout,
            request_timeout=self.request_timeout,
            logger=self.logger.getChild(instance_key)
        )
