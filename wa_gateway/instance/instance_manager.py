"""
实例管理器

管理所有消息协议实例的生命周期，包括：
- 创建连接（初始化守卫保证同一 key 只有一个创建流程）
- 消费连接事件：配对码、连接成功、断线
- 断线后按重连策略自动重连，远端注销后清理
- 二维码查询与过期判断
- 主动注销与资源清理

所有协程都运行在同一个事件循环上；每个连接有独立的事件消费任务，
同一实例的事件按产生顺序处理，不同实例之间互不阻塞。
"""

import asyncio
import math
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from .instance_state import (
    InstanceStatus,
    InstanceInfo,
    StartResult,
    QRResult,
    LogoutResult,
)
from .instance_registry import InstanceRegistry
from .qr_cache import PairingCodeCache
from .reconnect_policy import ReconnectPolicy
from wa_gateway.exceptions import NotConnectedError
from wa_gateway.protocol.auth_state import MultiFileAuthState
from wa_gateway.protocol.base_client import (
    ProtocolClient,
    ProtocolClientFactory,
    PairingEvent,
    OpenEvent,
    ClosedEvent,
    CredentialsEvent,
)
from wa_gateway.store.session_store import SessionStore, utc_now
from wa_gateway.utils.path_helper import validate_instance_key
from wa_gateway.utils.qr_image import render_qr_data_url


class InstanceManager:
    """实例管理器

    管理所有消息协议实例的生命周期
    """

    def __init__(
        self,
        store: SessionStore,
        auth_state: MultiFileAuthState,
        client_factory: ProtocolClientFactory,
        qr_expiry: int = 60,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        registry: Optional[InstanceRegistry] = None,
        qr_cache: Optional[PairingCodeCache] = None,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None
    ):
        """初始化实例管理器

        Args:
            store: 会话记录存储
            auth_state: 认证数据存储
            client_factory: 协议客户端工厂
            qr_expiry: 二维码有效期（秒）
            reconnect_policy: 重连策略
            registry: 实例注册表
            qr_cache: 配对码缓存
            qr_renderer: 配对字符串 -> 二维码数据
            clock: 时钟函数（测试时注入）
            logger: 日志记录器
        """
        self.store = store
        self.auth_state = auth_state
        self.client_factory = client_factory
        self.qr_expiry = qr_expiry
        self.logger = logger or logging.getLogger(__name__)
        self.reconnect_policy = reconnect_policy or ReconnectPolicy(logger=self.logger, clock=clock)
        self.registry = registry or InstanceRegistry(self.logger)
        self.qr_cache = qr_cache or PairingCodeCache(self.logger)
        self.qr_renderer = qr_renderer
        self.clock = clock

        self._shutting_down = False

        self.logger.info(f"实例管理器初始化完成，二维码有效期: {qr_expiry}秒")

    # ========== 对外操作 ==========

    async def start_instance(self, instance_key: str) -> StartResult:
        """启动实例会话

        连接请求发出后立即返回，不等待配对或连接完成

        Args:
            instance_key: 实例 key

        Returns:
            StartResult: 启动结果

        Raises:
            ValidationError: key 为空或非法
            TransientIOError: 持久化存储不可用
        """
        key = validate_instance_key(instance_key)

        record = await asyncio.to_thread(self.store.get, key)
        handle = self.registry.get_handle(key)

        if record and record.connected and handle is not None:
            return StartResult(True, f"Instance {key} is already connected", True,
                               self.registry.get_status(key))

        if self.registry.is_initializing(key):
            return StartResult(True, f"Instance {key} is already initializing", False,
                               InstanceStatus.INITIALIZING)

        if handle is not None:
            # 已有连接在等待配对，不再创建第二个连接
            return StartResult(True, f"Instance {key} is awaiting pairing, fetch the QR code", False,
                               self.registry.get_status(key))

        self.logger.info(f"启动实例: {key}")
        started = await self._initialize(key, placeholder=True)

        if started is None:
            return StartResult(True, f"Instance {key} is already initializing", False,
                               InstanceStatus.INITIALIZING)
        if not started:
            status = self.registry.get_status(key)
            if status == InstanceStatus.ABSENT:
                return StartResult(False, f"Instance {key} was logged out while starting", False, status)
            return StartResult(False, f"Failed to start session for {key}, retry scheduled", False, status)

        return StartResult(True, f"Session started for {key}", False, self.registry.get_status(key))

    async def get_qr(self, instance_key: str) -> QRResult:
        """查询当前可用的二维码

        过期判断在读取时进行：签发时间距今达到有效期即视为过期，
        过期后同时清除缓存和持久化记录中的二维码。

        Args:
            instance_key: 实例 key

        Returns:
            QRResult: 查询结果

        Raises:
            ValidationError: key 为空或非法
            TransientIOError: 持久化存储不可用
        """
        key = validate_instance_key(instance_key)

        record = await asyncio.to_thread(self.store.get, key)

        if record and record.connected and self.registry.has_handle(key):
            return QRResult(success=True, connected=True, message="Already connected to WhatsApp")

        payload = None
        issued_at = None
        entry = self.qr_cache.get(key)
        if entry is not None:
            payload, issued_at = entry.payload, entry.issued_at
        elif record and record.pairing_payload and record.pairing_issued_at:
            payload, issued_at = record.pairing_payload, record.pairing_issued_at

        if not payload or issued_at is None:
            return QRResult(
                success=False,
                connected=False,
                message="QR not available. Please restart session.",
                needs_restart=True
            )

        age = (self.clock() - issued_at).total_seconds()

        if age >= self.qr_expiry:
            self.logger.info(f"二维码已过期: {key}，已签发 {age:.1f} 秒")
            self.qr_cache.clear(key)
            await self._persist(self.store.clear_pairing, key)
            return QRResult(
                success=False,
                connected=False,
                message="QR expired. Please restart session.",
                needs_restart=True
            )

        expires_in = self.qr_expiry - math.floor(age)
        return QRResult(
            success=True,
            connected=False,
            qr=payload,
            expires_in=max(0, min(self.qr_expiry, expires_in))
        )

    async def logout_instance(self, instance_key: str) -> LogoutResult:
        """注销实例并删除所有数据

        对不存在的实例同样返回成功。
        协议端注销失败只记录日志，清理照常进行。

        Args:
            instance_key: 实例 key

        Returns:
            LogoutResult: 注销结果

        Raises:
            ValidationError: key 为空或非法
        """
        key = validate_instance_key(instance_key)

        # 先摘除连接，它自己产生的断线事件会被当作过期事件忽略
        handle = await self._detach(key)
        if handle is not None:
            self.logger.info(f"注销实例: {key}")
            try:
                await handle.logout()
            except Exception as e:
                self.logger.warning(f"协议端注销失败 {key}: {e}")
            await self._dispose_handle(key, handle)

        self.qr_cache.clear(key)
        self.reconnect_policy.reset(key)

        try:
            await asyncio.to_thread(self.auth_state.delete, key)
            await asyncio.to_thread(self.store.delete, key)
        except Exception as e:
            self.logger.error(f"❌ 注销失败 {key}: {e}", exc_info=True)
            return LogoutResult(status="error", message="Logout failed", error=str(e))
        finally:
            self.registry.set_status(key, InstanceStatus.ABSENT)

        return LogoutResult(
            status="success",
            message=f"Instance {key} logged out and session removed."
        )

    def require_connected(self, instance_key: str) -> ProtocolClient:
        """获取已连接的连接对象

        Args:
            instance_key: 实例 key

        Returns:
            ProtocolClient: 连接对象

        Raises:
            ValidationError: key 为空或非法
            NotConnectedError: 实例没有已连接的连接
        """
        key = validate_instance_key(instance_key)

        handle = self.registry.get_handle(key)
        if handle is None or self.registry.get_status(key) != InstanceStatus.CONNECTED:
            raise NotConnectedError("Session not connected")

        return handle

    async def load_sessions(self) -> int:
        """进程启动时重新连接所有持久化的实例

        各实例并发创建，互不等待。

        Returns:
            int: 发起连接的实例数
        """
        records = await asyncio.to_thread(self.store.list_records)
        self.logger.info(f"加载持久化会话，共 {len(records)} 个")

        keys = [record.key for record in records]
        results = await asyncio.gather(
            *(self._restore(key) for key in keys),
            return_exceptions=True
        )

        started = 0
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                self.logger.error(f"恢复会话失败 {key}: {result}")
            elif result:
                started += 1

        self.logger.info(f"会话恢复完成，已发起 {started}/{len(records)} 个连接")
        return started

    async def _restore(self, key: str) -> Optional[bool]:
        # 上次进程的连接状态已经无效
        await asyncio.to_thread(self.store.mark_disconnected, key)
        return await self._initialize(key)

    async def shutdown(self) -> None:
        """关闭所有连接（保留持久化记录，下次启动时恢复）"""
        self.logger.info("关闭所有实例连接")
        self._shutting_down = True

        for task in self.registry.pending_reconnects():
            task.cancel()

        for key in self.registry.keys():
            handle = await self._detach(key)
            if handle is not None:
                await self._dispose_handle(key, handle)

        self.qr_cache.clear_all()

    def get_active_count(self) -> int:
        """获取活动连接数"""
        return self.registry.count()

    def get_instance_info(self, instance_key: str, record=None) -> InstanceInfo:
        """获取实例信息

        Args:
            instance_key: 实例 key
            record: 已读取的持久化记录（可选）

        Returns:
            InstanceInfo: 实例信息
        """
        return InstanceInfo(
            key=instance_key,
            status=self.registry.get_status(instance_key),
            connected=bool(record and record.connected),
            live=self.registry.has_handle(instance_key),
            initializing=self.registry.is_initializing(instance_key),
            last_connected_at=record.last_connected_at if record else None
        )

    async def list_instances(self) -> List[InstanceInfo]:
        """获取所有已知实例（持久化记录与进程内状态的并集）"""
        records = {r.key: r for r in await asyncio.to_thread(self.store.list_records)}
        keys = list(records.keys())
        for key in self.registry.status_keys() + self.registry.keys():
            if key not in records and key not in keys:
                keys.append(key)
        return [self.get_instance_info(key, records.get(key)) for key in keys]

    # ========== 创建流程 ==========

    async def _initialize(self, key: str, placeholder: bool = False) -> Optional[bool]:
        """在初始化守卫下执行创建流程

        Args:
            key: 实例 key
            placeholder: 是否先写入占位记录

        Returns:
            Optional[bool]: None 表示已有创建流程在进行；
                            True 表示连接请求已发出；False 表示失败或中止
        """
        if not self.registry.try_acquire_guard(key):
            return None

        try:
            self.registry.set_status(key, InstanceStatus.INITIALIZING)
            if placeholder:
                try:
                    await asyncio.to_thread(self.store.upsert_placeholder, key)
                except Exception:
                    self.registry.set_status(key, InstanceStatus.ABSENT)
                    raise
            return await self._create_connection(key)
        finally:
            self.registry.release_guard(key)

    async def _create_connection(self, key: str) -> bool:
        """加载认证数据、创建连接并发出连接请求

        Returns:
            bool: 连接请求已发出返回 True
        """
        try:
            auth = await asyncio.to_thread(self.auth_state.load, key)
            record = await asyncio.to_thread(self.store.get, key)
        except Exception as e:
            self.logger.error(f"❌ 加载实例数据失败 {key}: {e}")
            self._on_creation_failed(key)
            return False

        if record is None:
            # 创建过程中实例已被注销
            self.logger.info(f"实例已注销，放弃创建连接: {key}")
            self.registry.set_status(key, InstanceStatus.ABSENT)
            await self._quietly(self.auth_state.delete, key)
            return False

        handle = None
        try:
            handle = self.client_factory(key, auth)
            await handle.connect()
        except Exception as e:
            self.logger.error(f"❌ 连接失败 {key}: {e}")
            if handle is not None:
                await self._dispose_handle(key, handle)
            self._on_creation_failed(key)
            return False

        # 连接期间产生的事件留在队列中，注册后按顺序处理
        try:
            record = await asyncio.to_thread(self.store.get, key)
        except Exception as e:
            self.logger.error(f"❌ 读取会话记录失败 {key}: {e}")
            await self._dispose_handle(key, handle)
            self._on_creation_failed(key)
            return False

        if record is None or self._shutting_down:
            self.logger.info(f"连接请求期间实例已注销或服务正在关闭，关闭新连接: {key}")
            await self._dispose_handle(key, handle)
            self.registry.set_status(key, InstanceStatus.ABSENT)
            if record is None:
                await self._quietly(self.auth_state.delete, key)
            return False

        self.registry.register(key, handle)
        self.registry.attach_pump(
            key,
            asyncio.create_task(self._pump_events(key, handle), name=f"events-{key}")
        )

        self.logger.info(f"✅ 连接请求已发出: {key}")
        return True

    def _on_creation_failed(self, key: str) -> None:
        """创建失败按可恢复断线处理"""
        self.registry.set_status(key, InstanceStatus.CLOSED_RECOVERABLE)
        self.reconnect_policy.record_disconnect(key)
        self._schedule_reconnect(key)

    # ========== 事件处理 ==========

    async def _pump_events(self, key: str, handle: ProtocolClient) -> None:
        """逐个消费连接事件，直到连接关闭或被替换"""
        while True:
            event = await handle.events.get()

            if not self.registry.is_current(key, handle):
                self.logger.debug(f"忽略已移除连接的事件: {key} {type(event).__name__}")
                return

            try:
                if isinstance(event, PairingEvent):
                    await self._on_pairing(key, handle, event)
                elif isinstance(event, OpenEvent):
                    await self._on_open(key, handle)
                elif isinstance(event, ClosedEvent):
                    await self._on_closed(key, handle, event)
                    return
                elif isinstance(event, CredentialsEvent):
                    await self._on_credentials(key, event)
                else:
                    self.logger.warning(f"未知的连接事件: {key} {event!r}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"处理连接事件失败 {key}: {e}", exc_info=True)
                if isinstance(event, ClosedEvent):
                    return

    async def _on_pairing(self, key: str, handle: ProtocolClient, event: PairingEvent) -> None:
        """收到配对码：渲染二维码，写入缓存和持久化记录"""
        payload = await asyncio.to_thread(self.qr_renderer, event.code)
        if not self.registry.is_current(key, handle):
            return

        issued_at = self.clock()
        self.qr_cache.set(key, payload, issued_at)
        self.registry.set_status(key, InstanceStatus.AWAITING_PAIRING)
        await self._persist(self.store.mark_pairing, key, payload, issued_at)

        self.logger.info(f"📱 二维码已签发: {key}")

    async def _on_open(self, key: str, handle: ProtocolClient) -> None:
        """连接成功：清除二维码，记录连接时间"""
        self.qr_cache.clear(key)
        self.registry.set_status(key, InstanceStatus.CONNECTED)
        self.reconnect_policy.reset(key)
        await self._persist(self.store.mark_connected, key, self.clock())

        self.logger.info(f"✅ Connected: {key}")

    async def _on_closed(self, key: str, handle: ProtocolClient, event: ClosedEvent) -> None:
        """连接关闭：远端注销则清理，否则计划重连

        状态在第一个 await 之前写入；之后若该 key 已有新的连接或创建流程，
        不再改写它的状态和记录。
        """
        self.registry.remove(key, handle)
        self.qr_cache.clear(key)

        self.logger.info(
            f"❌ Disconnected: {key}, reason: {event.reason or 'unknown'}, "
            f"reconnect: {not event.logged_out}"
        )

        if event.logged_out:
            self.registry.set_status(key, InstanceStatus.CLOSED_TERMINAL)
            self.reconnect_policy.reset(key)
            await self._quietly(self.auth_state.delete, key)
            await self._persist(self.store.delete, key)
            if not self._superseded(key):
                self.registry.set_status(key, InstanceStatus.ABSENT)
            await self._dispose_handle(key, handle)
            return

        self.registry.set_status(key, InstanceStatus.CLOSED_RECOVERABLE)
        self.reconnect_policy.record_disconnect(key)
        await self._persist(self.store.mark_disconnected, key)
        await self._dispose_handle(key, handle)

        if self._superseded(key):
            self.logger.debug(f"实例已重新启动，跳过重连: {key}")
            return
        self._schedule_reconnect(key)

    async def _on_credentials(self, key: str, event: CredentialsEvent) -> None:
        """凭据更新：写回认证目录"""
        await self._quietly(self.auth_state.save, key, event.creds)

    # ========== 重连 ==========

    def _schedule_reconnect(self, key: str) -> None:
        """计划自动重连"""
        if self._shutting_down:
            return

        delay = self.reconnect_policy.next_delay(key)
        self.logger.info(f"⏳ {delay:.1f} 秒后重连: {key}")

        task = asyncio.create_task(self._reconnect_after(key, delay), name=f"reconnect-{key}")
        self.registry.track_reconnect(task)

    async def _reconnect_after(self, key: str, delay: float) -> None:
        """等待后重连

        触发时重新检查持久化记录：记录已删除说明实例已注销，放弃重连；
        已有连接或创建流程在进行时同样放弃。
        """
        await asyncio.sleep(delay)

        try:
            record = await asyncio.to_thread(self.store.get, key)
        except Exception as e:
            self.logger.error(f"重连前读取会话记录失败 {key}: {e}")
            if not self._superseded(key):
                self.reconnect_policy.record_disconnect(key)
                self._schedule_reconnect(key)
            return

        if record is None:
            self.logger.info(f"实例已注销，取消重连: {key}")
            if not self._superseded(key):
                self.registry.set_status(key, InstanceStatus.ABSENT)
            return

        if self._superseded(key):
            self.logger.debug(f"实例已有连接，跳过重连: {key}")
            return

        self.logger.info(f"🔄 重连实例: {key}")
        await self._initialize(key)

    # ========== 辅助方法 ==========

    def _superseded(self, key: str) -> bool:
        """该 key 是否已有新的连接或创建流程"""
        return self.registry.has_handle(key) or self.registry.is_initializing(key)

    async def _detach(self, key: str) -> Optional[ProtocolClient]:
        """从注册表摘除连接并停止其事件消费任务"""
        handle, pump = self.registry.remove(key)
        self._cancel_pump(pump)
        return handle

    @staticmethod
    def _cancel_pump(pump: Optional[asyncio.Task]) -> None:
        if pump is not None and pump is not asyncio.current_task() and not pump.done():
            pump.cancel()

    async def _dispose_handle(self, key: str, handle: ProtocolClient) -> None:
        """关闭连接对象，失败只记录日志"""
        try:
            await handle.close()
        except Exception as e:
            self.logger.warning(f"关闭连接失败 {key}: {e}")

    async def _persist(self, func: Callable[..., Any], *args: Any) -> Any:
        """在线程中执行存储写入，失败只记录日志"""
        try:
            return await asyncio.to_thread(func, *args)
        except Exception as e:
            self.logger.error(f"写入会话记录失败 {getattr(func, '__name__', func)} {args[0] if args else ''}: {e}")
            return None

    async def _quietly(self, func: Callable[..., Any], *args: Any) -> Any:
        """在线程中执行文件操作，失败只记录日志"""
        try:
            return await asyncio.to_thread(func, *args)
        except Exception as e:
            self.logger.error(f"认证数据操作失败 {getattr(func, '__name__', func)} {args[0] if args else ''}: {e}")
            return None
