"""
消息分发器

通过已连接的实例发送文本和文件消息。
发送失败只报告给调用方，不改变实例的生命周期状态。
"""

import os
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .address import normalize_address
from .media_fetcher import Document, MediaFetcher
from wa_gateway.exceptions import (
    NotConnectedError,
    ProtocolClientError,
    TerminalLogoutError,
    UpstreamProtocolError,
    ValidationError,
)
from wa_gateway.instance.instance_manager import InstanceManager


class MessageDispatcher:
    """消息分发器

    职责：
    1. 校验实例已连接
    2. 规范化收件人地址
    3. 准备文件内容（远程下载或上传的临时文件）
    4. 调用协议客户端发送
    """

    def __init__(
        self,
        manager: InstanceManager,
        fetcher: Optional[MediaFetcher] = None,
        address_domain: str = "s.whatsapp.net",
        logger: Optional[logging.Logger] = None
    ):
        """初始化分发器

        Args:
            manager: 实例管理器
            fetcher: 远程文件下载器
            address_domain: 协议地址域名
            logger: 日志记录器
        """
        self.manager = manager
        self.fetcher = fetcher or MediaFetcher(logger=logger)
        self.address_domain = address_domain
        self.logger = logger or logging.getLogger(__name__)

    async def send_text(self, instance_key: str, number: str, message: str) -> str:
        """发送文本消息

        Args:
            instance_key: 实例 key
            number: 收件人号码或地址
            message: 文本内容

        Returns:
            str: 实际使用的协议地址

        Raises:
            ValidationError: 缺少必填字段
            NotConnectedError: 实例未连接
            UpstreamProtocolError: 协议端发送失败
        """
        self._require_fields(instance_key=instance_key, number=number, message=message)

        handle = self.manager.require_connected(instance_key)
        address = normalize_address(number, self.address_domain)

        await self._send(instance_key, handle, address, {"text": message})
        return address

    async def send_document_from_url(
        self,
        instance_key: str,
        number: str,
        file_url: str,
        caption: Optional[str] = None,
        file_name: Optional[str] = None
    ) -> str:
        """下载远程文件并发送

        Args:
            instance_key: 实例 key
            number: 收件人号码或地址
            file_url: 文件地址
            caption: 说明文字
            file_name: 文件名（可选，默认按 MIME 类型生成）

        Returns:
            str: 实际使用的协议地址

        Raises:
            ValidationError: 缺少必填字段或文件超过大小限制
            NotConnectedError: 实例未连接
            TransientIOError: 下载失败
            UpstreamProtocolError: 协议端发送失败
        """
        self._require_fields(instance_key=instance_key, number=number, fileUrl=file_url)

        # 先确认实例已连接，避免无用的下载
        self.manager.require_connected(instance_key)
        address = normalize_address(number, self.address_domain)

        document = await self.fetcher.fetch(file_url, file_name)

        handle = self.manager.require_connected(instance_key)
        await self._send(instance_key, handle, address, self._document_content(document, caption))
        return address

    async def send_document_from_upload(
        self,
        instance_key: str,
        number: str,
        path: str,
        mimetype: Optional[str],
        file_name: str,
        caption: Optional[str] = None
    ) -> str:
        """发送上传的文件，发送结束后（无论成败）删除临时文件

        Args:
            instance_key: 实例 key
            number: 收件人号码或地址
            path: 上传文件的临时路径
            mimetype: MIME 类型
            file_name: 原始文件名
            caption: 说明文字

        Returns:
            str: 实际使用的协议地址

        Raises:
            ValidationError: 缺少必填字段
            NotConnectedError: 实例未连接
            UpstreamProtocolError: 协议端发送失败
        """
        try:
            self._require_fields(instance_key=instance_key, number=number, file=path)

            handle = self.manager.require_connected(instance_key)
            address = normalize_address(number, self.address_domain)

            data = await asyncio.to_thread(Path(path).read_bytes)
            document = Document(
                data=data,
                mimetype=mimetype or "application/octet-stream",
                file_name=file_name or Path(path).name
            )

            await self._send(instance_key, handle, address, self._document_content(document, caption))
            return address
        finally:
            if path:
                await asyncio.to_thread(self._remove_temp_file, path)

    async def _send(self, instance_key: str, handle, address: str, content: Dict[str, Any]) -> None:
        """调用协议客户端发送，失败转换为 UpstreamProtocolError

        实例在发送途中被远端注销时按未连接处理，客户端需要重新启动会话。
        """
        try:
            await handle.send(address, content)
        except TerminalLogoutError as e:
            self.logger.warning(f"发送时实例已被远端注销 {instance_key}: {e}")
            raise NotConnectedError("Session not connected")
        except ProtocolClientError as e:
            self.logger.error(f"❌ 发送失败 {instance_key} -> {address}: {e}")
            raise UpstreamProtocolError(str(e))

        self.logger.info(f"📤 消息已发送: {instance_key} -> {address}")

    @staticmethod
    def _document_content(document: Document, caption: Optional[str]) -> Dict[str, Any]:
        return {
            "document": document.data,
            "mimetype": document.mimetype,
            "fileName": document.file_name,
            "caption": caption or "",
        }

    @staticmethod
    def _require_fields(**fields: Any) -> None:
        missing = [name for name, value in fields.items() if value is None or str(value).strip() == ""]
        if missing:
            raise ValidationError(f"{', '.join(missing)} required")

    def _remove_temp_file(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"删除临时文件失败 {path}: {e}")
