"""
远程文件下载

按 URL 下载要发送的文件，限制大小和超时
"""

import mimetypes
import logging
from typing import Optional
from dataclasses import dataclass

import httpx

from wa_gateway.exceptions import TransientIOError, ValidationError

DEFAULT_MIMETYPE = "application/octet-stream"


@dataclass
class Document:
    """待发送的文件"""
    data: bytes
    mimetype: str
    file_name: str


def guess_file_name(mimetype: str, fallback_ext: str = "pdf") -> str:
    """根据 MIME 类型生成文件名

    Args:
        mimetype: MIME 类型
        fallback_ext: 无法识别时使用的扩展名

    Returns:
        str: 如 file.pdf
    """
    ext = mimetypes.guess_extension(mimetype or "") if mimetype else None
    if ext:
        return f"file{ext}"
    return f"file.{fallback_ext}"


class MediaFetcher:
    """远程文件下载器"""

    def __init__(
        self,
        max_size: int = 50 * 1024 * 1024,
        timeout: float = 30.0,
        logger: Optional[logging.Logger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """初始化下载器

        Args:
            max_size: 最大文件大小（字节）
            timeout: 下载超时（秒）
            logger: 日志记录器
            transport: httpx 传输层（测试时注入）
        """
        self.max_size = max_size
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self.transport = transport

    async def fetch(self, url: str, file_name: Optional[str] = None) -> Document:
        """下载文件

        Args:
            url: 文件地址
            file_name: 指定文件名（可选）

        Returns:
            Document: 下载的文件

        Raises:
            ValidationError: URL 非法或文件超过大小限制
            TransientIOError: 下载失败
        """
        if not url or not str(url).startswith(("http://", "https://")):
            raise ValidationError(f"Invalid fileUrl: {url}")

        self.logger.info(f"下载文件: {url}")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport
            ) as client:
                async with client.stream("GET", url) as resp:
                    resp.raise_for_status()

                    declared = resp.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_size:
                        raise ValidationError(
                            f"File too large: {declared} bytes (max {self.max_size})"
                        )

                    chunks = []
                    received = 0
                    async for chunk in resp.aiter_bytes():
                        received += len(chunk)
                        if received > self.max_size:
                            raise ValidationError(
                                f"File too large: exceeds {self.max_size} bytes"
                            )
                        chunks.append(chunk)

                    content_type = resp.headers.get("content-type", "")
        except httpx.HTTPError as e:
            raise TransientIOError(f"Failed to fetch file: {e}")

        mimetype = content_type.split(";")[0].strip() or DEFAULT_MIMETYPE

        return Document(
            data=b"".join(chunks),
            mimetype=mimetype,
            file_name=file_name or guess_file_name(mimetype)
        )
