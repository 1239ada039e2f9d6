"""
配置验证器

负责验证配置参数的合法性
"""

import re
from typing import Dict, Any
from wa_gateway.exceptions import ConfigValidationError


class ConfigValidator:
    """配置验证器

    验证配置参数的类型、范围和合法性
    """

    # 默认配置常量
    DEFAULT_SERVER_PORT = 3000
    DEFAULT_HOST = "0.0.0.0"
    DEFAULT_STORE_BACKEND = "json"
    DEFAULT_STORE_PATH = "data/sessions.json"
    DEFAULT_SESSIONS_DIR = "sessions"
    DEFAULT_UPLOAD_DIR = "uploads"
    DEFAULT_BRIDGE_URL = "ws://127.0.0.1:8765/bridge"
    DEFAULT_ADDRESS_DOMAIN = "s.whatsapp.net"
    DEFAULT_CONNECT_TIMEOUT = 20
    DEFAULT_REQUEST_TIMEOUT = 30
    DEFAULT_QR_EXPIRY = 60
    DEFAULT_RECONNECT_DELAY = 3
    DEFAULT_RECONNECT_MAX_DELAY = 60
    DEFAULT_RECONNECT_BACKOFF = 2.0
    DEFAULT_RECONNECT_WINDOW = 300
    DEFAULT_MAX_UPLOAD_SIZE = 50 * 1024 * 1024
    DEFAULT_MAX_FETCH_SIZE = 50 * 1024 * 1024
    DEFAULT_FETCH_TIMEOUT = 30

    # 有效的存储后端
    VALID_STORE_BACKENDS = ["json", "sqlite", "memory"]

    # 有效的日志级别
    VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

    # 桥接地址协议
    VALID_BRIDGE_SCHEMES = ["ws://", "wss://"]

    def validate(self, config: Dict[str, Any]) -> None:
        """验证配置字典

        Args:
            config: 配置字典

        Raises:
            ConfigValidationError: 验证失败时抛出
        """
        try:
            # 只验证存在的配置部分
            if "server" in config:
                self._validate_server_config(config)
            if "auth" in config:
                self._validate_auth_config(config)
            if "storage" in config:
                self._validate_storage_config(config)
            if "protocol" in config:
                self._validate_protocol_config(config)
            if "lifecycle" in config:
                self._validate_lifecycle_config(config)
            if "media" in config:
                self._validate_media_config(config)
            if "logging" in config:
                self._validate_logging_config(config)
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigValidationError(f"配置验证失败: {e}")

    def _validate_server_config(self, config: Dict[str, Any]) -> None:
        """验证服务器配置

        Args:
            config: 配置字典

        Raises:
            ConfigValidationError: 服务器配置无效
        """
        server = config["server"]

        # 验证端口
        if "port" in server:
            port = server["port"]
            if not isinstance(port, int) or isinstance(port, bool):
                raise ConfigValidationError("服务器端口必须是整数")
            if not (1 <= port <= 65535):
                raise ConfigValidationError(
                    f"服务器端口必须在 1-65535 之间，当前值: {port}"
                )

        # 验证主机地址
        if "host" in server:
            host = server["host"]
            if not isinstance(host, str):
                raise ConfigValidationError("主机地址必须是字符串")

    def _validate_auth_config(self, config: Dict[str, Any]) -> None:
        """验证 Basic 认证配置

        Args:
            config: 配置字典

        Raises:
            ConfigValidationError: 认证配置无效
        """
        auth = config["auth"]

        for field in ("username", "password"):
            if field in auth and auth[field] is not None:
                if not isinstance(auth[field], str):
                    raise ConfigValidationError(f"auth.{field} 必须是字符串")

        # 用户名中不能包含冒号（Basic 认证以冒号分隔）
        if auth.get("username") and ":" in auth["username"]:
            raise ConfigValidationError("auth.username 不能包含冒号")

    def _validate_storage_config(self, config: Dict[str, Any]) -> None:
        """验证存储配置

        Args:
            config: 配置字典

        Raises:
            ConfigValidationError: 存储配置无效
        """
        storage = config["storage"]

        if "backend" in storage:
            backend = storage["backend"]
            if backend not in self.VALID_STORE_BACKENDS:
                raise ConfigValidationError(
                    f"不支持的存储后端: {backend}，"
                    f"支持的后端: {', '.join(self.VALID_STORE_BACKENDS)}"
                )

        for field in ("store_path", "sessions_dir", "upload_dir"):
            if field in storage:
                value = storage[field]
                if not isinstance(value, str) or not value:
                    raise ConfigValidationError(f"storage.{field} 必须是非空字符串")

    def _validate_protocol_config(self, config: Dict[str, Any]) -> None:
        """验证协议配置

        Args:
            config: 配置字典

        Raises:
            ConfigValidationError: 协议配置无效
        """
        protocol = config["protocol"]

        # 验证桥接地址
        if "bridge_url" in protocol:
            url = protocol["bridge_url"]
            if not isinstance(url, str) or not any(
                url.startswith(scheme) for scheme in self.VALID_BRIDGE_SCHEMES
            ):
                raise ConfigValidationError(
                    f"无效的桥接地址: {url}，"
                    f"支持的协议: {', '.join(self.VALID_BRIDGE_SCHEMES)}"
                )

        # 验证地址域名（如 s.whatsapp.net）
        if "address_domain" in protocol:
            domain = protocol["address_domain"]
            if not isinstance(domain, str) or not re.match(r'^[A-Za-z0-9.-]+$', domain):
                raise ConfigValidationError(f"无效的地址域名: {domain}")

        for field in ("connect_timeout", "request_timeout"):
            if field in protocol:
                self._require_positive_number(protocol[field], f"protocol.{field}")

    def _validate_lifecycle_config(self, config: Dict[str, Any]) -> None:
        """验证生命周期配置

        Args:
            config: 配置字典

        Raises:
            ConfigValidationError: 生命周期配置无效
        """
        lifecycle = config["lifecycle"]

        # 二维码有效期
        if "qr_expiry" in lifecycle:
            expiry = lifecycle["qr_expiry"]
            if not isinstance(expiry, int) or isinstance(expiry, bool) or expiry < 1:
                raise ConfigValidationError(
                    f"二维码有效期必须是正整数（秒），当前值: {expiry}"
                )

        for field in ("reconnect_delay", "reconnect_max_delay", "reconnect_window"):
            if field in lifecycle:
                self._require_positive_number(lifecycle[field], f"lifecycle.{field}")

        if "reconnect_backoff" in lifecycle:
            backoff = lifecycle["reconnect_backoff"]
            self._require_positive_number(backoff, "lifecycle.reconnect_backoff")
            if backoff < 1:
                raise ConfigValidationError(
                    f"重连退避倍数不能小于 1，当前值: {backoff}"
                )

        delay = lifecycle.get("reconnect_delay")
        max_delay = lifecycle.get("reconnect_max_delay")
        if delay is not None and max_delay is not None and max_delay < delay:
            raise ConfigValidationError(
                f"最大重连延迟 ({max_delay}) 不能小于重连延迟 ({delay})"
            )

    def _validate_media_config(self, config: Dict[str, Any]) -> None:
        """验证文件传输配置

        Args:
            config: 配置字典

        Raises:
            ConfigValidationError: 文件传输配置无效
        """
        media = config["media"]

        for field in ("max_upload_size", "max_fetch_size"):
            if field in media:
                size = media[field]
                if not isinstance(size, int) or isinstance(size, bool) or size < 1:
                    raise ConfigValidationError(
                        f"media.{field} 必须是正整数（字节），当前值: {size}"
                    )

        if "fetch_timeout" in media:
            self._require_positive_number(media["fetch_timeout"], "media.fetch_timeout")

    def _validate_logging_config(self, config: Dict[str, Any]) -> None:
        """验证日志配置

        Args:
            config: 配置字典

        Raises:
            ConfigValidationError: 日志配置无效
        """
        logging_config = config["logging"]

        # 验证日志级别
        if "level" in logging_config:
            level = logging_config["level"]
            if level not in self.VALID_LOG_LEVELS:
                raise ConfigValidationError(
                    f"无效的日志级别: {level}，"
                    f"支持的级别: {', '.join(self.VALID_LOG_LEVELS)}"
                )

        # 验证日志文件路径
        if "file" in logging_config and logging_config["file"] is not None:
            log_file = logging_config["file"]
            if not isinstance(log_file, str):
                raise ConfigValidationError("日志文件路径必须是字符串")

    @staticmethod
    def _require_positive_number(value: Any, name: str) -> None:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigValidationError(f"{name} 必须是正数，当前值: {value}")
