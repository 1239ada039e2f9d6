"""
配置文件解析器

负责加载、解析和验证 JSON 配置文件，并应用 .env / 环境变量覆盖
"""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass

from dotenv import load_dotenv

from .config_validator import ConfigValidator
from wa_gateway.exceptions import ConfigValidationError
from wa_gateway.utils.path_helper import resolve_relative_path


@dataclass
class ConfigData:
    """完整配置数据对象"""

    # 服务器配置
    server_port: int
    host: str

    # Basic 认证（用户名为空表示不启用）
    auth_username: Optional[str]
    auth_password: Optional[str]

    # 存储配置
    store_backend: str
    store_path: str
    sessions_dir: str
    upload_dir: str

    # 协议配置
    bridge_url: str
    address_domain: str
    connect_timeout: float
    request_timeout: float

    # 生命周期配置
    qr_expiry: int
    reconnect_delay: float
    reconnect_max_delay: float
    reconnect_backoff: float
    reconnect_window: float

    # 文件传输配置
    max_upload_size: int
    max_fetch_size: int
    fetch_timeout: float

    # 日志配置
    log_level: str
    log_file: Optional[str]

    @property
    def auth_enabled(self) -> bool:
        """是否启用 Basic 认证"""
        return bool(self.auth_username)


# 环境变量 -> (配置段, 字段, 类型)
ENV_OVERRIDES = {
    "GATEWAY_HOST": ("server", "host", str),
    "GATEWAY_PORT": ("server", "port", int),
    "PORT": ("server", "port", int),
    "BASIC_USER": ("auth", "username", str),
    "BASIC_PASS": ("auth", "password", str),
    "STORE_BACKEND": ("storage", "backend", str),
    "STORE_PATH": ("storage", "store_path", str),
    "SESSIONS_DIR": ("storage", "sessions_dir", str),
    "BRIDGE_URL": ("protocol", "bridge_url", str),
    "QR_EXPIRY": ("lifecycle", "qr_expiry", int),
    "LOG_LEVEL": ("logging", "level", str.upper),
    "LOG_FILE": ("logging", "file", str),
}


class ConfigParser:
    """配置文件解析器

    负责加载 JSON 配置文件，解析并验证配置参数。
    未指定配置文件时只使用默认值和环境变量。
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        validator: Optional[ConfigValidator] = None,
        env_file: Optional[str] = None,
        use_env: bool = True
    ):
        """初始化解析器

        Args:
            config_path: 配置文件路径（可选）
            validator: 配置验证器（可选，默认创建新实例）
            env_file: .env 文件路径（可选，默认在当前目录查找）
            use_env: 是否应用环境变量覆盖
        """
        self.config_path = Path(config_path) if config_path else None
        self.validator = validator or ConfigValidator()
        self.env_file = env_file
        self.use_env = use_env

        # 获取项目根目录（用于解析相对路径）
        self.project_root = Path(__file__).parent.parent.parent

    def parse(self) -> ConfigData:
        """解析配置文件

        Returns:
            ConfigData: 配置数据对象

        Raises:
            FileNotFoundError: 配置文件不存在
            json.JSONDecodeError: JSON 格式错误
            ConfigValidationError: 配置验证失败
        """
        # 1. 加载 JSON 文件
        config_dict = self._load_json() if self.config_path else {}

        # 2. 应用环境变量覆盖
        if self.use_env:
            config_dict = self._apply_env_overrides(config_dict)

        # 3. 应用默认值
        config_dict = self._apply_defaults(config_dict)

        # 4. 验证配置
        self.validator.validate(config_dict)

        # 5. 解析相对路径为绝对路径
        config_dict = self._resolve_paths(config_dict)

        # 6. 转换为 ConfigData 对象
        return self._convert_to_config_data(config_dict)

    def _load_json(self) -> Dict[str, Any]:
        """加载 JSON 文件

        Returns:
            Dict[str, Any]: 配置字典

        Raises:
            FileNotFoundError: 配置文件不存在
            json.JSONDecodeError: JSON 格式错误
        """
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"配置文件不存在: {self.config_path.absolute()}"
            )

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise json.JSONDecodeError(
                f"配置文件 JSON 格式错误: {e.msg}",
                e.doc,
                e.pos
            )

        if not isinstance(data, dict):
            raise ConfigValidationError("配置文件顶层必须是 JSON 对象")
        return data

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """应用 .env 和环境变量覆盖

        Args:
            config: 配置字典

        Returns:
            Dict[str, Any]: 覆盖后的配置字典

        Raises:
            ConfigValidationError: 环境变量类型错误
        """
        load_dotenv(self.env_file)

        for env_name, (section, field, cast) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw is None or raw == "":
                continue

            try:
                value = cast(raw)
            except ValueError:
                raise ConfigValidationError(
                    f"环境变量 {env_name} 的值无效: {raw}"
                )

            config.setdefault(section, {})[field] = value

        return config

    def _apply_defaults(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """应用默认值

        Args:
            config: 原始配置字典

        Returns:
            Dict[str, Any]: 应用默认值后的配置字典
        """
        # 服务器配置默认值
        config.setdefault("server", {})
        config["server"].setdefault("port", ConfigValidator.DEFAULT_SERVER_PORT)
        config["server"].setdefault("host", ConfigValidator.DEFAULT_HOST)

        # 认证配置默认值（默认不启用）
        config.setdefault("auth", {})
        config["auth"].setdefault("username", None)
        config["auth"].setdefault("password", None)

        # 存储配置默认值
        config.setdefault("storage", {})
        config["storage"].setdefault("backend", ConfigValidator.DEFAULT_STORE_BACKEND)
        config["storage"].setdefault("store_path", ConfigValidator.DEFAULT_STORE_PATH)
        config["storage"].setdefault("sessions_dir", ConfigValidator.DEFAULT_SESSIONS_DIR)
        config["storage"].setdefault("upload_dir", ConfigValidator.DEFAULT_UPLOAD_DIR)

        # 协议配置默认值
        config.setdefault("protocol", {})
        config["protocol"].setdefault("bridge_url", ConfigValidator.DEFAULT_BRIDGE_URL)
        config["protocol"].setdefault("address_domain", ConfigValidator.DEFAULT_ADDRESS_DOMAIN)
        config["protocol"].setdefault("connect_timeout", ConfigValidator.DEFAULT_CONNECT_TIMEOUT)
        config["protocol"].setdefault("request_timeout", ConfigValidator.DEFAULT_REQUEST_TIMEOUT)

        # 生命周期配置默认值
        config.setdefault("lifecycle", {})
        config["lifecycle"].setdefault("qr_expiry", ConfigValidator.DEFAULT_QR_EXPIRY)
        config["lifecycle"].setdefault("reconnect_delay", ConfigValidator.DEFAULT_RECONNECT_DELAY)
        config["lifecycle"].setdefault("reconnect_max_delay", ConfigValidator.DEFAULT_RECONNECT_MAX_DELAY)
        config["lifecycle"].setdefault("reconnect_backoff", ConfigValidator.DEFAULT_RECONNECT_BACKOFF)
        config["lifecycle"].setdefault("reconnect_window", ConfigValidator.DEFAULT_RECONNECT_WINDOW)

        # 文件传输配置默认值
        config.setdefault("media", {})
        config["media"].setdefault("max_upload_size", ConfigValidator.DEFAULT_MAX_UPLOAD_SIZE)
        config["media"].setdefault("max_fetch_size", ConfigValidator.DEFAULT_MAX_FETCH_SIZE)
        config["media"].setdefault("fetch_timeout", ConfigValidator.DEFAULT_FETCH_TIMEOUT)

        # 日志配置默认值
        config.setdefault("logging", {})
        config["logging"].setdefault("level", "INFO")
        config["logging"].setdefault("file", None)

        return config

    def _resolve_paths(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """解析相对路径为绝对路径

        Args:
            config: 配置字典

        Returns:
            Dict[str, Any]: 路径已解析的配置字典
        """
        storage = config["storage"]
        for field in ("store_path", "sessions_dir", "upload_dir"):
            storage[field] = str(self._resolve_relative_path(storage[field]))

        # 解析日志文件路径
        if config["logging"].get("file"):
            log_file = config["logging"]["file"]
            config["logging"]["file"] = str(self._resolve_relative_path(log_file))

        return config

    def _resolve_relative_path(self, relative_path: str) -> Path:
        """解析相对路径为绝对路径

        Args:
            relative_path: 相对路径

        Returns:
            Path: 绝对路径
        """
        return resolve_relative_path(relative_path, self.project_root)

    def _convert_to_config_data(self, config: Dict[str, Any]) -> ConfigData:
        """将配置字典转换为 ConfigData 对象

        Args:
            config: 配置字典

        Returns:
            ConfigData: 配置数据对象
        """
        server_config = config["server"]
        auth_config = config["auth"]
        storage_config = config["storage"]
        protocol_config = config["protocol"]
        lifecycle_config = config["lifecycle"]
        media_config = config["media"]
        logging_config = config["logging"]

        return ConfigData(
            server_port=server_config["port"],
            host=server_config["host"],
            auth_username=auth_config["username"] or None,
            auth_password=auth_config["password"] or "",
            store_backend=storage_config["backend"],
            store_path=storage_config["store_path"],
            sessions_dir=storage_config["sessions_dir"],
            upload_dir=storage_config["upload_dir"],
            bridge_url=protocol_config["bridge_url"],
            address_domain=protocol_config["address_domain"],
            connect_timeout=protocol_config["connect_timeout"],
            request_timeout=protocol_config["request_timeout"],
            qr_expiry=lifecycle_config["qr_expiry"],
            reconnect_delay=lifecycle_config["reconnect_delay"],
            reconnect_max_delay=lifecycle_config["reconnect_max_delay"],
            reconnect_backoff=lifecycle_config["reconnect_backoff"],
            reconnect_window=lifecycle_config["reconnect_window"],
            max_upload_size=media_config["max_upload_size"],
            max_fetch_size=media_config["max_fetch_size"],
            fetch_timeout=media_config["fetch_timeout"],
            log_level=logging_config["level"],
            log_file=logging_config["file"]
        )
