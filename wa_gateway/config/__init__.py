"""
配置模块 (config)

JSON 配置文件加载、环境变量覆盖与验证
"""

from .config_parser import ConfigParser, ConfigData
from .config_validator import ConfigValidator

__version__ = "1.0.0"
