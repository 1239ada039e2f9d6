"""
HTTP 接口模块

提供 Flask 应用、Basic 认证和事件循环线程
"""

__version__ = "1.0.0"
