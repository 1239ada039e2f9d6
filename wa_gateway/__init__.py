"""
WA Instance Gateway

在一个 HTTP 服务后面管理多个长连接消息协议实例
"""

__version__ = "1.0.0"
