"""
自定义异常模块

定义了项目中使用的所有自定义异常类
"""


class GatewayError(Exception):
    """基础异常类

    所有项目特定异常的基类
    """
    pass


class ConfigValidationError(GatewayError):
    """配置验证错误

    当配置文件验证失败时抛出
    """
    pass


class ValidationError(GatewayError):
    """请求参数错误

    缺少必填字段或字段非法，属于客户端错误，不会重试
    """
    pass


class NotConnectedError(GatewayError):
    """实例未连接

    操作需要一个已连接的实例，但注册表中没有对应的连接，客户端需要重新启动会话
    """
    pass


class UpstreamProtocolError(GatewayError):
    """上游协议错误

    协议客户端拒绝了某个操作（如发送失败），只报告给调用方，不改变实例生命周期状态
    """
    pass


class TransientIOError(GatewayError):
    """临时 I/O 错误

    持久化存储或远程下载失败
    """
    pass


class ProtocolClientError(GatewayError):
    """协议客户端错误

    协议客户端连接、发送或注销失败时抛出
    """
    pass


class TerminalLogoutError(ProtocolClientError):
    """远端注销

    实例被远端注销，身份不可恢复，需要重新配对。
    协议客户端在注销后收到请求时抛出，调用方按未连接处理
    """
    pass
