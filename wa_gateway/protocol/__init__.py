"""
协议客户端模块 (protocol)

提供管理器与消息协议之间的边界，包括：
- 协议客户端契约与生命周期事件 (base_client)
- 每实例的认证数据持久化 (auth_state)
- 基于 WebSocket 桥接的具体实现 (bridge_client)
"""

__version__ = "0.1.0"
