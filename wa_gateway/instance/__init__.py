"""
实例管理模块 (instance)

提供多实例管理功能，包括：
- 实例状态与操作结果 (instance_state)
- 实例注册表与初始化守卫 (InstanceRegistry)
- 配对码缓存 (PairingCodeCache)
- 断线重连策略 (ReconnectPolicy)
- 实例管理器 (InstanceManager)
"""

__version__ = "0.1.0"
