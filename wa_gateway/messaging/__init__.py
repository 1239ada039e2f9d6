"""
消息发送模块 (messaging)

提供文本和文件消息的发送，包括：
- 收件人地址规范化 (address)
- 远程文件下载 (MediaFetcher)
- 消息分发 (MessageDispatcher)
"""

__version__ = "0.1.0"
