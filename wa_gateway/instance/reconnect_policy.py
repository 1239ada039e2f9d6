"""
重连策略

记录每个实例在时间窗口内的断线次数，计算下一次自动重连的等待时间
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from wa_gateway.store.session_store import utc_now


class ReconnectPolicy:
    """重连策略

    职责：
    1. 记录每个实例的断线时间
    2. 清理超出时间窗口的记录
    3. 按窗口内的断线次数做指数退避

    第一次断线等待 base_delay，之后每次乘以 backoff，不超过 max_delay。
    连接成功后调用 reset 清除记录。
    """

    def __init__(
        self,
        base_delay: float = 3.0,
        max_delay: float = 60.0,
        backoff: float = 2.0,
        window: float = 300.0,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """初始化策略

        Args:
            base_delay: 首次重连延迟（秒）
            max_delay: 最大重连延迟（秒）
            backoff: 退避倍数
            window: 统计断线次数的时间窗口（秒）
            logger: 日志记录器
            clock: 时钟函数（测试时注入）
        """
        self.base_delay = base_delay
        self.max_delay = max(max_delay, base_delay)
        self.backoff = backoff
        self.window = window
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        # 断线历史 {key: [断线时间]}
        self._history: Dict[str, List[datetime]] = {}

        self.logger.debug(
            f"重连策略已初始化: 延迟={base_delay}秒, 上限={max_delay}秒, "
            f"倍数={backoff}, 时间窗口={window}秒"
        )

    def record_disconnect(self, key: str) -> None:
        """记录一次断线"""
        self._history.setdefault(key, []).append(self.clock())
        self._cleanup_old(key)

        self.logger.debug(
            f"记录断线: {key}，时间窗口内断线次数: {self.get_disconnect_count(key)}"
        )

    def next_delay(self, key: str) -> float:
        """计算下一次重连的等待时间

        Returns:
            float: 等待秒数
        """
        attempts = max(1, self.get_disconnect_count(key))
        delay = self.base_delay * (self.backoff ** (attempts - 1))
        return min(delay, self.max_delay)

    def reset(self, key: str) -> None:
        """清除断线记录（连接成功或实例注销后调用）"""
        history = self._history.pop(key, None)
        if history:
            self.logger.debug(f"重置重连策略: {key}，清除 {len(history)} 条断线记录")

    def get_disconnect_count(self, key: str) -> int:
        """获取时间窗口内的断线次数"""
        self._cleanup_old(key)
        return len(self._history.get(key, []))

    def _cleanup_old(self, key: str) -> None:
        """清理超出时间窗口的断线记录"""
        history = self._history.get(key)
        if not history:
            return

        cutoff = self.clock() - timedelta(seconds=self.window)
        kept = [ts for ts in history if ts > cutoff]

        if kept:
            self._history[key] = kept
        else:
            del self._history[key]
