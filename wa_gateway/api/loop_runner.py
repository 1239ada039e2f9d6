"""
事件循环线程

在后台守护线程中运行 asyncio 事件循环，
同步代码（Flask 请求线程）通过 run() 把协程提交到该循环并等待结果。
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Dict, Optional


class EventLoopThread:
    """后台事件循环线程

    所有实例管理相关的协程都运行在这一个事件循环上。
    """

    def __init__(
        self,
        name: str = "GatewayLoop",
        default_timeout: float = 60.0,
        logger: Optional[logging.Logger] = None
    ):
        """初始化

        Args:
            name: 线程名称
            default_timeout: run() 默认等待超时（秒）
            logger: 日志记录器
        """
        self.name = name
        self.default_timeout = default_timeout
        self.logger = logger or logging.getLogger(__name__)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("事件循环未启动")
        return self._loop

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """启动事件循环线程（重复调用无效果）"""
        if self.is_running():
            return

        self._ready.clear()
        self._thread = threading.Thread(
            target=self._run_in_thread,
            name=self.name,
            daemon=True
        )
        self._thread.start()
        self._ready.wait()

        self.logger.debug(f"事件循环线程已启动: {self.name}")

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """在事件循环上执行协程并等待结果

        Args:
            coro: 协程
            timeout: 等待超时（秒），默认使用 default_timeout

        Returns:
            Any: 协程返回值

        Raises:
            TimeoutError: 等待超时（协程本身继续执行）
            Exception: 协程抛出的异常原样抛出
        """
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout or self.default_timeout)

    def stop(self, timeout: float = 5.0) -> None:
        """停止事件循环并等待线程退出"""
        if not self.is_running():
            return

        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)

        if self._thread.is_alive():
            self.logger.warning(f"事件循环线程未能在 {timeout} 秒内退出")
        else:
            self.logger.debug(f"事件循环线程已停止: {self.name}")

    def _run_in_thread(self) -> None:
        """在线程中运行异步事件循环"""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._loop.set_exception_handler(self._handle_exception)
        self._loop.call_soon(self._ready.set)

        try:
            self._loop.run_forever()
        finally:
            self._cancel_pending()
            self._loop.close()

    def _cancel_pending(self) -> None:
        """取消循环停止时仍未完成的任务"""
        pending = [task for task in asyncio.all_tasks(self._loop) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            self._loop.run_until_complete(
                asyncio.gather(*pending, return_exceptions=True)
            )

    def _handle_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        """后台任务中未处理的异常只记录日志"""
        exception = context.get("exception")
        message = context.get("message", "")
        if exception is not None:
            self.logger.error(
                f"后台任务异常: {message}",
                exc_info=(type(exception), exception, exception.__traceback__)
            )
        else:
            self.logger.error(f"后台任务异常: {message}")
