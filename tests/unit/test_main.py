"""
启动流程测试：会话恢复失败不终止进程
"""

import asyncio
import logging

from wa_gateway.api.loop_runner import EventLoopThread
from wa_gateway.main import restore_sessions


LOGGER = logging.getLogger("tests.restore")


class SlowManager:
    """恢复会话需要一段时间"""

    def __init__(self):
        self.finished = False

    async def load_sessions(self):
        await asyncio.sleep(0.3)
        self.finished = True
        return 1


class BrokenManager:
    async def load_sessions(self):
        raise OSError("store unavailable")


def make_runner(timeout):
    runner = EventLoopThread(name="RestoreLoop", default_timeout=timeout)
    runner.start()
    return runner


def test_restore_timeout_is_logged_and_continues(caplog):
    runner = make_runner(0.05)
    manager = SlowManager()
    try:
        with caplog.at_level(logging.WARNING, logger=LOGGER.name):
            restore_sessions(manager, runner, LOGGER)

        assert "会话恢复超时" in caplog.text

        # 恢复协程继续在事件循环上运行
        waited = asyncio.run_coroutine_threadsafe(asyncio.sleep(0.5), runner.loop)
        waited.result(2)
        assert manager.finished is True
    finally:
        runner.stop()


def test_restore_failure_is_logged(caplog):
    runner = make_runner(2)
    try:
        with caplog.at_level(logging.ERROR, logger=LOGGER.name):
            restore_sessions(BrokenManager(), runner, LOGGER)

        assert "会话恢复失败" in caplog.text
    finally:
        runner.stop()


def test_restore_success(caplog):
    runner = make_runner(2)
    manager = SlowManager()
    try:
        with caplog.at_level(logging.INFO, logger=LOGGER.name):
            restore_sessions(manager, runner, LOGGER)

        assert manager.finished is True
        assert "已恢复 1 个会话" in caplog.text
    finally:
        runner.stop()
