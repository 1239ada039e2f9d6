"""
共享测试夹具
"""

import logging

import pytest

from tests.fakes import FakeClock, FakeClientFactory
from wa_gateway.instance.instance_manager import InstanceManager
from wa_gateway.instance.reconnect_policy import ReconnectPolicy
from wa_gateway.protocol.auth_state import MultiFileAuthState
from wa_gateway.store.session_store import MemorySessionStore


@pytest.fixture
def logger():
    return logging.getLogger("WaGateway.tests")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def auth_state(tmp_path, logger):
    return MultiFileAuthState(str(tmp_path / "sessions"), logger)


@pytest.fixture
def factory():
    return FakeClientFactory()


@pytest.fixture
async def manager(store, auth_state, factory, clock, logger):
    """二维码不渲染、重连延迟很短的实例管理器"""
    mgr = InstanceManager(
        store,
        auth_state,
        factory,
        qr_expiry=60,
        reconnect_policy=ReconnectPolicy(base_delay=0.05, max_delay=0.05, logger=logger, clock=clock),
        qr_renderer=lambda code: code,
        clock=clock,
        logger=logger
    )
    yield mgr
    await mgr.shutdown()
