"""
实例管理器测试

覆盖创建流程、事件处理、二维码过期、注销与自动重连
"""

import asyncio

import pytest

from tests.fakes import connect_instance, wait_for
from wa_gateway.exceptions import NotConnectedError, ValidationError
from wa_gateway.instance.instance_state import InstanceStatus
from wa_gateway.protocol.base_client import (
    PairingEvent,
    OpenEvent,
    ClosedEvent,
    CredentialsEvent,
)
from wa_gateway.store.session_store import SessionRecord


class TestStartInstance:
    """启动会话"""

    async def test_start_creates_placeholder_and_handle(self, manager, store, factory):
        result = await manager.start_instance("alice")

        assert result.success is True
        assert result.connected is False
        assert result.message == "Session started for alice"
        assert len(factory.clients) == 1
        assert manager.registry.has_handle("alice")
        assert not manager.registry.is_initializing("alice")

        record = store.get("alice")
        assert record is not None
        assert record.connected is False
        assert record.pairing_payload is None

    async def test_guard_held_while_connecting(self, manager, factory):
        factory.connect_gate = asyncio.Event()

        task = asyncio.create_task(manager.start_instance("alice"))
        await wait_for(lambda: len(factory.clients) == 1)

        # 连接请求未完成：守卫已设置，注册表中还没有连接
        assert manager.registry.is_initializing("alice")
        assert not manager.registry.has_handle("alice")
        assert manager.registry.get_status("alice") == InstanceStatus.INITIALIZING

        second = await manager.start_instance("alice")
        assert second.success is True
        assert "initializing" in second.message
        assert len(factory.clients) == 1

        factory.connect_gate.set()
        first = await task

        assert first.success is True
        assert manager.registry.has_handle("alice")
        assert not manager.registry.is_initializing("alice")

    async def test_start_when_connected_reports_connected(self, manager, store, factory):
        await connect_instance(manager, factory)

        result = await manager.start_instance("alice")

        assert result.success is True
        assert result.connected is True
        assert "already connected" in result.message
        assert len(factory.clients) == 1

    async def test_start_while_awaiting_pairing_keeps_single_handle(self, manager, factory):
        await manager.start_instance("alice")

        result = await manager.start_instance("alice")

        assert result.success is True
        assert "awaiting pairing" in result.message
        assert len(factory.clients) == 1

    async def test_connect_failure_releases_guard_and_schedules_retry(self, manager, factory):
        factory.fail_connect = True

        result = await manager.start_instance("alice")

        assert result.success is False
        assert "retry scheduled" in result.message
        assert not manager.registry.has_handle("alice")
        assert not manager.registry.is_initializing("alice")
        assert factory.last.closed is True

        factory.fail_connect = False
        await wait_for(lambda: manager.registry.has_handle("alice"))
        assert len(factory.clients) == 2

    async def test_logout_during_connect_discards_new_handle(self, manager, store, factory):
        factory.connect_gate = asyncio.Event()

        task = asyncio.create_task(manager.start_instance("alice"))
        await wait_for(lambda: len(factory.clients) == 1)

        logout = await manager.logout_instance("alice")
        assert logout.ok

        factory.connect_gate.set()
        result = await task

        assert result.success is False
        assert factory.last.closed is True
        assert factory.last.logout_calls == 0
        assert not manager.registry.has_handle("alice")
        assert store.get("alice") is None
        assert manager.registry.get_status("alice") == InstanceStatus.ABSENT

    @pytest.mark.parametrize("key", ["", "   ", None])
    async def test_missing_key_rejected(self, manager, key):
        with pytest.raises(ValidationError):
            await manager.start_instance(key)

    @pytest.mark.parametrize("key", ["..", "a/b", "a\\b"])
    async def test_unsafe_key_rejected(self, manager, factory, key):
        with pytest.raises(ValidationError):
            await manager.start_instance(key)
        assert factory.clients == []


class TestEvents:
    """连接事件处理"""

    async def test_pairing_updates_cache_and_record(self, manager, store, factory, clock):
        await manager.start_instance("alice")

        factory.last.emit(PairingEvent("QR1"))
        await wait_for(lambda: store.get("alice").pairing_payload == "QR1")

        record = store.get("alice")
        assert record.connected is False
        assert record.pairing_issued_at == clock.now

        entry = manager.qr_cache.get("alice")
        assert entry.payload == "QR1"
        assert manager.registry.get_status("alice") == InstanceStatus.AWAITING_PAIRING

    async def test_new_pairing_replaces_previous(self, manager, store, factory, clock):
        await manager.start_instance("alice")

        factory.last.emit(PairingEvent("QR1"))
        await wait_for(lambda: store.get("alice").pairing_payload == "QR1")

        clock.advance(20)
        factory.last.emit(PairingEvent("QR2"))
        await wait_for(lambda: store.get("alice").pairing_payload == "QR2")

        assert manager.qr_cache.get("alice").issued_at == clock.now

    async def test_open_clears_pairing(self, manager, store, factory, clock):
        await manager.start_instance("alice")
        factory.last.emit(PairingEvent("QR1"))
        await wait_for(lambda: manager.qr_cache.get("alice") is not None)

        factory.last.emit(OpenEvent())
        await wait_for(lambda: store.get("alice").connected)

        record = store.get("alice")
        assert record.pairing_payload is None
        assert record.pairing_issued_at is None
        assert record.last_connected_at == clock.now
        assert manager.qr_cache.get("alice") is None
        assert manager.registry.get_status("alice") == InstanceStatus.CONNECTED

    async def test_credentials_are_persisted(self, manager, auth_state, factory):
        await manager.start_instance("alice")

        factory.last.emit(CredentialsEvent({"creds": {"me": "1555"}}))
        await wait_for(lambda: auth_state.load("alice") == {"creds": {"me": "1555"}})

    async def test_remote_logout_deletes_everything(self, manager, store, auth_state, factory):
        client = await connect_instance(manager, factory)
        auth_state.save("alice", {"creds": {"me": "1555"}})

        client.emit(ClosedEvent(reason="logged out", logged_out=True))
        await wait_for(lambda: store.get("alice") is None)
        await wait_for(lambda: client.closed)

        assert not manager.registry.has_handle("alice")
        assert not auth_state.path_for("alice").exists()

        await asyncio.sleep(0.15)
        assert len(factory.clients) == 1
        assert manager.registry.get_status("alice") == InstanceStatus.ABSENT

    async def test_recoverable_close_reconnects(self, manager, store, factory):
        client = await connect_instance(manager, factory)

        client.emit(ClosedEvent(reason="connection lost", logged_out=False))
        await wait_for(lambda: len(factory.clients) == 2)

        record = store.get("alice")
        assert record is not None
        assert record.connected is False
        assert client.closed is True

        await wait_for(lambda: manager.registry.get_handle("alice") is factory.last)

    async def test_restart_while_closing_keeps_new_handle(self, manager, store, factory):
        old = await connect_instance(manager, factory)
        factory.close_gate = asyncio.Event()

        old.emit(ClosedEvent(reason="connection lost", logged_out=False))
        await wait_for(lambda: not manager.registry.has_handle("alice"))

        # 旧连接还在关闭时重新启动并收到新的二维码
        result = await manager.start_instance("alice")
        assert result.success is True
        current = factory.last
        current.emit(PairingEvent("QR2"))
        await wait_for(lambda: store.get("alice").pairing_payload == "QR2")

        factory.close_gate.set()
        await wait_for(lambda: old.closed)
        await asyncio.sleep(0.15)

        assert manager.registry.get_handle("alice") is current
        assert manager.registry.get_status("alice") == InstanceStatus.AWAITING_PAIRING
        assert store.get("alice").pairing_payload == "QR2"
        assert len(factory.clients) == 2

    async def test_stale_close_event_ignored(self, manager, store, factory):
        old = await connect_instance(manager, factory)

        await manager.logout_instance("alice")
        await manager.start_instance("alice")
        current = factory.last

        old.emit(ClosedEvent(reason="late", logged_out=True))
        await asyncio.sleep(0.05)

        assert manager.registry.get_handle("alice") is current
        assert store.get("alice") is not None


class TestQR:
    """二维码查询与过期"""

    async def test_qr_not_available(self, manager):
        result = await manager.get_qr("alice")

        assert result.success is False
        assert result.needs_restart is True
        assert result.message == "QR not available. Please restart session."

    async def test_qr_before_window_end(self, manager, store, factory, clock):
        await manager.start_instance("alice")
        factory.last.emit(PairingEvent("QR1"))
        await wait_for(lambda: manager.qr_cache.get("alice") is not None)

        clock.advance(59)
        result = await manager.get_qr("alice")

        assert result.success is True
        assert result.qr == "QR1"
        assert result.expires_in >= 1

    async def test_qr_expires_at_window(self, manager, store, factory, clock):
        await manager.start_instance("alice")
        factory.last.emit(PairingEvent("QR1"))
        await wait_for(lambda: store.get("alice").pairing_payload == "QR1")

        clock.advance(60)
        result = await manager.get_qr("alice")

        assert result.success is False
        assert result.needs_restart is True
        assert result.message == "QR expired. Please restart session."
        assert manager.qr_cache.get("alice") is None
        assert store.get("alice").pairing_payload is None

    async def test_qr_served_from_store_after_cache_loss(self, manager, store, factory, clock):
        await manager.start_instance("alice")
        factory.last.emit(PairingEvent("QR1"))
        await wait_for(lambda: store.get("alice").pairing_payload == "QR1")

        manager.qr_cache.clear_all()
        clock.advance(10)
        result = await manager.get_qr("alice")

        assert result.success is True
        assert result.qr == "QR1"
        assert result.expires_in == 50

    async def test_qr_when_connected(self, manager, store, factory):
        await connect_instance(manager, factory)

        result = await manager.get_qr("alice")

        assert result.success is True
        assert result.connected is True
        assert result.qr is None


class TestLogout:
    """注销"""

    async def test_logout_unknown_key(self, manager, factory):
        result = await manager.logout_instance("ghost")

        assert result.ok
        assert factory.clients == []

    async def test_logout_connected_instance(self, manager, store, auth_state, factory):
        client = await connect_instance(manager, factory)
        auth_state.save("alice", {"creds": {"me": "1555"}})

        result = await manager.logout_instance("alice")

        assert result.ok
        assert result.message == "Instance alice logged out and session removed."
        assert client.logout_calls == 1
        assert client.closed is True
        assert store.get("alice") is None
        assert not auth_state.path_for("alice").exists()
        assert not manager.registry.has_handle("alice")
        assert manager.registry.get_status("alice") == InstanceStatus.ABSENT

    async def test_logout_twice_is_idempotent(self, manager, store, factory):
        client = await connect_instance(manager, factory)

        assert (await manager.logout_instance("alice")).ok
        assert (await manager.logout_instance("alice")).ok
        assert client.logout_calls == 1

    async def test_logout_fences_pending_reconnect(self, manager, store, factory):
        client = await connect_instance(manager, factory)

        client.emit(ClosedEvent(reason="connection lost", logged_out=False))
        await wait_for(lambda: manager.registry.get_status("alice") == InstanceStatus.CLOSED_RECOVERABLE)

        await manager.logout_instance("alice")
        await asyncio.sleep(0.15)

        assert len(factory.clients) == 1
        assert store.get("alice") is None
        assert manager.registry.get_status("alice") == InstanceStatus.ABSENT


class TestConnectedLookup:
    """连接查询与启动恢复"""

    async def test_require_connected_unknown_key(self, manager):
        with pytest.raises(NotConnectedError):
            manager.require_connected("bob")

        assert manager.registry.count() == 0
        assert manager.registry.get_status("bob") == InstanceStatus.ABSENT

    async def test_require_connected_while_awaiting_pairing(self, manager, factory):
        await manager.start_instance("alice")

        with pytest.raises(NotConnectedError):
            manager.require_connected("alice")

    async def test_load_sessions_reconnects_durable_records(self, manager, store, factory):
        store.save(SessionRecord(key="alice", connected=True))
        store.save(SessionRecord(key="carol", connected=False))

        started = await manager.load_sessions()

        assert started == 2
        assert {c.instance_key for c in factory.clients} == {"alice", "carol"}
        assert store.get("alice").connected is False
        assert manager.get_active_count() == 2

    async def test_load_sessions_connects_keys_concurrently(self, manager, store, factory):
        for key in ("k1", "k2", "k3", "k4"):
            store.save(SessionRecord(key=key, connected=True))
        factory.connect_delay = 0.3

        loop = asyncio.get_running_loop()
        started_at = loop.time()
        started = await manager.load_sessions()
        elapsed = loop.time() - started_at

        assert started == 4
        assert elapsed < 0.9
        assert manager.get_active_count() == 4

    async def test_load_sessions_failure_schedules_retry(self, manager, store, factory):
        store.save(SessionRecord(key="alice", connected=True))
        factory.fail_connect = True

        started = await manager.load_sessions()

        assert started == 0
        assert manager.registry.get_status("alice") == InstanceStatus.CLOSED_RECOVERABLE

        factory.fail_connect = False
        await wait_for(lambda: manager.registry.has_handle("alice"))

    async def test_shutdown_keeps_records(self, manager, store, factory):
        client = await connect_instance(manager, factory)

        await manager.shutdown()

        assert client.closed is True
        assert manager.get_active_count() == 0
        assert store.get("alice") is not None

    async def test_list_instances(self, manager, store, factory):
        await connect_instance(manager, factory)
        store.save(SessionRecord(key="dave"))

        infos = {info.key: info for info in await manager.list_instances()}

        assert infos["alice"].connected is True
        assert infos["alice"].live is True
        assert infos["alice"].status == InstanceStatus.CONNECTED
        assert infos["dave"].live is False
        assert infos["dave"].status == InstanceStatus.ABSENT
