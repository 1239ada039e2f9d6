"""
注册表、配对码缓存与重连策略测试
"""

import asyncio

import pytest

from tests.fakes import FakeClock, FakeClientFactory
from wa_gateway.instance.instance_registry import InstanceRegistry
from wa_gateway.instance.instance_state import InstanceStatus, QRResult, LogoutResult
from wa_gateway.instance.qr_cache import PairingCodeCache
from wa_gateway.instance.reconnect_policy import ReconnectPolicy


class TestInstanceRegistry:

    def test_single_handle_per_key(self):
        registry = InstanceRegistry()
        factory = FakeClientFactory()
        first = factory("alice", {})

        registry.register("alice", first)

        with pytest.raises(RuntimeError):
            registry.register("alice", factory("alice", {}))
        assert registry.get_handle("alice") is first
        assert registry.count() == 1

    def test_remove_only_matching_handle(self):
        registry = InstanceRegistry()
        factory = FakeClientFactory()
        current = factory("alice", {})
        stale = factory("alice", {})
        registry.register("alice", current)

        assert registry.remove("alice", stale) == (None, None)
        assert registry.is_current("alice", current)

        removed, _ = registry.remove("alice", current)
        assert removed is current
        assert not registry.has_handle("alice")

    def test_guard_is_check_and_set(self):
        registry = InstanceRegistry()

        assert registry.try_acquire_guard("alice") is True
        assert registry.try_acquire_guard("alice") is False
        assert registry.is_initializing("alice")

        registry.release_guard("alice")
        assert not registry.is_initializing("alice")
        assert registry.try_acquire_guard("alice") is True

    def test_absent_status_is_not_stored(self):
        registry = InstanceRegistry()

        registry.set_status("alice", InstanceStatus.CONNECTED)
        assert registry.status_keys() == ["alice"]

        registry.set_status("alice", InstanceStatus.ABSENT)
        assert registry.status_keys() == []
        assert registry.get_status("alice") == InstanceStatus.ABSENT

    async def test_reconnect_tasks_discarded_when_done(self):
        registry = InstanceRegistry()
        task = asyncio.create_task(asyncio.sleep(0))

        registry.track_reconnect(task)
        assert registry.pending_reconnects() == [task]

        await task
        await asyncio.sleep(0)
        assert registry.pending_reconnects() == []


class TestPairingCodeCache:

    def test_set_get_clear(self):
        clock = FakeClock()
        cache = PairingCodeCache()

        cache.set("alice", "QR1", clock.now)
        assert cache.get("alice").payload == "QR1"
        assert len(cache) == 1

        cache.set("alice", "QR2", clock.now)
        assert cache.get("alice").payload == "QR2"

        assert cache.clear("alice") is True
        assert cache.clear("alice") is False
        assert cache.get("alice") is None

    def test_clear_all(self):
        clock = FakeClock()
        cache = PairingCodeCache()
        cache.set("alice", "QR1", clock.now)
        cache.set("bob", "QR2", clock.now)

        cache.clear_all()

        assert len(cache) == 0


class TestReconnectPolicy:

    def test_first_delay_is_base(self):
        policy = ReconnectPolicy(base_delay=3, max_delay=60, backoff=2, clock=FakeClock())

        assert policy.next_delay("alice") == 3

    def test_backoff_capped(self):
        policy = ReconnectPolicy(base_delay=3, max_delay=10, backoff=2, clock=FakeClock())

        delays = []
        for _ in range(4):
            policy.record_disconnect("alice")
            delays.append(policy.next_delay("alice"))

        assert delays == [3, 6, 10, 10]

    def test_old_disconnects_expire(self):
        clock = FakeClock()
        policy = ReconnectPolicy(base_delay=3, max_delay=60, backoff=2, window=300, clock=clock)
        policy.record_disconnect("alice")
        policy.record_disconnect("alice")

        clock.advance(301)

        assert policy.get_disconnect_count("alice") == 0
        assert policy.next_delay("alice") == 3

    def test_reset(self):
        policy = ReconnectPolicy(clock=FakeClock())
        policy.record_disconnect("alice")

        policy.reset("alice")

        assert policy.get_disconnect_count("alice") == 0

    def test_keys_are_independent(self):
        policy = ReconnectPolicy(base_delay=1, backoff=2, clock=FakeClock())
        policy.record_disconnect("alice")
        policy.record_disconnect("alice")

        assert policy.next_delay("alice") == 2
        assert policy.next_delay("bob") == 1


class TestResults:

    def test_qr_result_omits_empty_fields(self):
        data = QRResult(success=False, connected=False, message="QR not available. Please restart session.",
                        needs_restart=True).to_dict()

        assert data == {
            "success": False,
            "connected": False,
            "message": "QR not available. Please restart session.",
            "needsRestart": True,
        }

    def test_qr_result_with_code(self):
        data = QRResult(success=True, connected=False, qr="data:image/png;base64,AAA", expires_in=42).to_dict()

        assert data["qr"] == "data:image/png;base64,AAA"
        assert data["expiresIn"] == 42
        assert "needsRestart" not in data

    def test_logout_result(self):
        assert LogoutResult("success", "ok").to_dict() == {"status": "success", "message": "ok"}
        assert not LogoutResult("error", "Logout failed", "disk full").ok
