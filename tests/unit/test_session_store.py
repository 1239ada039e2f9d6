"""
会话存储测试（内存 / JSON / SQLite 三种后端）
"""

import json
from datetime import datetime, timezone

import pytest

from wa_gateway.exceptions import TransientIOError
from wa_gateway.store import create_session_store
from wa_gateway.store.session_store import (
    SessionRecord,
    MemorySessionStore,
    JsonSessionStore,
)
from wa_gateway.store.sqlite_store import SqliteSessionStore

ISSUED_AT = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "json", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield MemorySessionStore()
    elif request.param == "json":
        yield JsonSessionStore(str(tmp_path / "sessions.json"))
    else:
        store = SqliteSessionStore(str(tmp_path / "sessions.db"))
        yield store
        store.close()


class TestStoreContract:
    """所有后端共同遵守的行为"""

    def test_placeholder_created(self, any_store):
        record = any_store.upsert_placeholder("alice")

        assert record.key == "alice"
        assert any_store.get("alice").connected is False

    def test_placeholder_resets_existing_record(self, any_store):
        any_store.upsert_placeholder("alice")
        any_store.mark_pairing("alice", "QR1", ISSUED_AT)

        any_store.upsert_placeholder("alice")

        record = any_store.get("alice")
        assert record.pairing_payload is None
        assert record.pairing_issued_at is None

    def test_pairing_and_connected_are_exclusive(self, any_store):
        any_store.upsert_placeholder("alice")

        any_store.mark_pairing("alice", "QR1", ISSUED_AT)
        record = any_store.get("alice")
        assert record.pairing_payload == "QR1"
        assert record.pairing_issued_at == ISSUED_AT
        assert record.connected is False

        any_store.mark_connected("alice", ISSUED_AT)
        record = any_store.get("alice")
        assert record.connected is True
        assert record.pairing_payload is None
        assert record.pairing_issued_at is None
        assert record.last_connected_at == ISSUED_AT

        any_store.mark_pairing("alice", "QR2", ISSUED_AT)
        record = any_store.get("alice")
        assert record.connected is False
        assert record.pairing_payload == "QR2"

    def test_updates_never_recreate_deleted_record(self, any_store):
        any_store.upsert_placeholder("alice")
        assert any_store.delete("alice") is True

        assert any_store.mark_connected("alice", ISSUED_AT) is False
        assert any_store.mark_pairing("alice", "QR1", ISSUED_AT) is False
        assert any_store.mark_disconnected("alice") is False
        assert any_store.get("alice") is None

    def test_delete_missing_key(self, any_store):
        assert any_store.delete("ghost") is False

    def test_list_records(self, any_store):
        any_store.upsert_placeholder("alice")
        any_store.upsert_placeholder("bob")

        assert sorted(r.key for r in any_store.list_records()) == ["alice", "bob"]

    def test_clear_pairing_keeps_connection_flag(self, any_store):
        any_store.upsert_placeholder("alice")
        any_store.mark_pairing("alice", "QR1", ISSUED_AT)

        assert any_store.clear_pairing("alice") is True

        record = any_store.get("alice")
        assert record.pairing_payload is None
        assert record.pairing_issued_at is None


class TestJsonSessionStore:
    """JSON 文件后端"""

    def test_records_survive_reopen(self, tmp_path):
        path = tmp_path / "data" / "sessions.json"
        store = JsonSessionStore(str(path))
        store.upsert_placeholder("alice")
        store.mark_connected("alice", ISSUED_AT)

        reopened = JsonSessionStore(str(path))

        record = reopened.get("alice")
        assert record.connected is True
        assert record.last_connected_at == ISSUED_AT

    def test_file_is_plain_json(self, tmp_path):
        path = tmp_path / "sessions.json"
        store = JsonSessionStore(str(path))
        store.upsert_placeholder("alice")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["alice"]["connected"] is False
        assert not (tmp_path / "sessions.json.tmp").exists()

    def test_corrupt_file_raises_transient_error(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(TransientIOError):
            JsonSessionStore(str(path))


class TestSqliteSessionStore:
    """SQLite 后端"""

    def test_records_survive_reopen(self, tmp_path):
        path = str(tmp_path / "sessions.db")
        store = SqliteSessionStore(path)
        store.upsert_placeholder("alice")
        store.mark_pairing("alice", "QR1", ISSUED_AT)
        store.close()

        reopened = SqliteSessionStore(path)
        record = reopened.get("alice")
        reopened.close()

        assert record.pairing_payload == "QR1"
        assert record.pairing_issued_at == ISSUED_AT


class TestSessionRecord:

    def test_naive_timestamps_read_as_utc(self):
        record = SessionRecord.from_dict({
            "key": "alice",
            "pairing_payload": "QR1",
            "pairing_issued_at": "2024-01-01T12:00:00",
        })

        assert record.pairing_issued_at == ISSUED_AT


class TestCreateSessionStore:

    def test_known_backends(self, tmp_path):
        assert isinstance(create_session_store("memory", ""), MemorySessionStore)
        assert isinstance(create_session_store("json", str(tmp_path / "s.json")), JsonSessionStore)

        store = create_session_store("sqlite", str(tmp_path / "s.db"))
        assert isinstance(store, SqliteSessionStore)
        store.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_session_store("redis", "")
