from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from sessionguard.service.errors import NotFoundError
from sessionguard.service.security_events import SecurityEventLog
from sessionguard.service.sessions import SessionRegistry
from sessionguard.storage.common import SecretBox
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import Session
from sessionguard.storage.postgres import PostgresStore, _unique_field

KEY = "postgres-unit-test-key"
NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    async def fetchone(self):
        return self.rows[0] if self.rows else None

    async def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.executed = []

    async def execute(self, sql, params=None):
        self.executed.append((sql, params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.opened = False
        self.closed = False

    @asynccontextmanager
    async def connection(self):
        yield self.conn

    async def open(self):
        self.opened = True

    async def close(self):
        self.closed = True


def _store(*results):
    conn = FakeConnection(results)
    return PostgresStore("postgresql://unused", secret_key=KEY, pool=FakePool(conn)), conn


def _session_row(**overrides):
    row = {
        "id": "11111111-1111-1111-1111-111111111111",
        "user_id": "22222222-2222-2222-2222-222222222222",
        "refresh_token": "refresh-2",
        "ip_address": "10.0.0.1",
        "user_agent": "ua",
        "device_info": None,
        "location": None,
        "is_active": True,
        "expires_at": NOW,
        "last_accessed_at": NOW,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_unique_field_reads_constraint_name():
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="app_user_username_key"))
    assert _unique_field(exc, "email") == "username"
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=None))
    assert _unique_field(exc, "email") == "email"


async def test_create_user_inserts_user_and_credential():
    store, conn = _store()
    user = await store.create_user(" Alice@Example.com ", "alice", "$argon2id$hash")
    assert user.email == "alice@example.com"
    assert "INSERT INTO app_user" in conn.executed[0][0]
    assert "INSERT INTO user_credential" in conn.executed[1][0]
    assert conn.executed[1][1][1] == "$argon2id$hash"


async def test_create_user_maps_unique_violation():
    store, _ = _store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as exc_info:
        await store.create_user("alice@example.com", "alice", "h")
    assert exc_info.value.field == "email"


async def test_create_session_maps_missing_user():
    store, _ = _store(errors.ForeignKeyViolation("fk"))
    with pytest.raises(ConstraintViolation) as exc_info:
        await store.create_session(Session.new("ghost", "refresh-1"))
    assert exc_info.value.field == "user_id"


async def test_rotate_returns_none_when_no_row_matched():
    store, conn = _store(FakeCursor(rows=[]))
    result = await store.rotate_session_token("sid", "old", "new", now=NOW)
    assert result is None
    sql, params = conn.executed[0]
    assert "refresh_token = %s AND is_active" in sql
    assert params == ("new", NOW, NOW, "sid", "old")


async def test_rotate_returns_updated_session():
    store, _ = _store(FakeCursor(rows=[_session_row()]))
    result = await store.rotate_session_token("sid", "refresh-1", "refresh-2", now=NOW)
    assert result.refresh_token == "refresh-2"
    assert result.id == "11111111-1111-1111-1111-111111111111"


async def test_user_rows_decrypt_two_factor_secret():
    encrypted = SecretBox(KEY).encrypt("JBSWY3DPEHPK3PXP")
    row = {
        "id": "22222222-2222-2222-2222-222222222222",
        "email": "alice@example.com",
        "username": "alice",
        "two_factor_secret": encrypted,
        "is_two_factor_enabled": True,
        "created_at": NOW,
        "updated_at": NOW,
    }
    store, _ = _store(FakeCursor(rows=[row]))
    user = await store.get_user("22222222-2222-2222-2222-222222222222")
    assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert user.is_two_factor_enabled is True


async def test_set_two_factor_secret_encrypts_before_writing():
    store, conn = _store(FakeCursor(rowcount=1))
    await store.set_two_factor_secret("uid", "JBSWY3DPEHPK3PXP")
    written = conn.executed[0][1][0]
    assert written != "JBSWY3DPEHPK3PXP"
    assert SecretBox(KEY).decrypt(written) == "JBSWY3DPEHPK3PXP"


async def test_set_two_factor_secret_for_missing_user():
    store, _ = _store(FakeCursor(rowcount=0))
    with pytest.raises(ConstraintViolation):
        await store.set_two_factor_secret("ghost", "JBSWY3DPEHPK3PXP")


async def test_list_security_events_applies_filters_and_paging():
    event_row = {
        "id": "33333333-3333-3333-3333-333333333333",
        "user_id": "uid",
        "event_type": "login_failed",
        "description": "Failed login attempt",
        "ip_address": "10.0.0.1",
        "user_agent": "ua",
        "location": None,
        "severity": "medium",
        "metadata": '{"reason": "wrong_password"}',
        "created_at": NOW,
    }
    store, conn = _store(FakeCursor(rows=[{"total": 7}]), FakeCursor(rows=[event_row]))
    events, total = await store.list_security_events(
        "uid", event_type="login_failed", severity="medium", limit=5, offset=5
    )
    assert total == 7
    assert events[0].metadata == {"reason": "wrong_password"}
    count_sql, count_params = conn.executed[0]
    assert "event_type = %s" in count_sql and "severity = %s" in count_sql
    assert count_params == ["uid", "login_failed", "medium"]
    assert conn.executed[1][1] == ["uid", "login_failed", "medium", 5, 5]


async def test_open_verifies_schema():
    ok_rows = [FakeCursor(rows=[{"oid": "ok"}]) for _ in range(5)]
    store, _ = _store(*ok_rows, FakeCursor(rows=[{"extname": "citext"}]))
    store._opened = False
    await store.open()
    assert store.pool.opened is True
    assert store._opened is True


async def test_open_refuses_missing_tables():
    rows = [FakeCursor(rows=[{"oid": None}])] + [FakeCursor(rows=[{"oid": "ok"}]) for _ in range(4)]
    store, _ = _store(*rows)
    store._opened = False
    with pytest.raises(RuntimeError, match="app_user"):
        await store.open()


async def test_close_releases_pool():
    store, _ = _store()
    await store.close()
    assert store.pool.closed is True


async def test_delete_session_with_malformed_id_matches_nothing():
    store, _ = _store(errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
    assert await store.delete_session("uid", "not-a-uuid") == 0


async def test_revoking_malformed_device_id_is_not_found():
    store, _ = _store(errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
    registry = SessionRegistry(store, SecurityEventLog(store))
    with pytest.raises(NotFoundError):
        await registry.revoke_one("uid", "not-a-uuid")
