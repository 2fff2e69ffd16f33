from datetime import timedelta

import pytest

from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import SecurityEvent, Session, utcnow


@pytest.fixture
def memory_store():
    return MemoryStore(secret_key="memory-store-test-key")


async def _user(store, email="alice@example.com", username="alice"):
    return await store.create_user(email, username, "$argon2id$fake")


async def test_create_user_normalises_email_and_keeps_credentials_apart(memory_store):
    user = await memory_store.create_user("  Alice@Example.COM ", "Alice", "$argon2id$fake")
    assert user.email == "alice@example.com"
    assert not hasattr(user, "password_hash")
    assert await memory_store.get_password_hash(user.id) == "$argon2id$fake"
    assert (await memory_store.get_user_by_email("ALICE@example.com")).id == user.id
    assert (await memory_store.get_user_by_username("alice")).id == user.id


async def test_duplicate_email_and_username_raise_constraint_violation(memory_store):
    await _user(memory_store)
    with pytest.raises(ConstraintViolation) as email_exc:
        await memory_store.create_user("ALICE@example.com", "someone-else", "h")
    assert email_exc.value.field == "email"
    with pytest.raises(ConstraintViolation) as username_exc:
        await memory_store.create_user("bob@example.com", "ALICE", "h")
    assert username_exc.value.field == "username"


async def test_two_factor_secret_is_encrypted_at_rest(memory_store):
    user = await _user(memory_store)
    await memory_store.set_two_factor_secret(user.id, "JBSWY3DPEHPK3PXP")
    assert memory_store.users[user.id].two_factor_secret != "JBSWY3DPEHPK3PXP"
    loaded = await memory_store.get_user(user.id)
    assert loaded.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert loaded.is_two_factor_enabled is False
    assert await memory_store.enable_two_factor(user.id) is True
    assert (await memory_store.get_user(user.id)).is_two_factor_enabled is True


async def test_enable_two_factor_requires_a_secret(memory_store):
    user = await _user(memory_store)
    assert await memory_store.enable_two_factor(user.id) is False


async def test_backup_codes_are_single_use(memory_store):
    user = await _user(memory_store)
    await memory_store.replace_backup_codes(user.id, ["h1", "h2"])
    assert await memory_store.consume_backup_code(user.id, "h1") is True
    assert await memory_store.consume_backup_code(user.id, "h1") is False
    await memory_store.replace_backup_codes(user.id, ["h3"])
    assert await memory_store.consume_backup_code(user.id, "h2") is False
    assert await memory_store.consume_backup_code(user.id, "h3") is True


async def test_rotate_session_token_is_compare_and_swap(memory_store):
    user = await _user(memory_store)
    session = await memory_store.create_session(Session.new(user.id, "refresh-1"))
    now = utcnow()
    rotated = await memory_store.rotate_session_token(session.id, "refresh-1", "refresh-2", now=now)
    assert rotated.refresh_token == "refresh-2"
    assert rotated.last_accessed_at == now
    assert await memory_store.rotate_session_token(session.id, "refresh-1", "refresh-3", now=now) is None
    assert await memory_store.find_active_session_by_token("refresh-1") is None
    assert (await memory_store.find_active_session_by_token("refresh-2")).id == session.id


async def test_refresh_tokens_are_unique(memory_store):
    user = await _user(memory_store)
    await memory_store.create_session(Session.new(user.id, "refresh-1"))
    with pytest.raises(ConstraintViolation):
        await memory_store.create_session(Session.new(user.id, "refresh-1"))


async def test_session_requires_existing_user(memory_store):
    with pytest.raises(ConstraintViolation):
        await memory_store.create_session(Session.new("ghost", "refresh-1"))


async def test_list_active_sessions_skips_expired_and_orders_by_recency(memory_store):
    user = await _user(memory_store)
    now = utcnow()
    older = Session.new(user.id, "r-old", now=now - timedelta(hours=2))
    newer = Session.new(user.id, "r-new", now=now - timedelta(minutes=5))
    expired = Session.new(user.id, "r-dead", ttl=timedelta(minutes=1), now=now - timedelta(hours=1))
    for sess in (older, newer, expired):
        await memory_store.create_session(sess)
    active = await memory_store.list_active_sessions(user.id, now=now)
    assert [s.id for s in active] == [newer.id, older.id]


async def test_delete_session_is_scoped_to_owner(memory_store):
    alice = await _user(memory_store)
    bob = await _user(memory_store, "bob@example.com", "bob")
    session = await memory_store.create_session(Session.new(alice.id, "refresh-1"))
    assert await memory_store.delete_session(bob.id, session.id) == 0
    assert await memory_store.delete_session(alice.id, session.id) == 1
    assert await memory_store.get_session(session.id) is None


async def test_delete_user_cascades(memory_store):
    user = await _user(memory_store)
    await memory_store.create_session(Session.new(user.id, "refresh-1"))
    await memory_store.replace_backup_codes(user.id, ["h1"])
    await memory_store.insert_security_event(
        SecurityEvent.new(user.id, "login", "ok", ip_address="1.1.1.1", user_agent="ua", severity="low")
    )
    assert await memory_store.delete_user(user.id) is True
    assert memory_store.sessions == {}
    assert memory_store.security_events == []
    assert await memory_store.get_password_hash(user.id) is None
    assert await memory_store.delete_user(user.id) is False


async def test_security_events_filter_and_page_newest_first(memory_store):
    user = await _user(memory_store)
    for idx in range(5):
        await memory_store.insert_security_event(
            SecurityEvent.new(
                user.id,
                "login_failed" if idx % 2 else "login",
                f"event {idx}",
                ip_address="1.1.1.1",
                user_agent="ua",
                severity="medium" if idx % 2 else "low",
            )
        )
    events, total = await memory_store.list_security_events(user.id, limit=2, offset=0)
    assert total == 5
    assert [e.description for e in events] == ["event 4", "event 3"]
    failed, failed_total = await memory_store.list_security_events(user.id, event_type="login_failed")
    assert failed_total == 2
    assert all(e.event_type == "login_failed" for e in failed)
    low, low_total = await memory_store.list_security_events(user.id, severity="low", limit=10)
    assert low_total == 3


async def test_update_user_role(memory_store):
    user = await _user(memory_store)
    promoted = await memory_store.update_user_role(user.id, "admin")
    assert promoted.role == "admin"
    assert await memory_store.update_user_role("ghost", "admin") is None
