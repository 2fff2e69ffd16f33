import pytest

from sessionguard.service.errors import ValidationError
from sessionguard.service.security_events import SecurityEventLog
from sessionguard.storage.models import SecurityEventType, Severity


class BrokenStore:
    async def insert_security_event(self, event):
        raise RuntimeError("database unavailable")

    async def list_security_events(self, user_id, **kwargs):
        return [], 0


async def _seed(store, count):
    user = await store.create_user("alice@example.com", "alice", "hash")
    log = SecurityEventLog(store)
    for idx in range(count):
        result = await log.record(
            user.id,
            SecurityEventType.LOGIN,
            f"login {idx}",
            ip_address="10.0.0.1",
            user_agent="ua",
            severity=Severity.LOW,
        )
        assert result.ok
    return user, log


async def test_record_stores_string_values(store):
    user = await store.create_user("alice@example.com", "alice", "hash")
    log = SecurityEventLog(store)
    result = await log.record(
        user.id,
        "login_failed",
        "Failed login attempt",
        ip_address="10.0.0.1",
        user_agent="ua",
        severity="medium",
        metadata={"reason": "wrong_password"},
    )
    assert result.ok
    assert result.value.event_type == "login_failed"
    assert result.value.severity == "medium"


async def test_record_failure_is_reported_not_raised():
    log = SecurityEventLog(BrokenStore())
    result = await log.record(
        "user-1",
        SecurityEventType.LOGIN,
        "Successful login",
        ip_address="10.0.0.1",
        user_agent="ua",
        severity=Severity.LOW,
    )
    assert not result.ok
    assert "database unavailable" in result.error


async def test_record_rejects_unknown_type_without_raising(store):
    user = await store.create_user("alice@example.com", "alice", "hash")
    result = await SecurityEventLog(store).record(
        user.id, "made_up", "?", ip_address="x", user_agent="y", severity="low"
    )
    assert not result.ok
    assert store.security_events == []


async def test_pagination_of_twenty_five_events(store):
    user, log = await _seed(store, 25)
    page = await log.query(user.id, page=3, limit=10)
    assert page.total == 25
    assert page.total_pages == 3
    assert len(page.events) == 5
    assert page.events[-1].description == "login 0"
    first = await log.query(user.id, page=1, limit=10)
    assert first.events[0].description == "login 24"


async def test_empty_log_has_zero_pages(store):
    user = await store.create_user("alice@example.com", "alice", "hash")
    page = await SecurityEventLog(store).query(user.id)
    assert page.total == 0
    assert page.total_pages == 0
    assert page.events == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"page": 0},
        {"limit": 0},
        {"limit": 101},
        {"event_type": "not_a_type"},
        {"severity": "critical"},
    ],
)
async def test_query_rejects_bad_parameters(store, kwargs):
    log = SecurityEventLog(store)
    with pytest.raises(ValidationError):
        await log.query("user-1", **kwargs)


async def test_query_filters_by_type(store):
    user, log = await _seed(store, 3)
    await log.record(
        user.id,
        SecurityEventType.SUSPICIOUS_IP,
        "Session used from a different IP address",
        ip_address="10.0.0.9",
        user_agent="ua",
        severity=Severity.HIGH,
    )
    page = await log.query(user.id, event_type="suspicious_ip")
    assert page.total == 1
    high = await log.query(user.id, severity="high")
    assert [e.event_type for e in high.events] == ["suspicious_ip"]
