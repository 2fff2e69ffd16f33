import pytest
from fastapi.testclient import TestClient

from sessionguard.api.schemas import ErrorBody
from sessionguard.app import app
from sessionguard.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app)


def test_missing_bearer_token(client):
    resp = client.get("/v1/auth/me", headers={"X-Request-ID": "req-401"})
    assert resp.status_code == 401
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "unauthorized"
    assert body["error"]["message"] == "missing bearer token"
    assert body["request_id"] == "req-401"


def test_invalid_bearer_token(client):
    resp = client.get("/v1/auth/me", headers={"Authorization": "Bearer not.a.token"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "invalid token"


def test_request_validation_uses_envelope(client):
    resp = client.post("/v1/auth/register", json={"email": "bad", "username": "a", "password": "x"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    fields = {tuple(err["loc"])[-1] for err in body["error"]["details"]}
    assert {"email", "username", "password"} <= fields


def test_duplicate_registration_is_conflict(client):
    payload = {"email": "alice@example.com", "username": "alice", "password": "correct horse battery"}
    assert client.post("/v1/auth/register", json=payload).status_code == 201
    resp = client.post("/v1/auth/register", json={**payload, "username": "alice2"})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_registration_disabled_is_forbidden(client):
    runtime = get_runtime()
    runtime.auth.settings = runtime.auth.settings.model_copy(update={"allow_registration": False})
    resp = client.post(
        "/v1/auth/register",
        json={"email": "alice@example.com", "username": "alice", "password": "correct horse battery"},
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_unhandled_error_is_opaque(monkeypatch):
    client = TestClient(app, raise_server_exceptions=False)
    registered = client.post(
        "/v1/auth/register",
        json={"email": "alice@example.com", "username": "alice", "password": "correct horse battery"},
    ).json()["data"]

    async def explode(user_id):
        raise RuntimeError("connection reset by peer")

    monkeypatch.setattr(get_runtime().auth, "get_user_profile", explode)
    resp = client.get(
        "/v1/auth/me", headers={"Authorization": f"Bearer {registered['access_token']}"}
    )
    assert resp.status_code == 500
    assert resp.json()["error"] == {
        "code": "server_error",
        "message": "internal server error",
        "details": None,
    }


def test_unknown_route_uses_envelope(client):
    resp = client.get("/v1/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_error_body_rejects_unknown_codes():
    with pytest.raises(ValueError):
        ErrorBody(code="teapot", message="nope")
