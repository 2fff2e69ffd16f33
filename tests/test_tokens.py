import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.service.errors import InvalidTokenError, TokenExpiredError
from sessionguard.service.tokens import ACCESS, REFRESH, TokenIssuer
from sessionguard.storage.models import User

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
SECRET = "unit-test-signing-secret-with-enough-entropy"


@pytest.fixture
def issuer():
    return TokenIssuer(SECRET, issuer="sessionguard", audience="clients")


@pytest.fixture
def user():
    return User(id="user-1", email="alice@example.com", username="alice")


def _segment(payload: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")


def test_issue_pair_lifetimes(issuer, user):
    pair = issuer.issue_pair(user, "session-1", now=T0)
    assert pair.expires_in == 3600
    assert pair.access_expires_at == T0 + timedelta(hours=1)
    assert pair.refresh_expires_at == T0 + timedelta(days=7)
    assert pair.access_token != pair.refresh_token


def test_claims_round_trip(issuer, user):
    pair = issuer.issue_pair(user, "session-1", device_id="dev", ip="10.0.0.1", now=T0)
    claims = issuer.verify(pair.access_token, expected_type=ACCESS, now=T0)
    assert claims.sub == "user-1"
    assert claims.email == "alice@example.com"
    assert claims.username == "alice"
    assert claims.role == "user"
    assert claims.session_id == "session-1"
    assert claims.device_id == "dev"
    assert claims.ip == "10.0.0.1"
    assert claims.typ == ACCESS
    assert claims.iss == "sessionguard"
    assert claims.aud == "clients"


def test_access_expires_after_an_hour_while_refresh_lives_on(issuer, user):
    pair = issuer.issue_pair(user, "session-1", now=T0)
    later = T0 + timedelta(hours=1, seconds=1)
    with pytest.raises(TokenExpiredError):
        issuer.verify(pair.access_token, now=later)
    assert issuer.verify(pair.refresh_token, expected_type=REFRESH, now=later)
    with pytest.raises(TokenExpiredError):
        issuer.verify(pair.refresh_token, now=T0 + timedelta(days=7, seconds=1))


def test_leeway_tolerates_small_skew(user):
    lenient = TokenIssuer(
        SECRET, issuer="sessionguard", audience="clients", leeway=timedelta(seconds=30)
    )
    pair = lenient.issue_pair(user, "session-1", now=T0)
    assert lenient.verify(pair.access_token, now=T0 + timedelta(hours=1, seconds=10))


def test_type_confusion_is_rejected(issuer, user):
    pair = issuer.issue_pair(user, "session-1", now=T0)
    with pytest.raises(InvalidTokenError):
        issuer.verify(pair.access_token, expected_type=REFRESH, now=T0)
    with pytest.raises(InvalidTokenError):
        issuer.verify(pair.refresh_token, expected_type=ACCESS, now=T0)


def test_tampered_signature_is_rejected(issuer, user):
    token = issuer.issue_pair(user, "session-1", now=T0).access_token
    last = token[-1]
    tampered = token[:-1] + ("A" if last != "A" else "B")
    with pytest.raises(InvalidTokenError):
        issuer.verify(tampered, now=T0)


def test_tampered_payload_is_rejected(issuer, user):
    header, _, signature = issuer.issue_pair(user, "session-1", now=T0).access_token.split(".")
    forged = _segment({"sub": "admin", "role": "admin", "exp": 9999999999})
    with pytest.raises(InvalidTokenError):
        issuer.verify(f"{header}.{forged}.{signature}", now=T0)


def test_foreign_secret_issuer_and_audience_are_rejected(issuer, user):
    token = issuer.issue_pair(user, "session-1", now=T0).access_token
    for other in (
        TokenIssuer("another-secret-entirely", issuer="sessionguard", audience="clients"),
        TokenIssuer(SECRET, issuer="someone-else", audience="clients"),
        TokenIssuer(SECRET, issuer="sessionguard", audience="other-clients"),
    ):
        with pytest.raises(InvalidTokenError):
            other.verify(token, now=T0)


def test_unsigned_algorithm_is_rejected(issuer):
    header = _segment({"alg": "none", "typ": "JWT"})
    payload = _segment({"sub": "user-1", "iss": "sessionguard", "aud": "clients"})
    with pytest.raises(InvalidTokenError):
        issuer.verify(f"{header}.{payload}.", now=T0)


@pytest.mark.parametrize("token", ["", "garbage", "a.b", "a.b.c.d", "!!.??.**"])
def test_malformed_tokens_are_rejected(issuer, token):
    with pytest.raises(InvalidTokenError):
        issuer.verify(token, now=T0)


def test_pairs_minted_in_the_same_second_differ(issuer, user):
    first = issuer.issue_pair(user, "session-1", now=T0)
    second = issuer.issue_pair(user, "session-1", now=T0)
    assert first.refresh_token != second.refresh_token
    assert first.access_token != second.access_token


def test_empty_secret_is_refused():
    with pytest.raises(ValueError):
        TokenIssuer("", issuer="sessionguard", audience="clients")
