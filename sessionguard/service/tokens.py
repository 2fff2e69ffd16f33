from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import InvalidTokenError, TokenExpiredError
from sessionguard.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class Claims:
    sub: str
    email: str
    username: str
    role: str
    session_id: str
    iat: int
    exp: int
    iss: str
    aud: str
    typ: str
    jti: str
    device_id: Optional[str] = None
    ip: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Mints and validates HS256 access/refresh tokens.

    Tokens are stateless: a valid signature says nothing about whether the
    session behind a refresh token is still alive, which is the session
    registry's concern.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway: timedelta = timedelta(0),
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _claims(
        self,
        user: User,
        session_id: str,
        typ: str,
        issued: datetime,
        expires: datetime,
        device_id: Optional[str],
        ip: Optional[str],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "session_id": session_id,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
            "typ": typ,
            "jti": str(uuid.uuid4()),
        }
        if device_id:
            payload["device_id"] = device_id
        if ip:
            payload["ip"] = ip
        return payload

    def issue_pair(
        self,
        user: User,
        session_id: str,
        *,
        device_id: Optional[str] = None,
        ip: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        now = now or datetime.now(timezone.utc)
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        access = self._encode(
            self._claims(user, session_id, ACCESS, now, access_exp, device_id, ip)
        )
        refresh = self._encode(
            self._claims(user, session_id, REFRESH, now, refresh_exp, device_id, ip)
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self.access_ttl.total_seconds()),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(
        self,
        token: str,
        *,
        expected_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Claims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError()

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError()
        if expected_type and payload.get("typ") != expected_type:
            logger.warning(
                "jwt_type_mismatch",
                expected_type=expected_type,
                actual_type=payload.get("typ"),
            )
            raise InvalidTokenError()

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        now = now or datetime.now(timezone.utc)
        if exp_ts <= now.timestamp() - self.leeway.total_seconds():
            raise TokenExpiredError()

        try:
            return Claims(
                sub=str(payload["sub"]),
                email=str(payload.get("email", "")),
                username=str(payload.get("username", "")),
                role=str(payload.get("role", "user")),
                session_id=str(payload["session_id"]),
                iat=int(payload.get("iat", 0)),
                exp=int(exp_ts),
                iss=payload["iss"],
                aud=self.audience,
                typ=str(payload.get("typ", "")),
                jti=str(payload.get("jti", "")),
                device_id=payload.get("device_id"),
                ip=payload.get("ip"),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
