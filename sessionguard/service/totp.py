from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote

from sessionguard.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
BACKUP_CODE_COUNT = 8


@dataclass(frozen=True)
class TOTPEnrollment:
    raw_secret: bytes
    encoded_secret: str


def _b32decode(encoded_secret: str) -> bytes:
    cleaned = encoded_secret.strip().replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    return base64.b32decode(padded, casefold=True)


def normalize_backup_code(code: str) -> str:
    return code.strip().replace(" ", "").replace("-", "").upper()


class TOTPEngine:
    """RFC 6238 time-based one-time passwords (HMAC-SHA1, 30s, 6 digits)."""

    def __init__(
        self,
        issuer: str,
        *,
        interval: int = TOTP_INTERVAL_SECONDS,
        digits: int = TOTP_DIGITS,
        window: int = 1,
    ) -> None:
        self.issuer = issuer
        self.interval = interval
        self.digits = digits
        self.window = window

    def enroll(self) -> TOTPEnrollment:
        raw = secrets.token_bytes(32)
        encoded = base64.b32encode(raw).decode("ascii").rstrip("=")
        return TOTPEnrollment(raw_secret=raw, encoded_secret=encoded)

    def provisioning_uri(self, encoded_secret: str, account: str) -> str:
        label = quote(f"{self.issuer}:{account}", safe=":@")
        return (
            f"otpauth://totp/{label}?secret={encoded_secret}"
            f"&issuer={quote(self.issuer, safe='')}"
        )

    def code_at(self, encoded_secret: str, timestamp: float) -> str:
        key = _b32decode(encoded_secret)
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify(
        self, encoded_secret: str, submitted_code: str, *, at: Optional[float] = None
    ) -> bool:
        code = (submitted_code or "").strip().replace(" ", "")
        if len(code) != self.digits or not code.isdigit():
            return False
        now = time.time() if at is None else at
        for step in range(-self.window, self.window + 1):
            try:
                generated = self.code_at(encoded_secret, now + step * self.interval)
            except (binascii.Error, ValueError):
                logger.warning("totp_secret_invalid")
                return False
            if hmac.compare_digest(generated, code):
                return True
        return False

    def generate_backup_codes(self, count: int = BACKUP_CODE_COUNT) -> List[str]:
        return [
            f"{secrets.randbelow(10000):04d}-{secrets.randbelow(10000):04d}"
            for _ in range(count)
        ]


def hash_backup_code(code: str, key: str) -> str:
    """Keyed hash under which backup codes are stored."""
    return hmac.new(
        key.encode(), normalize_backup_code(code).encode(), hashlib.sha256
    ).hexdigest()
