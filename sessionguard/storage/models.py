from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecurityEventType(str, Enum):
    """Kinds of security-relevant occurrences written to the event log."""

    REGISTER = "register"
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGIN_FAILED_2FA = "login_failed_2fa"
    LOGOUT = "logout"
    TOKEN_REFRESHED = "token_refreshed"
    SUSPICIOUS_IP = "suspicious_ip"
    SUSPICIOUS_USER_AGENT = "suspicious_user_agent"
    DEVICE_REVOKED = "device_revoked"
    LOGOUT_ALL_DEVICES = "logout_all_devices"
    TWO_FACTOR_SETUP = "two_factor_setup"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    BACKUP_CODE_USED = "backup_code_used"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class User:
    id: str
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    is_two_factor_enabled: bool = False
    # Plaintext base32 secret; stores encrypt it at rest
    two_factor_secret: Optional[str] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    ip_address: str
    user_agent: str
    expires_at: datetime
    last_accessed_at: datetime
    created_at: datetime
    updated_at: datetime
    device_info: Optional[str] = None
    location: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        *,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        ttl: timedelta = timedelta(days=7),
        session_id: Optional[str] = None,
        device_info: Optional[str] = None,
        location: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=now + ttl,
            last_accessed_at=now,
            created_at=now,
            updated_at=now,
            device_info=device_info,
            location=location,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class SecurityEvent:
    id: str
    user_id: str
    event_type: str
    description: str
    ip_address: str
    user_agent: str
    severity: str
    created_at: datetime = field(default_factory=utcnow)
    location: Optional[str] = None
    metadata: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        event_type: SecurityEventType | str,
        description: str,
        *,
        ip_address: str,
        user_agent: str,
        severity: Severity | str,
        location: Optional[str] = None,
        metadata: Dict | None = None,
    ) -> "SecurityEvent":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            event_type=SecurityEventType(event_type).value,
            description=description,
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity(severity).value,
            location=location,
            metadata=metadata,
        )
