from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    EmailTakenError,
    InvalidCredentialsError,
    InvalidTokenError,
    InvalidTwoFactorCodeError,
    TokenExpiredError,
    TwoFactorRequiredError,
    UsernameTakenError,
    UserNotFoundError,
    ValidationError,
)
from sessionguard.service.passwords import PasswordService
from sessionguard.service.security_events import (
    DEFAULT_PAGE_SIZE,
    SecurityEventLog,
    SecurityEventPage,
    SecurityEventStore,
)
from sessionguard.service.sessions import Device, SessionRegistry, SessionStore
from sessionguard.service.tokens import ACCESS, REFRESH, TokenIssuer, TokenPair
from sessionguard.service.totp import TOTPEngine, hash_backup_code
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import SecurityEventType, Session, Severity, User, utcnow

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class AuthStore(SessionStore, SecurityEventStore, Protocol):
    async def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
    ) -> User: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    async def get_password_hash(self, user_id: str) -> Optional[str]: ...

    async def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    async def record_login(self, user_id: str, ip_address: str, at: datetime) -> None: ...

    async def set_two_factor_secret(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> None: ...

    async def enable_two_factor(self, user_id: str) -> bool: ...

    async def replace_backup_codes(self, user_id: str, code_hashes: List[str]) -> None: ...

    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    async def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str
    email: str


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    # None when the session write failed; the tokens are still returned
    session: Optional[Session] = None


@dataclass
class TwoFactorSetup:
    qr_code_uri: str
    secret_key: str
    backup_codes: List[str]


def device_fingerprint(user_agent: str, ip_address: str) -> str:
    return hashlib.sha256(f"{user_agent}:{ip_address}".encode()).hexdigest()[:32]


class AuthService:
    """Registration, login, token refresh, 2FA and device management."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordService] = None,
        totp: Optional[TOTPEngine] = None,
        tokens: Optional[TokenIssuer] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.passwords = passwords or PasswordService(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )
        self.totp = totp or TOTPEngine(settings.totp_issuer)
        self.tokens = tokens or TokenIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            leeway=timedelta(seconds=settings.jwt_leeway_seconds),
        )
        self.events = SecurityEventLog(
            store, max_page_size=settings.security_events_max_page_size
        )
        self.sessions = SessionRegistry(
            store, self.events, ttl=timedelta(days=settings.session_ttl_days)
        )
        self._backup_code_key = settings.two_factor_key_material
        self.logger = logger

    def _now(self) -> datetime:
        return utcnow()

    def _validate_registration(self, email: str, username: str, password: str) -> None:
        local, _, domain = (email or "").strip().partition("@")
        if not local or "." not in domain:
            raise ValidationError("invalid email address", detail={"field": "email"})
        if not (username or "").strip():
            raise ValidationError("username is required", detail={"field": "username"})
        if not MIN_PASSWORD_LENGTH <= len(password or "") <= MAX_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    async def _start_session(
        self, user: User, *, ip_address: str, user_agent: str
    ) -> AuthResult:
        """Bind a fresh session id into a new token pair and persist the session."""
        session_id = str(uuid.uuid4())
        now = self._now()
        tokens = self.tokens.issue_pair(
            user,
            session_id,
            device_id=device_fingerprint(user_agent, ip_address),
            ip=ip_address,
            now=now,
        )
        created = await self.sessions.create(
            user.id,
            tokens.refresh_token,
            ip_address,
            user_agent,
            session_id=session_id,
            now=now,
        )
        return AuthResult(user=user, tokens=tokens, session=created.value)

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> AuthResult:
        if not self.settings.allow_registration:
            raise AuthorizationError("registration is disabled")
        self._validate_registration(email, username, password)
        if await self.store.get_user_by_email(email):
            raise EmailTakenError()
        if await self.store.get_user_by_username(username):
            raise UsernameTakenError()

        password_hash = self.passwords.hash(password)
        try:
            user = await self.store.create_user(
                email,
                username,
                password_hash,
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            # A concurrent registration won the race past the pre-checks
            if exc.field == "username":
                raise UsernameTakenError()
            raise EmailTakenError()

        self.logger.info("user_registered", user_id=user.id)
        await self.events.record(
            user.id,
            SecurityEventType.REGISTER,
            "Account registered",
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.LOW,
        )
        return await self._start_session(user, ip_address=ip_address, user_agent=user_agent)

    async def _redeem_second_factor(
        self, user: User, submitted: str, *, ip_address: str, user_agent: str
    ) -> bool:
        if user.two_factor_secret and self.totp.verify(user.two_factor_secret, submitted):
            return True
        code_hash = hash_backup_code(submitted, self._backup_code_key)
        if await self.store.consume_backup_code(user.id, code_hash):
            await self.events.record(
                user.id,
                SecurityEventType.BACKUP_CODE_USED,
                "Backup code used to sign in",
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.MEDIUM,
            )
            return True
        return False

    async def login(
        self,
        email: str,
        password: str,
        two_factor_code: Optional[str] = None,
        *,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> AuthResult:
        user = await self.store.get_user_by_email(email)
        if not user:
            self.passwords.verify_dummy(password)
            self.logger.info("login_unknown_account")
            raise InvalidCredentialsError()

        stored_hash = await self.store.get_password_hash(user.id)
        if stored_hash is None:
            self.passwords.verify_dummy(password)
            password_ok = False
        else:
            password_ok = self.passwords.verify(password, stored_hash)
        if not password_ok or not user.is_active:
            reason = "wrong_password" if not password_ok else "account_inactive"
            self.logger.warning("login_failed", user_id=user.id, reason=reason)
            await self.events.record(
                user.id,
                SecurityEventType.LOGIN_FAILED,
                "Failed login attempt",
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.MEDIUM,
                metadata={"reason": reason},
            )
            raise InvalidCredentialsError()

        if user.is_two_factor_enabled:
            if not two_factor_code:
                raise TwoFactorRequiredError()
            if not await self._redeem_second_factor(
                user, two_factor_code, ip_address=ip_address, user_agent=user_agent
            ):
                self.logger.warning("login_failed_2fa", user_id=user.id)
                await self.events.record(
                    user.id,
                    SecurityEventType.LOGIN_FAILED_2FA,
                    "Invalid two-factor code",
                    ip_address=ip_address,
                    user_agent=user_agent,
                    severity=Severity.MEDIUM,
                )
                raise InvalidTwoFactorCodeError()

        if stored_hash and self.passwords.needs_rehash(stored_hash):
            try:
                await self.store.update_password_hash(
                    user.id, self.passwords.hash(password)
                )
            except Exception as exc:
                self.logger.warning(
                    "password_rehash_failed", user_id=user.id, error=str(exc)
                )

        now = self._now()
        await self.store.record_login(user.id, ip_address, now)
        user = replace(user, last_login_at=now, last_login_ip=ip_address)
        await self.events.record(
            user.id,
            SecurityEventType.LOGIN,
            "Successful login",
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.LOW,
        )
        self.logger.info("login_succeeded", user_id=user.id)
        return await self._start_session(user, ip_address=ip_address, user_agent=user_agent)

    async def logout(
        self,
        user_id: str,
        refresh_token: str,
        *,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> int:
        return await self.sessions.revoke_by_token(
            user_id, refresh_token, ip_address=ip_address, user_agent=user_agent
        )

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        now = self._now()
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH, now=now)
        session = await self.sessions.find_active_by_token(refresh_token)
        if not session or session.user_id != claims.sub:
            self.logger.warning("refresh_session_missing", user_id=claims.sub)
            raise InvalidTokenError()
        if session.is_expired(now):
            raise TokenExpiredError("session expired")
        user = await self.store.get_user(session.user_id)
        if not user:
            raise UserNotFoundError()
        if not user.is_active:
            raise InvalidTokenError()

        tokens = self.tokens.issue_pair(
            user,
            session.id,
            device_id=claims.device_id,
            ip=ip_address or session.ip_address,
            now=now,
        )
        await self.sessions.rotate(session, tokens.refresh_token, now=now)
        await self.events.record(
            user.id,
            SecurityEventType.TOKEN_REFRESHED,
            "Session tokens refreshed",
            ip_address=ip_address or session.ip_address,
            user_agent=user_agent or session.user_agent,
            severity=Severity.LOW,
            metadata={"session_id": session.id},
        )
        return tokens

    async def _require_user(self, user_id: str) -> User:
        user = await self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        return user

    async def _issue_backup_codes(self, user_id: str) -> List[str]:
        codes = self.totp.generate_backup_codes()
        await self.store.replace_backup_codes(
            user_id, [hash_backup_code(code, self._backup_code_key) for code in codes]
        )
        return codes

    async def setup_two_factor(
        self,
        user_id: str,
        *,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> TwoFactorSetup:
        user = await self._require_user(user_id)
        if user.is_two_factor_enabled:
            raise ConflictError("two-factor authentication already enabled")
        enrollment = self.totp.enroll()
        await self.store.set_two_factor_secret(
            user.id, enrollment.encoded_secret, enabled=False
        )
        await self.events.record(
            user.id,
            SecurityEventType.TWO_FACTOR_SETUP,
            "Two-factor setup started",
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.LOW,
        )
        return TwoFactorSetup(
            qr_code_uri=self.totp.provisioning_uri(enrollment.encoded_secret, user.email),
            secret_key=enrollment.encoded_secret,
            # Codes are only issued by confirm_two_factor, once the secret is proven
            backup_codes=[],
        )

    async def confirm_two_factor(
        self,
        user_id: str,
        code: str,
        *,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
    ) -> List[str]:
        user = await self._require_user(user_id)
        if user.is_two_factor_enabled:
            raise ConflictError("two-factor authentication already enabled")
        if not user.two_factor_secret:
            raise ValidationError("two-factor setup has not been started")
        if not self.totp.verify(user.two_factor_secret, code):
            await self.events.record(
                user.id,
                SecurityEventType.LOGIN_FAILED_2FA,
                "Invalid two-factor code during setup",
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.MEDIUM,
            )
            raise InvalidTwoFactorCodeError()
        await self.store.enable_two_factor(user.id)
        backup_codes = await self._issue_backup_codes(user.id)
        await self.events.record(
            user.id,
            SecurityEventType.TWO_FACTOR_ENABLED,
            "Two-factor authentication enabled",
            ip_address=ip_address,
            user_agent=user_agent,
            severity=Severity.LOW,
        )
        self.logger.info("two_factor_enabled", user_id=user.id)
        return backup_codes

    async def get_active_devices(
        self, user_id: str, *, current_session_id: Optional[str] = None
    ) -> List[Device]:
        sessions = await self.sessions.list_active(user_id, now=self._now())
        return [self.sessions.describe(sess, current_session_id) for sess in sessions]

    async def revoke_device(self, user_id: str, device_id: str) -> None:
        await self.sessions.revoke_one(user_id, device_id)

    async def logout_all_devices(self, user_id: str) -> int:
        return await self.sessions.revoke_all(user_id)

    async def get_security_events(
        self,
        user_id: str,
        *,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> SecurityEventPage:
        return await self.events.query(
            user_id, event_type=event_type, severity=severity, page=page, limit=limit
        )

    async def verify_session_security(
        self, user_id: str, session_id: str, ip_address: str, user_agent: str
    ) -> bool:
        """Compare a request's origin against the session it claims.

        A changed IP is treated as a hijack signal and fails the check; a
        changed user agent is only recorded.
        """
        session = await self.sessions.get(session_id)
        if not session or session.user_id != user_id:
            return False
        if session.ip_address != ip_address:
            self.logger.warning(
                "session_ip_mismatch", user_id=user_id, session_id=session_id
            )
            await self.events.record(
                user_id,
                SecurityEventType.SUSPICIOUS_IP,
                "Session used from a different IP address",
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.HIGH,
                metadata={"session_id": session_id, "expected_ip": session.ip_address},
            )
            return False
        if session.user_agent != user_agent:
            await self.events.record(
                user_id,
                SecurityEventType.SUSPICIOUS_USER_AGENT,
                "Session used from a different user agent",
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.MEDIUM,
                metadata={"session_id": session_id},
            )
        return True

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.tokens.verify(token, expected_type=ACCESS, now=self._now())
        return AuthContext(
            user_id=claims.sub,
            role=claims.role,
            session_id=claims.session_id,
            email=claims.email,
        )

    async def get_user_profile(self, user_id: str) -> User:
        return await self._require_user(user_id)
