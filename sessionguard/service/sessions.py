from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from sessionguard.logging import get_logger
from sessionguard.service.errors import InvalidTokenError, NotFoundError
from sessionguard.service.outcomes import WriteResult
from sessionguard.service.security_events import SecurityEventLog
from sessionguard.service.user_agent import classify_user_agent, describe_device
from sessionguard.storage.models import SecurityEventType, Session, Severity, utcnow

logger = get_logger(__name__)

# Revocations triggered from the account page carry no request context
SYSTEM_ACTOR = "system"


class SessionStore(Protocol):
    async def create_session(self, session: Session) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def find_active_session_by_token(
        self, refresh_token: str
    ) -> Optional[Session]: ...

    async def rotate_session_token(
        self,
        session_id: str,
        old_token: str,
        new_token: str,
        *,
        now: datetime,
    ) -> Optional[Session]: ...

    async def delete_session(self, user_id: str, session_id: str) -> int: ...

    async def delete_session_by_token(self, user_id: str, refresh_token: str) -> int: ...

    async def delete_user_sessions(self, user_id: str) -> int: ...

    async def list_active_sessions(
        self, user_id: str, *, now: datetime
    ) -> List[Session]: ...


@dataclass
class Device:
    """Presentation view of a session for the device list."""

    device_id: str
    device_name: str
    device_class: str
    browser: str
    os: str
    ip_address: str
    location: Optional[str]
    last_seen: datetime
    is_current_device: bool
    is_trusted: bool = False


class SessionRegistry:
    """Server-side record of every live refresh token, one row per device."""

    def __init__(
        self,
        store: SessionStore,
        events: SecurityEventLog,
        *,
        ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.store = store
        self.events = events
        self.ttl = ttl

    async def create(
        self,
        user_id: str,
        refresh_token: str,
        ip_address: str,
        user_agent: str,
        *,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WriteResult[Session]:
        session = Session.new(
            user_id,
            refresh_token,
            ip_address=ip_address,
            user_agent=user_agent,
            ttl=self.ttl,
            session_id=session_id,
            device_info=describe_device(user_agent),
            now=now,
        )
        try:
            stored = await self.store.create_session(session)
        except Exception as exc:
            logger.error(
                "session_create_failed",
                user_id=user_id,
                session_id=session.id,
                error=str(exc),
            )
            return WriteResult.failed(str(exc))
        logger.info("session_created", user_id=user_id, session_id=stored.id)
        return WriteResult.succeeded(stored)

    async def get(self, session_id: str) -> Optional[Session]:
        return await self.store.get_session(session_id)

    async def find_active_by_token(self, refresh_token: str) -> Optional[Session]:
        return await self.store.find_active_session_by_token(refresh_token)

    async def rotate(
        self,
        session: Session,
        new_refresh_token: str,
        *,
        now: Optional[datetime] = None,
    ) -> Session:
        """Swap the session's refresh token only if it is still the one presented."""
        rotated = await self.store.rotate_session_token(
            session.id, session.refresh_token, new_refresh_token, now=now or utcnow()
        )
        if rotated is None:
            logger.warning(
                "session_rotation_conflict",
                user_id=session.user_id,
                session_id=session.id,
            )
            raise InvalidTokenError()
        return rotated

    async def revoke_one(self, user_id: str, session_id: str) -> None:
        deleted = await self.store.delete_session(user_id, session_id)
        if not deleted:
            raise NotFoundError("device not found", detail={"device_id": session_id})
        logger.info("session_revoked", user_id=user_id, session_id=session_id)
        await self.events.record(
            user_id,
            SecurityEventType.DEVICE_REVOKED,
            f"Device access revoked: {session_id}",
            ip_address=SYSTEM_ACTOR,
            user_agent=SYSTEM_ACTOR,
            severity=Severity.LOW,
            metadata={"session_id": session_id},
        )

    async def revoke_by_token(
        self,
        user_id: str,
        refresh_token: str,
        *,
        ip_address: str,
        user_agent: str,
    ) -> int:
        deleted = await self.store.delete_session_by_token(user_id, refresh_token)
        if deleted:
            logger.info("session_logged_out", user_id=user_id)
            await self.events.record(
                user_id,
                SecurityEventType.LOGOUT,
                "User logged out",
                ip_address=ip_address,
                user_agent=user_agent,
                severity=Severity.LOW,
            )
        return deleted

    async def revoke_all(self, user_id: str) -> int:
        deleted = await self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked_all", user_id=user_id, count=deleted)
        await self.events.record(
            user_id,
            SecurityEventType.LOGOUT_ALL_DEVICES,
            "Logged out from all devices",
            ip_address=SYSTEM_ACTOR,
            user_agent=SYSTEM_ACTOR,
            severity=Severity.LOW,
            metadata={"sessions_revoked": deleted},
        )
        return deleted

    async def list_active(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[Session]:
        return await self.store.list_active_sessions(user_id, now=now or utcnow())

    def describe(
        self, session: Session, current_session_id: Optional[str] = None
    ) -> Device:
        info = classify_user_agent(session.user_agent)
        return Device(
            device_id=session.id,
            device_name=session.device_info or describe_device(session.user_agent),
            device_class=info.device_class,
            browser=info.browser,
            os=info.os,
            ip_address=session.ip_address,
            location=session.location,
            last_seen=session.last_accessed_at,
            is_current_device=session.id == current_session_id,
        )
