from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from sessionguard.logging import get_logger
from sessionguard.storage.common import (
    SecretBox,
    normalize_email,
    normalize_username,
    page_slice,
)
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import SecurityEvent, Session, User, utcnow


class MemoryStore:
    """In-process store for tests and single-node development.

    Methods are coroutines so the store is interchangeable with
    ``PostgresStore``; no method awaits while holding ``_data_lock``.
    Records are copied on the way in and out so callers cannot mutate
    stored state behind the store's back.
    """

    def __init__(self, *, secret_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.security_events: List[SecurityEvent] = []
        self.backup_codes: Dict[str, Set[str]] = {}
        self._data_lock = threading.RLock()
        self._secrets = SecretBox(secret_key)

    # users
    async def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            key = normalize_username(username)
            if any(normalize_username(u.username) == key for u in self.users.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username.strip(),
                first_name=first_name,
                last_name=last_name,
                role=role,
            )
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            return self._export_user(user)

    def _export_user(self, user: User) -> User:
        return replace(user, two_factor_secret=self._secrets.decrypt(user.two_factor_secret))

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._export_user(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return self._export_user(user) if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        key = normalize_username(username)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if normalize_username(u.username) == key),
                None,
            )
            return self._export_user(user) if user else None

    async def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"field": "user_id"}
                )
            self.credentials[user_id] = password_hash
            self.users[user_id].updated_at = utcnow()

    async def record_login(self, user_id: str, ip_address: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at
            user.last_login_ip = ip_address
            user.updated_at = at

    async def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            return self._export_user(user)

    async def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.credentials.pop(user_id, None)
            self.backup_codes.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            self.security_events = [
                evt for evt in self.security_events if evt.user_id != user_id
            ]
            return True

    # two-factor
    async def set_two_factor_secret(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for 2fa", {"field": "user_id"})
            user.two_factor_secret = self._secrets.encrypt(secret)
            user.is_two_factor_enabled = enabled
            user.updated_at = utcnow()

    async def enable_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.two_factor_secret:
                return False
            user.is_two_factor_enabled = True
            user.updated_at = utcnow()
            return True

    async def replace_backup_codes(self, user_id: str, code_hashes: List[str]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for backup codes", {"field": "user_id"}
                )
            self.backup_codes[user_id] = set(code_hashes)

    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            codes = self.backup_codes.get(user_id)
            if not codes or code_hash not in codes:
                return False
            codes.discard(code_hash)
            return True

    # sessions
    async def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"field": "user_id"})
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            if any(
                s.refresh_token == session.refresh_token for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already in use", {"field": "refresh_token"}
                )
            self.sessions[session.id] = replace(session)
            return replace(session)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    async def find_active_session_by_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token == refresh_token and s.is_active
                ),
                None,
            )
            return replace(sess) if sess else None

    async def rotate_session_token(
        self,
        session_id: str,
        old_token: str,
        new_token: str,
        *,
        now: datetime,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active or sess.refresh_token != old_token:
                return None
            if any(
                s.refresh_token == new_token and s.id != session_id
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already in use", {"field": "refresh_token"}
                )
            sess.refresh_token = new_token
            sess.last_accessed_at = now
            sess.updated_at = now
            return replace(sess)

    async def delete_session(self, user_id: str, session_id: str) -> int:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id:
                return 0
            self.sessions.pop(session_id, None)
            return 1

    async def delete_session_by_token(self, user_id: str, refresh_token: str) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sess.refresh_token == refresh_token
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    async def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    async def list_active_sessions(self, user_id: str, *, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active and s.expires_at > now
            ]
        return sorted(active, key=lambda s: s.last_accessed_at, reverse=True)

    # security events
    async def insert_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            if event.user_id not in self.users:
                raise ConstraintViolation("event user missing", {"field": "user_id"})
            self.security_events.append(replace(event))
            return event

    async def list_security_events(
        self,
        user_id: str,
        *,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[SecurityEvent], int]:
        with self._data_lock:
            matches = [
                replace(evt)
                for evt in self.security_events
                if evt.user_id == user_id
                and (event_type is None or evt.event_type == event_type)
                and (severity is None or evt.severity == severity)
            ]
        # Insertion order breaks ties between events recorded in the same instant
        ordered = [
            evt
            for _, evt in sorted(
                enumerate(matches),
                key=lambda pair: (pair[1].created_at, pair[0]),
                reverse=True,
            )
        ]
        return page_slice(ordered, limit, offset)

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None
