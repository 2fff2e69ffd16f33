from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.common import (
    SecretBox,
    normalize_email,
    parse_json_meta,
    safe_row_value,
)
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import SecurityEvent, Session, User, utcnow

_REQUIRED_TABLES = (
    "app_user",
    "user_credential",
    "user_session",
    "security_event",
    "two_factor_backup_code",
)

_SESSION_COLUMNS = (
    "id, user_id, refresh_token, ip_address, user_agent, device_info, location, "
    "is_active, expires_at, last_accessed_at, created_at, updated_at"
)


def _unique_field(exc: errors.UniqueViolation, default: str) -> str:
    constraint = (exc.diag.constraint_name or "") if exc.diag else ""
    for field in ("username", "refresh_token", "email"):
        if field in constraint:
            return field
    return default


class PostgresStore:
    """Postgres-backed credential, session and security event store.

    The pool is opened lazily on first use so the store can be built outside
    a running event loop. Schema is installed from ``sql/001_auth_schema.sql``;
    ``open()`` refuses to serve if it is missing.
    """

    def __init__(
        self,
        dsn: str,
        *,
        secret_key: str,
        min_size: int = 2,
        max_size: int = 10,
        pool: Any = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._secrets = SecretBox(secret_key)
        self.pool = pool or AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        self._opened = pool is not None
        self._open_lock = asyncio.Lock()

    async def open(self) -> None:
        if self._opened:
            return
        async with self._open_lock:
            if self._opened:
                return
            await self.pool.open()
            await self._verify_required_schema()
            self._opened = True
            self.logger.info("postgres_store_opened")

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[Any]:
        await self.open()
        async with self.pool.connection() as conn:
            yield conn

    async def _verify_required_schema(self) -> None:
        """Ensure the auth tables and the citext extension exist before serving requests."""

        async with self.pool.connection() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                cur = await conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                )
                row = await cur.fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/001_auth_schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )
            cur = await conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            )
            if not await cur.fetchone():
                raise RuntimeError(
                    "citext extension is missing. Install it and apply sql/001_auth_schema.sql."
                )

    async def verify_connection(self) -> None:
        async with self._connect() as conn:
            await conn.execute("SELECT 1")

    async def close(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False

    # row mapping
    def _user_from_row(self, row: Any) -> User:
        return User(
            id=str(row["id"]),
            email=str(row["email"]),
            username=str(row["username"]),
            first_name=safe_row_value(row, "first_name"),
            last_name=safe_row_value(row, "last_name"),
            avatar=safe_row_value(row, "avatar"),
            role=safe_row_value(row, "role", "user"),
            is_active=bool(safe_row_value(row, "is_active", True)),
            is_email_verified=bool(safe_row_value(row, "is_email_verified", False)),
            email_verification_token=safe_row_value(row, "email_verification_token"),
            email_verification_expires_at=safe_row_value(
                row, "email_verification_expires_at"
            ),
            is_two_factor_enabled=bool(
                safe_row_value(row, "is_two_factor_enabled", False)
            ),
            two_factor_secret=self._secrets.decrypt(
                safe_row_value(row, "two_factor_secret")
            ),
            last_login_at=safe_row_value(row, "last_login_at"),
            last_login_ip=safe_row_value(row, "last_login_ip"),
            created_at=safe_row_value(row, "created_at") or utcnow(),
            updated_at=safe_row_value(row, "updated_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Any) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            device_info=safe_row_value(row, "device_info"),
            location=safe_row_value(row, "location"),
            is_active=bool(safe_row_value(row, "is_active", True)),
            expires_at=row["expires_at"],
            last_accessed_at=row["last_accessed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _event_from_row(row: Any) -> SecurityEvent:
        return SecurityEvent(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            event_type=row["event_type"],
            description=row["description"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            severity=row["severity"],
            location=safe_row_value(row, "location"),
            metadata=parse_json_meta(safe_row_value(row, "metadata")),
            created_at=row["created_at"],
        )

    async def _fetch_user(self, clause: str, value: Any) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(f"SELECT * FROM app_user WHERE {clause}", (value,))
            row = await cur.fetchone()
        return self._user_from_row(row) if row else None

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
        user_id = str(uuid.uuid4())
        email = normalize_email(email)
        username = username.strip()
        now = utcnow()
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, first_name, last_name, role, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (user_id, email, username, first_name, last_name, role, now, now),
                )
                await conn.execute(
                    "INSERT INTO user_credential (user_id, password_hash, updated_at) VALUES (%s, %s, %s)",
                    (user_id, password_hash, now),
                )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc, "email")
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return User(
            id=user_id,
            email=email,
            username=username,
            first_name=first_name,
            last_name=last_name,
            role=role,
            created_at=now,
            updated_at=now,
        )

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._fetch_user("id = %s", user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self._fetch_user("email = %s", normalize_email(email))

    async def get_user_by_username(self, username: str) -> Optional[User]:
        # citext column compares case-insensitively
        return await self._fetch_user("username = %s", username.strip())

    async def get_password_hash(self, user_id: str) -> Optional[str]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT password_hash FROM user_credential WHERE user_id = %s",
                (user_id,),
            )
            row = await cur.fetchone()
        return str(row["password_hash"]) if row else None

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash, updated_at = now()
                    """,
                    (user_id, password_hash),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"field": "user_id"}
            )

    async def record_login(self, user_id: str, ip_address: str, at: datetime) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE app_user SET last_login_at = %s, last_login_ip = %s, updated_at = %s WHERE id = %s",
                (at, ip_address, at, user_id),
            )

    async def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            )
            row = await cur.fetchone()
        return self._user_from_row(row) if row else None

    async def delete_user(self, user_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # two-factor
    async def set_two_factor_secret(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> None:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user
                SET two_factor_secret = %s, is_two_factor_enabled = %s, updated_at = now()
                WHERE id = %s
                """,
                (self._secrets.encrypt(secret), enabled, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for 2fa", {"field": "user_id"})

    async def enable_two_factor(self, user_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE app_user SET is_two_factor_enabled = TRUE, updated_at = now()
                WHERE id = %s AND two_factor_secret IS NOT NULL
                """,
                (user_id,),
            )
            return cur.rowcount > 0

    async def replace_backup_codes(self, user_id: str, code_hashes: List[str]) -> None:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    "DELETE FROM two_factor_backup_code WHERE user_id = %s", (user_id,)
                )
                for code_hash in code_hashes:
                    await conn.execute(
                        """
                        INSERT INTO two_factor_backup_code (user_id, code_hash)
                        VALUES (%s, %s) ON CONFLICT DO NOTHING
                        """,
                        (user_id, code_hash),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for backup codes", {"field": "user_id"}
            )

    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM two_factor_backup_code WHERE user_id = %s AND code_hash = %s",
                (user_id, code_hash),
            )
            return cur.rowcount > 0

    # sessions
    async def create_session(self, session: Session) -> Session:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO user_session ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.ip_address,
                        session.user_agent,
                        session.device_info,
                        session.location,
                        session.is_active,
                        session.expires_at,
                        session.last_accessed_at,
                        session.created_at,
                        session.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"field": "user_id"})
        except errors.UniqueViolation as exc:
            field = _unique_field(exc, "refresh_token")
            raise ConstraintViolation(f"session {field} already exists", {"field": field})
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM user_session WHERE id = %s",
                (session_id,),
            )
            row = await cur.fetchone()
        return self._session_from_row(row) if row else None

    async def find_active_session_by_token(self, refresh_token: str) -> Optional[Session]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM user_session WHERE refresh_token = %s AND is_active",
                (refresh_token,),
            )
            row = await cur.fetchone()
        return self._session_from_row(row) if row else None

    async def rotate_session_token(
        self,
        session_id: str,
        old_token: str,
        new_token: str,
        *,
        now: datetime,
    ) -> Optional[Session]:
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    f"""
                    UPDATE user_session
                    SET refresh_token = %s, last_accessed_at = %s, updated_at = %s
                    WHERE id = %s AND refresh_token = %s AND is_active
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (new_token, now, now, session_id, old_token),
                )
                row = await cur.fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already in use", {"field": "refresh_token"}
            )
        return self._session_from_row(row) if row else None

    async def delete_session(self, user_id: str, session_id: str) -> int:
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    "DELETE FROM user_session WHERE id = %s AND user_id = %s",
                    (session_id, user_id),
                )
                return cur.rowcount
        except errors.DataError:
            # Not a UUID, so no session can carry this id
            self.logger.info("session_id_malformed", user_id=user_id)
            return 0

    async def delete_session_by_token(self, user_id: str, refresh_token: str) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM user_session WHERE user_id = %s AND refresh_token = %s",
                (user_id, refresh_token),
            )
            return cur.rowcount

    async def delete_user_sessions(self, user_id: str) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM user_session WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    async def list_active_sessions(self, user_id: str, *, now: datetime) -> List[Session]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS} FROM user_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_accessed_at DESC
                """,
                (user_id, now),
            )
            rows = await cur.fetchall()
        return [self._session_from_row(row) for row in rows]

    # security events
    async def insert_security_event(self, event: SecurityEvent) -> SecurityEvent:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO security_event (id, user_id, event_type, description, ip_address, user_agent, location, severity, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        event.id,
                        event.user_id,
                        event.event_type,
                        event.description,
                        event.ip_address,
                        event.user_agent,
                        event.location,
                        event.severity,
                        json.dumps(event.metadata) if event.metadata is not None else None,
                        event.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("event user missing", {"field": "user_id"})
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
        clauses = ["user_id = %s"]
        params: List[Any] = [user_id]
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type)
        if severity is not None:
            clauses.append("severity = %s")
            params.append(severity)
        where = " AND ".join(clauses)
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT count(*) AS total FROM security_event WHERE {where}", params
            )
            count_row = await cur.fetchone()
            cur = await conn.execute(
                f"""
                SELECT * FROM security_event WHERE {where}
                ORDER BY created_at DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                [*params, limit, offset],
            )
            rows = await cur.fetchall()
        total = int(count_row["total"]) if count_row else 0
        return [self._event_from_row(row) for row in rows], total
