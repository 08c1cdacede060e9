from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from claimdesk.logging import get_logger
from claimdesk.storage.errors import ConstraintViolation, StoreUnavailable
from claimdesk.storage.models import (
    AuditAction,
    AuditLogEntry,
    RevokeReason,
    Role,
    Session,
    User,
)

T = TypeVar("T")

_USER_COLUMNS = {
    "email",
    "password_hash",
    "full_name",
    "role",
    "is_active",
    "email_verified",
    "failed_login_attempts",
    "locked_until",
    "last_login_at",
    "password_changed_at",
    "updated_at",
}

_UNIQUE_FIELDS = {
    "app_user_username_key": "username",
    "app_user_email_key": "email",
    "auth_session_refresh_token_key": "refresh_token",
}


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field_name = _UNIQUE_FIELDS.get(constraint, "unknown")
    return ConstraintViolation(f"{field_name} already exists", {"field": field_name})


def _is_uuid(value: Optional[str]) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        full_name=row.get("full_name"),
        role=Role(row.get("role", Role.USER.value)),
        is_active=row.get("is_active", True),
        email_verified=row.get("email_verified", False),
        failed_login_attempts=row.get("failed_login_attempts", 0),
        locked_until=row.get("locked_until"),
        last_login_at=row.get("last_login_at"),
        password_changed_at=row.get("password_changed_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_session(row: dict) -> Session:
    reason = row.get("revoked_reason")
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        refresh_token=row["refresh_token"],
        access_token=row["access_token"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        last_used_at=row.get("last_used_at"),
        revoked=row.get("revoked", False),
        revoked_at=row.get("revoked_at"),
        revoked_reason=RevokeReason(reason) if reason else None,
    )


def _row_to_audit_entry(row: dict) -> AuditLogEntry:
    return AuditLogEntry(
        id=str(row["id"]),
        action=AuditAction(row["action"]),
        entity=row["entity"],
        user_id=str(row["user_id"]) if row.get("user_id") else None,
        username=row.get("username"),
        entity_id=row.get("entity_id"),
        description=row.get("description"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        timestamp=row["timestamp"],
    )


class PostgresStore:
    """Postgres-backed credential store.

    Every public method runs on its own pooled connection unless it is called
    from inside :meth:`run_in_transaction`, in which case it joins the
    connection (and transaction) owned by the current thread.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._local = threading.local()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = ["app_user", "auth_session", "audit_log"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}. Apply sql/001_auth_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # unit of work
    def run_in_transaction(self, work: Callable[["PostgresStore"], T]) -> T:
        """Run ``work`` on a single connection; commit on return, roll back on raise."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            # nested unit of work becomes a savepoint
            with conn.transaction():
                return work(self)
        with self.pool.connection() as conn:
            self._local.conn = conn
            try:
                with conn.transaction():
                    return work(self)
            finally:
                self._local.conn = None

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        role: Role = Role.USER,
        is_active: bool = True,
        email_verified: bool = False,
        now: Optional[datetime] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, full_name, role, is_active, email_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()), COALESCE(%s, now()))
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        username,
                        email.lower(),
                        password_hash,
                        full_name,
                        role.value,
                        is_active,
                        email_verified,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def find_user_by_username_or_email(
        self, username: str, email: str
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s OR email = %s LIMIT 1",
                (username, email.lower()),
            ).fetchone()
        return _row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = fields["email"].lower()
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        assignments = [f"{column} = %s" for column in fields]
        if "updated_at" not in fields:
            assignments.append("updated_at = now()")
        if not _is_uuid(user_id):
            return None
        params = list(fields.values()) + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return _row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token, access_token, ip_address, user_agent, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.access_token,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def rotate_session(
        self,
        session_id: str,
        old_refresh_token: str,
        refresh_token: str,
        access_token: str,
        now: datetime,
    ) -> Optional[Session]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth_session
                    SET refresh_token = %s, access_token = %s, last_used_at = %s
                    WHERE id = %s AND refresh_token = %s AND revoked = FALSE
                    RETURNING *
                    """,
                    (refresh_token, access_token, now, session_id, old_refresh_token),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc)
        return _row_to_session(row) if row else None

    def revoke_sessions(
        self, user_id: str, refresh_token: str, reason: RevokeReason, now: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND refresh_token = %s AND revoked = FALSE
                """,
                (now, reason.value, user_id, refresh_token),
            )
            return result.rowcount

    def revoke_user_sessions(
        self, user_id: str, reason: RevokeReason, now: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND revoked = FALSE
                """,
                (now, reason.value, user_id),
            )
            return result.rowcount

    def revoke_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                WHERE revoked = FALSE AND expires_at <= %s
                """,
                (now, RevokeReason.EXPIRED.value, now),
            )
            return result.rowcount

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, user_id, username, action, entity, entity_id, description, ip_address, user_agent, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.username,
                    entry.action.value,
                    entry.entity,
                    entry.entity_id,
                    entry.description,
                    entry.ip_address,
                    entry.user_agent,
                    entry.timestamp,
                ),
            )
        return entry

    def list_audit_entries(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        if user_id and not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE user_id = %s ORDER BY timestamp DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY timestamp DESC LIMIT %s", (limit,)
                ).fetchall()
        return [_row_to_audit_entry(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
