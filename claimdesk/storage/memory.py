from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

from claimdesk.logging import get_logger
from claimdesk.storage.errors import ConstraintViolation
from claimdesk.storage.models import (
    AuditAction,
    AuditLogEntry,
    RevokeReason,
    Role,
    Session,
    User,
)

T = TypeVar("T")

_UPDATABLE_USER_FIELDS = {
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


class MemoryStore:
    """In-memory credential store for tests and single-process development.

    When ``fs_root`` is given the state is mirrored to a JSON file after every
    committed mutation and reloaded on start-up.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so a unit of work can call back into the public methods
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # unit of work
    def run_in_transaction(self, work: Callable[["MemoryStore"], T]) -> T:
        """Run ``work`` against this store; every write inside it lands or none do."""
        with self._data_lock:
            snapshot = (
                copy.deepcopy(self.users),
                copy.deepcopy(self.sessions),
                list(self.audit_log),
            )
            self._tx_depth += 1
            try:
                result = work(self)
            except Exception:
                self.users, self.sessions, self.audit_log = snapshot
                self.logger.info("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1
            self._persist_state()
            return result

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
        with self._data_lock:
            email = email.lower()
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                full_name=full_name,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
            )
            if now is not None:
                user.created_at = now
                user.updated_at = now
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return replace(user)
        return None

    def find_user_by_username_or_email(
        self, username: str, email: str
    ) -> Optional[User]:
        email = email.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.username == username or user.email == email:
                    return replace(user)
        return None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in users[:limit]]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                fields["email"] = fields["email"].lower()
                for other in self.users.values():
                    if other.id != user_id and other.email == fields["email"]:
                        raise ConstraintViolation(
                            "email already exists", {"field": "email"}
                        )
            updated_at = fields.pop("updated_at", None) or datetime.now(
                user.updated_at.tzinfo
            )
            updated = replace(user, **fields, updated_at=updated_at)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.sessions = {
                sid: sess for sid, sess in self.sessions.items() if sess.user_id != user_id
            }
            self._persist_state()
            return True

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            if any(
                existing.refresh_token == session.refresh_token
                for existing in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already issued", {"field": "refresh_token"}
                )
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.refresh_token == refresh_token:
                    return replace(sess)
        return None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                replace(sess)
                for sess in sorted(self.sessions.values(), key=lambda s: s.created_at)
                if sess.user_id == user_id
            ]

    def rotate_session(
        self,
        session_id: str,
        old_refresh_token: str,
        refresh_token: str,
        access_token: str,
        now: datetime,
    ) -> Optional[Session]:
        """Swap token values on a live session; None if the old value is stale."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked or sess.refresh_token != old_refresh_token:
                return None
            if any(s.refresh_token == refresh_token for s in self.sessions.values()):
                raise ConstraintViolation(
                    "refresh token already issued", {"field": "refresh_token"}
                )
            sess.refresh_token = refresh_token
            sess.access_token = access_token
            sess.last_used_at = now
            self._persist_state()
            return replace(sess)

    def revoke_sessions(
        self, user_id: str, refresh_token: str, reason: RevokeReason, now: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if (
                    sess.user_id == user_id
                    and sess.refresh_token == refresh_token
                    and not sess.revoked
                ):
                    self._mark_revoked(sess, reason, now)
                    count += 1
            if count:
                self._persist_state()
            return count

    def revoke_user_sessions(
        self, user_id: str, reason: RevokeReason, now: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.revoked:
                    continue
                self._mark_revoked(sess, reason, now)
                count += 1
            if count:
                self._persist_state()
            return count

    def revoke_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if not sess.revoked and sess.expires_at <= now:
                    self._mark_revoked(sess, RevokeReason.EXPIRED, now)
                    count += 1
            if count:
                self._persist_state()
            return count

    @staticmethod
    def _mark_revoked(sess: Session, reason: RevokeReason, now: datetime) -> None:
        sess.revoked = True
        sess.revoked_at = now
        sess.revoked_reason = reason

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_log.append(replace(entry))
            self._persist_state()
            return entry

    def list_audit_entries(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [
                replace(e)
                for e in self.audit_log
                if user_id is None or e.user_id == user_id
            ]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    def close(self) -> None:
        self._persist_state()

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None or self._tx_depth:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "audit_log": [self._serialize_audit_entry(e) for e in self.audit_log],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.audit_log = [
            self._deserialize_audit_entry(e) for e in data.get("audit_log", [])
        ]
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "full_name": user.full_name,
            "role": user.role.value,
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            full_name=data.get("full_name"),
            role=Role(data.get("role", Role.USER.value)),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            password_changed_at=self._deserialize_datetime(
                data.get("password_changed_at")
            ),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token": session.refresh_token,
            "access_token": session.access_token,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "last_used_at": self._serialize_datetime(session.last_used_at),
            "revoked": session.revoked,
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "revoked_reason": (
                session.revoked_reason.value if session.revoked_reason else None
            ),
        }

    def _deserialize_session(self, data: dict) -> Session:
        reason = data.get("revoked_reason")
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token=data["refresh_token"],
            access_token=data["access_token"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            revoked=data.get("revoked", False),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=RevokeReason(reason) if reason else None,
        )

    def _serialize_audit_entry(self, entry: AuditLogEntry) -> dict:
        return {
            "id": entry.id,
            "action": entry.action.value,
            "entity": entry.entity,
            "user_id": entry.user_id,
            "username": entry.username,
            "entity_id": entry.entity_id,
            "description": entry.description,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "timestamp": self._serialize_datetime(entry.timestamp),
        }

    def _deserialize_audit_entry(self, data: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=data["id"],
            action=AuditAction(data["action"]),
            entity=data.get("entity", "User"),
            user_id=data.get("user_id"),
            username=data.get("username"),
            entity_id=data.get("entity_id"),
            description=data.get("description"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            timestamp=self._deserialize_datetime(data["timestamp"]),
        )
