from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Account roles, most privileged first."""

    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    USER = "USER"
    VIEWER = "VIEWER"


class RevokeReason(str, Enum):
    MANUAL_LOGOUT = "manual_logout"
    ROTATED = "rotated"
    EXPIRED = "expired"
    ADMIN_REVOKED = "admin_revoked"


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    READ = "READ"


@dataclass
class ClientMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    full_name: Optional[str] = None
    role: Role = Role.USER
    is_active: bool = True
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def summary(self) -> dict:
        """Public-safe view of the account; never includes the hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role.value,
        }


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    access_token: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_used_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[RevokeReason] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        access_token: str,
        *,
        now: datetime,
        ttl: timedelta,
        client: ClientMeta | None = None,
    ) -> "Session":
        client = client or ClientMeta()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            access_token=access_token,
            created_at=now,
            expires_at=now + ttl,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass
class AuditLogEntry:
    action: AuditAction
    entity: str = "User"
    user_id: Optional[str] = None
    username: Optional[str] = None
    entity_id: Optional[str] = None
    description: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
