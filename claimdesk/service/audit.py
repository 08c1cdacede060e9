from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from claimdesk.logging import get_logger
from claimdesk.storage.models import AuditAction, AuditLogEntry, ClientMeta

logger = get_logger(__name__)


class AuditStore(Protocol):
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry: ...


class AuditSink:
    """Best-effort recorder for security events.

    ``record_security_event`` never raises: a failed write is logged and the
    caller's result stands.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record_security_event(self, entry: AuditLogEntry) -> Optional[AuditLogEntry]:
        try:
            return self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                action=entry.action.value,
                user_id=entry.user_id,
                entity_id=entry.entity_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def record(
        self,
        action: AuditAction,
        *,
        description: str,
        client: ClientMeta | None = None,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity: str = "User",
        timestamp: Optional[datetime] = None,
    ) -> Optional[AuditLogEntry]:
        client = client or ClientMeta()
        entry = AuditLogEntry(
            action=action,
            entity=entity,
            user_id=user_id,
            username=username,
            entity_id=entity_id,
            description=description,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        return self.record_security_event(entry)
