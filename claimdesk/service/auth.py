from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol, TypeVar

from claimdesk.config import Settings
from claimdesk.logging import get_logger
from claimdesk.service.audit import AuditSink
from claimdesk.service.errors import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
)
from claimdesk.service.guards import TokenGate
from claimdesk.service.lockout import LockoutPolicy
from claimdesk.service.passwords import PasswordService
from claimdesk.service.tokens import REFRESH, InvalidToken, TokenIssuer
from claimdesk.storage.errors import ConstraintViolation
from claimdesk.storage.models import (
    AuditAction,
    AuditLogEntry,
    ClientMeta,
    RevokeReason,
    Role,
    Session,
    User,
)

logger = get_logger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS = "invalid username or password"
INVALID_REFRESH = "invalid or expired refresh token"
DUPLICATE_ACCOUNT = "username or email already exists"


class AuthStore(Protocol):
    def run_in_transaction(self, work: Callable[[Any], T]) -> T: ...

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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def find_user_by_username_or_email(
        self, username: str, email: str
    ) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        old_refresh_token: str,
        refresh_token: str,
        access_token: str,
        now: datetime,
    ) -> Optional[Session]: ...

    def revoke_sessions(
        self, user_id: str, refresh_token: str, reason: RevokeReason, now: datetime
    ) -> int: ...

    def revoke_user_sessions(
        self, user_id: str, reason: RevokeReason, now: datetime
    ) -> int: ...

    def revoke_expired_sessions(self, now: datetime) -> int: ...

    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def list_audit_entries(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]: ...


class AuthService:
    """Coordinates login, registration, logout and refresh.

    All state lives in the store. Each call applies its writes in a single
    unit of work and only then records the audit event, so a failing audit
    write can neither block nor undo the primary change.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        lockout: Optional[LockoutPolicy] = None,
        passwords: Optional[PasswordService] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self.issuer = issuer or TokenIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=self.refresh_ttl,
            leeway=timedelta(seconds=settings.token_clock_skew_seconds),
            clock=self._clock,
        )
        self.lockout = lockout or LockoutPolicy(
            threshold=settings.lockout_threshold,
            duration=timedelta(minutes=settings.lockout_duration_minutes),
        )
        self.passwords = passwords or PasswordService()
        self.audit = audit or AuditSink(store)
        self.gate = TokenGate(self.issuer, store)

    def _now(self) -> datetime:
        return self._clock()

    def _issue_pair(self, user: User) -> tuple[str, str]:
        return self.issuer.issue_access_token(user), self.issuer.issue_refresh_token(user)

    # login / register
    def login(
        self, username: str, password: str, client: ClientMeta | None = None
    ) -> dict[str, Any]:
        client = client or ClientMeta()
        now = self._now()
        user = self.store.get_user_by_username(username)
        if not user:
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                username=username,
                description="user not found",
                client=client,
                timestamp=now,
            )
            raise NotFoundError(INVALID_CREDENTIALS)

        if self.lockout.is_locked(user, now):
            self.logger.info("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(user.locked_until)

        if not user.is_active:
            self.logger.info("login_rejected_inactive", user_id=user.id)
            raise AuthenticationError("account is deactivated")

        if not self.passwords.verify(user.password_hash, password):
            raise self._record_failed_attempt(user, client, now)

        access_token, refresh_token = self._issue_pair(user)
        session = Session.new(
            user.id,
            refresh_token,
            access_token,
            now=now,
            ttl=self.refresh_ttl,
            client=client,
        )
        fields: dict[str, Any] = {
            "failed_login_attempts": 0,
            "locked_until": None,
            "last_login_at": now,
        }
        if self.passwords.needs_rehash(user.password_hash):
            fields["password_hash"] = self.passwords.hash(password)

        def _open_session(tx: AuthStore) -> Optional[User]:
            tx.create_session(session)
            return tx.update_user(user.id, **fields)

        updated = self.store.run_in_transaction(_open_session) or user
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        self.audit.record(
            AuditAction.LOGIN,
            user_id=user.id,
            username=user.username,
            entity_id=user.id,
            description="user logged in successfully",
            client=client,
            timestamp=now,
        )
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "user": updated.summary(),
        }

    def _record_failed_attempt(
        self, user: User, client: ClientMeta, now: datetime
    ) -> AuthenticationError:
        """Persist the failure and return the error the caller should raise."""
        attempts = user.failed_login_attempts + 1
        locked_until = self.lockout.locked_until(attempts, now)
        fields: dict[str, Any] = {"failed_login_attempts": attempts}
        if locked_until is not None:
            fields["locked_until"] = locked_until
        # committed before raising so the count survives the failed call
        self.store.run_in_transaction(lambda tx: tx.update_user(user.id, **fields))
        self.logger.warning(
            "login_failed",
            user_id=user.id,
            failed_attempts=attempts,
            locked=locked_until is not None,
        )
        self.audit.record(
            AuditAction.LOGIN_FAILED,
            user_id=user.id,
            username=user.username,
            entity_id=user.id,
            description="invalid password",
            client=client,
            timestamp=now,
        )
        if locked_until is not None:
            return AccountLockedError(locked_until)
        return AuthenticationError(INVALID_CREDENTIALS)

    def register(
        self,
        username: str,
        email: str,
        password: str,
        full_name: Optional[str] = None,
        client: ClientMeta | None = None,
    ) -> dict[str, Any]:
        if not self.settings.allow_signup:
            raise ForbiddenError("registration is disabled")
        client = client or ClientMeta()
        email = email.strip().lower()
        if self.store.find_user_by_username_or_email(username, email):
            raise BadRequestError(DUPLICATE_ACCOUNT)
        password_hash = self.passwords.hash(password)
        now = self._now()

        def _create(tx: AuthStore) -> tuple[User, str, str]:
            user = tx.create_user(
                username, email, password_hash, full_name=full_name, now=now
            )
            access_token, refresh_token = self._issue_pair(user)
            tx.create_session(
                Session.new(
                    user.id,
                    refresh_token,
                    access_token,
                    now=now,
                    ttl=self.refresh_ttl,
                    client=client,
                )
            )
            return user, access_token, refresh_token

        try:
            user, access_token, refresh_token = self.store.run_in_transaction(_create)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration
            self.logger.info("register_conflict", detail=exc.detail)
            raise BadRequestError(DUPLICATE_ACCOUNT) from exc
        self.logger.info("user_registered", user_id=user.id)
        self.audit.record(
            AuditAction.CREATE,
            user_id=user.id,
            username=user.username,
            entity_id=user.id,
            description="new user registered",
            client=client,
            timestamp=now,
        )
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "user": user.summary(),
        }

    # sessions
    def logout(
        self,
        user_id: str,
        refresh_token: str,
        client: ClientMeta | None = None,
        *,
        username: Optional[str] = None,
    ) -> int:
        """Revoke the caller's session for ``refresh_token``; repeat calls are no-ops."""
        now = self._now()
        revoked = self.store.run_in_transaction(
            lambda tx: tx.revoke_sessions(
                user_id, refresh_token, RevokeReason.MANUAL_LOGOUT, now
            )
        )
        self.logger.info("logout", user_id=user_id, sessions_revoked=revoked)
        self.audit.record(
            AuditAction.LOGOUT,
            user_id=user_id,
            username=username,
            entity_id=user_id,
            description="user logged out",
            client=client,
            timestamp=now,
        )
        return revoked

    def refresh(self, refresh_token: str) -> dict[str, str]:
        now = self._now()
        try:
            claims = self.issuer.verify(refresh_token, expected_type=REFRESH)
        except InvalidToken:
            raise AuthenticationError(INVALID_REFRESH) from None
        session = self.store.get_session_by_refresh_token(refresh_token)
        if not session or not session.is_usable(now) or session.user_id != claims["sub"]:
            self.logger.info("refresh_rejected", session_found=session is not None)
            raise AuthenticationError(INVALID_REFRESH)
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            raise AuthenticationError(INVALID_REFRESH)

        access_token, new_refresh_token = self._issue_pair(user)
        rotated = self.store.run_in_transaction(
            lambda tx: tx.rotate_session(
                session.id, refresh_token, new_refresh_token, access_token, now
            )
        )
        if rotated is None:
            # another request rotated this value first
            raise AuthenticationError(INVALID_REFRESH)
        self.logger.info("session_rotated", user_id=user.id, session_id=session.id)
        return {"access_token": access_token, "refresh_token": new_refresh_token}

    def revoke_expired_sessions(self) -> int:
        now = self._now()
        count = self.store.run_in_transaction(lambda tx: tx.revoke_expired_sessions(now))
        if count:
            self.logger.info("expired_sessions_revoked", count=count)
        return count

    # identity
    def authenticate(self, authorization: Optional[str]) -> User:
        return self.gate.authenticate(authorization)

    def get_current_user(self, user: User) -> User:
        return user

    def change_password(
        self,
        user: User,
        old_password: str,
        new_password: str,
        client: ClientMeta | None = None,
    ) -> None:
        if not self.passwords.verify(user.password_hash, old_password):
            raise BadRequestError("current password is incorrect")
        now = self._now()
        password_hash = self.passwords.hash(new_password)

        def _apply(tx: AuthStore) -> int:
            tx.update_user(user.id, password_hash=password_hash, password_changed_at=now)
            return tx.revoke_user_sessions(user.id, RevokeReason.ADMIN_REVOKED, now)

        revoked = self.store.run_in_transaction(_apply)
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        self.audit.record(
            AuditAction.UPDATE,
            user_id=user.id,
            username=user.username,
            entity_id=user.id,
            description="password changed",
            client=client,
            timestamp=now,
        )

    def update_profile(
        self,
        user: User,
        *,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
        client: ClientMeta | None = None,
    ) -> User:
        fields: dict[str, Any] = {}
        if full_name is not None:
            fields["full_name"] = full_name
        if email is not None and email.strip().lower() != user.email:
            fields["email"] = email.strip().lower()
            fields["email_verified"] = False
        if not fields:
            return user
        updated = self._update_user(user.id, fields)
        self.audit.record(
            AuditAction.UPDATE,
            user_id=user.id,
            username=user.username,
            entity_id=user.id,
            description="profile updated",
            client=client,
            timestamp=self._now(),
        )
        return updated

    # administration
    def create_user(
        self,
        actor: User,
        *,
        username: str,
        email: str,
        password: str,
        full_name: Optional[str] = None,
        role: Role = Role.USER,
        is_active: bool = True,
        client: ClientMeta | None = None,
    ) -> User:
        self._check_can_grant(actor, role)
        email = email.strip().lower()
        if self.store.find_user_by_username_or_email(username, email):
            raise BadRequestError(DUPLICATE_ACCOUNT)
        password_hash = self.passwords.hash(password)
        try:
            user = self.store.run_in_transaction(
                lambda tx: tx.create_user(
                    username,
                    email,
                    password_hash,
                    full_name=full_name,
                    role=role,
                    is_active=is_active,
                    now=self._now(),
                )
            )
        except ConstraintViolation as exc:
            raise BadRequestError(DUPLICATE_ACCOUNT) from exc
        self.audit.record(
            AuditAction.CREATE,
            user_id=actor.id,
            username=actor.username,
            entity_id=user.id,
            description=f"user {user.username} created by administrator",
            client=client,
            timestamp=self._now(),
        )
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def update_user(
        self,
        actor: User,
        user_id: str,
        *,
        role: Optional[Role] = None,
        is_active: Optional[bool] = None,
        full_name: Optional[str] = None,
        client: ClientMeta | None = None,
    ) -> User:
        target = self.get_user(user_id)
        if target.role is Role.SUPER_ADMIN:
            self._check_can_grant(actor, target.role)
        fields: dict[str, Any] = {}
        if role is not None and role is not target.role:
            self._check_can_grant(actor, role)
            fields["role"] = role
        if full_name is not None:
            fields["full_name"] = full_name
        deactivating = is_active is False and target.is_active
        if is_active is not None:
            fields["is_active"] = is_active
        if not fields:
            return target
        now = self._now()

        def _apply(tx: AuthStore) -> Optional[User]:
            updated = tx.update_user(user_id, **fields)
            if deactivating:
                tx.revoke_user_sessions(user_id, RevokeReason.ADMIN_REVOKED, now)
            return updated

        updated = self.store.run_in_transaction(_apply)
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info(
            "user_updated_by_admin",
            actor_id=actor.id,
            user_id=user_id,
            fields=sorted(fields),
        )
        self.audit.record(
            AuditAction.UPDATE,
            user_id=actor.id,
            username=actor.username,
            entity_id=user_id,
            description="user deactivated" if deactivating else "user updated",
            client=client,
            timestamp=now,
        )
        return updated

    def delete_user(
        self, actor: User, user_id: str, client: ClientMeta | None = None
    ) -> None:
        if actor.id == user_id:
            raise BadRequestError("cannot delete your own account")
        deleted = self.store.run_in_transaction(lambda tx: tx.delete_user(user_id))
        if not deleted:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_deleted", actor_id=actor.id, user_id=user_id)
        self.audit.record(
            AuditAction.DELETE,
            user_id=actor.id,
            username=actor.username,
            entity_id=user_id,
            description="user deleted",
            client=client,
            timestamp=self._now(),
        )

    def list_audit_entries(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        return self.store.list_audit_entries(user_id=user_id, limit=limit)

    def _update_user(self, user_id: str, fields: dict[str, Any]) -> User:
        try:
            updated = self.store.run_in_transaction(
                lambda tx: tx.update_user(user_id, **fields)
            )
        except ConstraintViolation as exc:
            raise BadRequestError(DUPLICATE_ACCOUNT) from exc
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return updated

    @staticmethod
    def _check_can_grant(actor: User, role: Role) -> None:
        if role is Role.SUPER_ADMIN and actor.role is not Role.SUPER_ADMIN:
            raise ForbiddenError("only a super admin can manage super admin accounts")
