from __future__ import annotations

from typing import Iterable, Optional, Protocol

from claimdesk.logging import get_logger
from claimdesk.service.errors import AuthenticationError, ForbiddenError
from claimdesk.service.tokens import ACCESS, InvalidToken, TokenIssuer
from claimdesk.storage.models import Role, User

logger = get_logger(__name__)

ADMIN_ROLES = frozenset({Role.SUPER_ADMIN, Role.ADMIN})
SUPER_ADMIN_ONLY = frozenset({Role.SUPER_ADMIN})


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def role_allows(user: User, allowed_roles: Iterable[Role]) -> bool:
    """True when the user's role is a member of ``allowed_roles``."""
    return user.role in set(allowed_roles)


def require_roles(user: User, allowed_roles: Iterable[Role]) -> User:
    allowed = frozenset(allowed_roles)
    if not role_allows(user, allowed):
        logger.warning(
            "role_check_denied",
            user_id=user.id,
            role=user.role.value,
            allowed=sorted(r.value for r in allowed),
        )
        raise ForbiddenError("insufficient permissions")
    return user


class TokenGate:
    """Admits a request only for a valid access token of a still-active user."""

    def __init__(self, issuer: TokenIssuer, store: UserLookup) -> None:
        self.issuer = issuer
        self.store = store

    def authenticate(self, authorization: Optional[str]) -> User:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        try:
            claims = self.issuer.verify(token, expected_type=ACCESS)
        except InvalidToken:
            raise AuthenticationError("invalid or expired token") from None
        # re-read so deactivation takes effect before the token expires
        user = self.store.get_user(str(claims["sub"]))
        if not user:
            raise AuthenticationError("user not found")
        if not user.is_active:
            raise AuthenticationError("account is deactivated")
        return user
