from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from claimdesk.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """Salted argon2id hashing with constant-time verification."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
