from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from claimdesk.storage.models import User


class LockoutPolicy:
    """Decides when repeated login failures suspend an account.

    The policy holds no state; the counter and unlock time live on the user
    record so every service instance sees the same lock.
    """

    def __init__(self, threshold: int = 5, duration: timedelta = timedelta(minutes=30)):
        if threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        self.threshold = threshold
        self.duration = duration

    def should_lock(self, failed_attempts: int) -> bool:
        return failed_attempts >= self.threshold

    def lock_duration(self) -> timedelta:
        return self.duration

    def locked_until(self, failed_attempts: int, now: datetime) -> Optional[datetime]:
        """Unlock time to store after a failure, or None if the account stays open."""
        if not self.should_lock(failed_attempts):
            return None
        return now + self.duration

    @staticmethod
    def is_locked(user: User, now: datetime) -> bool:
        return user.locked_until is not None and user.locked_until > now
