"""Tests for the lockout policy."""

from datetime import datetime, timedelta, timezone

import pytest

from claimdesk.service.lockout import LockoutPolicy
from claimdesk.storage.models import User

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _user(**fields) -> User:
    return User(id="u1", username="alice", email="alice@x.com", password_hash="h", **fields)


def test_defaults_match_documented_policy():
    policy = LockoutPolicy()
    assert policy.threshold == 5
    assert policy.lock_duration() == timedelta(minutes=30)


@pytest.mark.parametrize("attempts,expected", [(0, False), (4, False), (5, True), (9, True)])
def test_should_lock_at_threshold(attempts, expected):
    assert LockoutPolicy().should_lock(attempts) is expected


def test_locked_until_only_once_threshold_reached():
    policy = LockoutPolicy(threshold=3, duration=timedelta(minutes=10))
    assert policy.locked_until(2, NOW) is None
    assert policy.locked_until(3, NOW) == NOW + timedelta(minutes=10)


def test_is_locked_compares_against_now():
    locked = _user(locked_until=NOW + timedelta(minutes=1))
    assert LockoutPolicy.is_locked(locked, NOW)
    assert not LockoutPolicy.is_locked(locked, NOW + timedelta(minutes=1))
    assert not LockoutPolicy.is_locked(_user(), NOW)


def test_threshold_must_be_positive():
    with pytest.raises(ValueError):
        LockoutPolicy(threshold=0)
