from claimdesk.logging import (
    _add_correlation_id,
    _redact_credentials,
    correlation_id_var,
    set_correlation_id,
)


def test_tokens_and_passwords_are_masked():
    event = _redact_credentials(
        None,
        "info",
        {
            "event": "refresh_rejected",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "password": "Abcdef1!",
            "user_id": "5b1f",
        },
    )
    assert event["refresh_token"] == "ey***ig"
    assert event["password"] == "Ab***1!"
    assert event["user_id"] == "5b1f"
    assert event["event"] == "refresh_rejected"


def test_short_secrets_are_fully_hidden():
    event = _redact_credentials(None, "info", {"access_token": "abc"})
    assert event["access_token"] == "***"


def test_nested_detail_is_masked_one_level_down():
    event = _redact_credentials(
        None,
        "warning",
        {"detail": {"field": "refresh_token", "refresh_token": "abcdefgh"}},
    )
    assert event["detail"] == {"field": "refresh_token", "refresh_token": "ab***gh"}


def test_usernames_and_counts_pass_through():
    event = {"username": "alice", "sessions_revoked": 2, "locked_until": "2026-03-02"}
    assert _redact_credentials(None, "info", dict(event)) == event


def test_correlation_id_is_attached():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {})
        cid = set_correlation_id("req-123")
        assert cid == "req-123"
        assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-123"
    finally:
        correlation_id_var.reset(token)
