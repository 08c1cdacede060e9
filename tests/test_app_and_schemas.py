import pytest
from pydantic import ValidationError

from claimdesk.api import schemas
from claimdesk.app import __version__


def test_security_headers_and_health(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": __version__}
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Request-ID"]


def test_api_responses_are_not_cached(client):
    response = client.get("/v1/auth/me")
    assert response.headers["Cache-Control"] == "no-store"


def test_runtime_is_closed_on_shutdown(runtime):
    from fastapi.testclient import TestClient

    from claimdesk.app import create_app

    closed = []
    runtime.close = lambda: closed.append(True)
    with TestClient(create_app(runtime=runtime)) as client:
        assert client.get("/healthz").status_code == 200
        assert not closed
    assert closed == [True]


def test_register_request_normalizes_email_and_username():
    req = schemas.RegisterRequest(
        username=" alice\u200b ", email=" Alice@Example.COM ", password="Abcdef1!"
    )
    assert req.username == "alice"
    assert req.email == "alice@example.com"


@pytest.mark.parametrize(
    "email",
    ["invalid", "a@b", "@example.com", "user@-bad.com", "us er@example.com"],
)
def test_register_request_rejects_bad_email(email):
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(username="alice", email=email, password="Abcdef1!")


def test_login_request_length_limits():
    schemas.LoginRequest(username="bob", password="x" * 8)
    with pytest.raises(ValidationError):
        schemas.LoginRequest(username="bo", password="x" * 8)
    with pytest.raises(ValidationError):
        schemas.LoginRequest(username="bob", password="x" * 101)


def test_refresh_token_length_capped():
    with pytest.raises(ValidationError):
        schemas.TokenRefreshRequest(refresh_token="x" * 2049)


def test_change_password_rejects_reuse():
    with pytest.raises(ValidationError):
        schemas.ChangePasswordRequest(old_password="Abcdef1!", new_password="Abcdef1!")


def test_admin_create_defaults_to_user_role():
    req = schemas.AdminCreateUserRequest(
        username="carol", email="carol@example.com", password="Abcdef1!"
    )
    assert req.role is schemas.Role.USER
    assert req.is_active is True
