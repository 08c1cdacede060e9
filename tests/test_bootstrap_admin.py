from scripts.bootstrap_admin import bootstrap_admin

from claimdesk.storage.models import Role


def test_creates_then_reports_existing_super_admin(runtime):
    result = bootstrap_admin(runtime, "rootadmin", "root@example.com", "Secure-Pass1!")
    assert result["status"] == "created"
    user = runtime.store.get_user(result["user_id"])
    assert user.role is Role.SUPER_ADMIN
    assert runtime.auth.login("rootadmin", "Secure-Pass1!")["user"]["role"] == "SUPER_ADMIN"

    again = bootstrap_admin(runtime, "rootadmin", "root@example.com", "Secure-Pass1!")
    assert again == {"user_id": user.id, "username": "rootadmin", "status": "already_super_admin"}


def test_promotes_existing_account(runtime):
    registered = runtime.auth.register("plainuser", "plain@example.com", "Secure-Pass1!")
    result = bootstrap_admin(runtime, "plainuser", "plain@example.com", "ignored")
    assert result["status"] == "promoted"
    assert runtime.store.get_user(registered["user"]["id"]).role is Role.SUPER_ADMIN


def test_dry_run_changes_nothing(runtime):
    result = bootstrap_admin(runtime, "rootadmin", "root@example.com", "Secure-Pass1!", dry_run=True)
    assert result["status"] == "dry_run"
    assert runtime.store.get_user_by_username("rootadmin") is None
