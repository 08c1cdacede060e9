#!/usr/bin/env python3
"""Seed a SUPER_ADMIN account and sweep expired sessions.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=root ADMIN_EMAIL=root@example.com ADMIN_PASSWORD='Secure-Pass1!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username root --email root@example.com --password 'Secure-Pass1!'

    # Only revoke sessions past their expiry:
    python scripts/bootstrap_admin.py --sweep-only

Environment Variables:
    ADMIN_USERNAME: Username for the super admin
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password (lower, upper, digit and one of @$!%*?&)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(runtime, username: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create a SUPER_ADMIN or promote the existing account with that username.

    Returns:
        dict with user_id, username and status ('created', 'promoted',
        'already_super_admin' or 'dry_run')
    """
    from claimdesk.storage.models import Role

    existing = runtime.store.get_user_by_username(username)
    if existing:
        if existing.role is Role.SUPER_ADMIN:
            return {"user_id": existing.id, "username": username, "status": "already_super_admin"}
        if dry_run:
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        runtime.store.run_in_transaction(
            lambda tx: tx.update_user(existing.id, role=Role.SUPER_ADMIN, is_active=True)
        )
        return {"user_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "username": username, "status": "dry_run"}

    password_hash = runtime.auth.passwords.hash(password)
    user = runtime.store.run_in_transaction(
        lambda tx: tx.create_user(
            username,
            email,
            password_hash,
            full_name="Administrator",
            role=Role.SUPER_ADMIN,
            email_verified=True,
        )
    )
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for claimdesk",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--sweep-only",
        action="store_true",
        help="Skip the admin account and only revoke expired sessions",
    )
    args = parser.parse_args()

    if not args.sweep_only:
        missing = [name for name in ("username", "email", "password") if not getattr(args, name)]
        if missing:
            print(f"Error: missing {', '.join(missing)} (flags or ADMIN_* env vars)")
            sys.exit(1)

        from claimdesk.api.schemas import AdminCreateUserRequest
        from pydantic import ValidationError

        try:
            AdminCreateUserRequest(username=args.username, email=args.email, password=args.password)
        except ValidationError as exc:
            print(f"Error: {exc}")
            sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from claimdesk.service.runtime import Runtime

    runtime = Runtime()
    try:
        if not args.sweep_only:
            result = bootstrap_admin(
                runtime, args.username, args.email.strip().lower(), args.password, args.dry_run
            )
            print(f"{result['status']}: {result['username']} (id: {result['user_id']})")
        if not args.dry_run:
            revoked = runtime.auth.revoke_expired_sessions()
            print(f"Revoked {revoked} expired session(s)")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
