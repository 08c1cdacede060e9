from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from claimdesk.api.schemas import (
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    AuditEntryResponse,
    AuditListResponse,
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    UserListResponse,
    UserResponse,
)
from claimdesk.service.guards import ADMIN_ROLES, SUPER_ADMIN_ONLY, require_roles
from claimdesk.service.runtime import Runtime
from claimdesk.storage.models import ClientMeta, Role, User

router = APIRouter(prefix="/v1")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_client_meta(
    request: Request, user_agent: Optional[str] = Header(None)
) -> ClientMeta:
    return ClientMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )


async def get_current_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> User:
    """Bearer-token gate; rejects unknown, expired and deactivated identities."""
    return runtime.auth.authenticate(authorization)


def require_roles_dependency(*roles: Role):
    """Build a dependency admitting only users whose role is in ``roles``."""
    allowed = frozenset(roles)

    async def _check(user: User = Depends(get_current_user)) -> User:
        return require_roles(user, allowed)

    return _check


get_admin_user = require_roles_dependency(*ADMIN_ROLES)
get_super_admin_user = require_roles_dependency(*SUPER_ADMIN_ONLY)


# auth
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    runtime: Runtime = Depends(get_runtime),
    client: ClientMeta = Depends(get_client_meta),
):
    """Authenticate with username and password.

    Raises:
        401: Wrong password, locked account or deactivated account
        404: Unknown username
    """
    result = runtime.auth.login(body.username, body.password, client)
    return Envelope(status="ok", data=AuthResponse(**result))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    runtime: Runtime = Depends(get_runtime),
    client: ClientMeta = Depends(get_client_meta),
):
    """Create a USER account and sign it in.

    Raises:
        400: Username or email already taken
    """
    result = runtime.auth.register(
        body.username, body.email, body.password, body.full_name, client
    )
    return Envelope(status="ok", data=AuthResponse(**result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
    client: ClientMeta = Depends(get_client_meta),
):
    runtime.auth.logout(
        user.id, body.refresh_token, client, username=user.username
    )
    return Envelope(status="ok", data=MessageResponse(message="logout successful"))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)
):
    """Rotate a refresh token into a new access/refresh pair.

    Raises:
        401: Token unknown, revoked, expired or already rotated
    """
    tokens = runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenPairResponse(**tokens))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def auth_me(
    user: User = Depends(get_current_user), runtime: Runtime = Depends(get_runtime)
):
    return Envelope(
        status="ok", data=UserResponse.from_user(runtime.auth.get_current_user(user))
    )


# self-service
@router.get("/users/me", response_model=Envelope, tags=["users"])
async def read_profile(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
    client: ClientMeta = Depends(get_client_meta),
):
    updated = runtime.auth.update_profile(
        user, full_name=body.full_name, email=body.email, client=client
    )
    return Envelope(status="ok", data=UserResponse.from_user(updated))


@router.post("/users/change-password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
    client: ClientMeta = Depends(get_client_meta),
):
    """Replace the caller's password and sign out every session.

    Raises:
        400: Current password is wrong
    """
    runtime.auth.change_password(user, body.old_password, body.new_password, client)
    return Envelope(status="ok", data=MessageResponse(message="password changed"))


# administration
@router.post("/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest,
    admin: User = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
    client: ClientMeta = Depends(get_client_meta),
):
    user = runtime.auth.create_user(
        admin,
        username=body.username,
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        role=body.role,
        is_active=body.is_active,
        client=client,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    users = runtime.auth.list_users(limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]),
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str,
    admin: User = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=UserResponse.from_user(runtime.auth.get_user(user_id)))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    user_id: str,
    body: AdminUpdateUserRequest,
    admin: User = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
    client: ClientMeta = Depends(get_client_meta),
):
    """Change role, active flag or name; deactivation revokes all sessions.

    Raises:
        403: Non-super-admin touching a SUPER_ADMIN account or role
        404: Unknown user
    """
    user = runtime.auth.update_user(
        admin,
        user_id,
        role=body.role,
        is_active=body.is_active,
        full_name=body.full_name,
        client=client,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str,
    admin: User = Depends(get_super_admin_user),
    runtime: Runtime = Depends(get_runtime),
    client: ClientMeta = Depends(get_client_meta),
):
    runtime.auth.delete_user(admin, user_id, client)
    return Envelope(status="ok", data=MessageResponse(message="user deleted"))


@router.get("/audit-logs", response_model=Envelope, tags=["admin"])
async def admin_list_audit_logs(
    user_id: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    admin: User = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    entries = runtime.auth.list_audit_entries(user_id=user_id, limit=limit)
    return Envelope(
        status="ok",
        data=AuditListResponse(items=[AuditEntryResponse.from_entry(e) for e in entries]),
    )
