from __future__ import annotations

import asyncio
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from catalogauth.api.schemas import (
    AdminCreateUserRequest,
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyResponse,
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserListResponse,
    UserResponse,
    UserUpdateRequest,
)
from catalogauth.service.auth import AuthResult
from catalogauth.service.errors import AuthenticationError
from catalogauth.service.guard import Identity
from catalogauth.service.runtime import get_runtime
from catalogauth.storage.models import Role, UserStatus

router = APIRouter(prefix="/auth", tags=["auth"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


# -- guard dependencies -----------------------------------------------------


def require_role(min_role: Role):
    """Dependency factory: bearer token or X-API-Key with at least ``min_role``."""

    async def dependency(
        authorization: Optional[str] = Header(None),
        x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    ) -> Identity:
        # API key lookups hit the store; resolve off the event loop
        return await asyncio.to_thread(
            get_runtime().guard.require_role,
            min_role,
            authorization=authorization,
            api_key=x_api_key,
        )

    return dependency


get_identity = require_role(Role.VIEWER)
_admin_role = require_role(Role.ADMIN)


async def get_admin(identity: Identity = Depends(_admin_role)) -> Identity:
    # API keys only reach admin routes when they carry the admin scope
    return get_runtime().guard.require_scope(identity, "admin")


async def get_session_identity(identity: Identity = Depends(get_identity)) -> Identity:
    """Session management needs an access token; API keys are rejected."""
    if identity.method != "bearer":
        raise AuthenticationError("access token required")
    return identity


async def optional_identity(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[Identity]:
    return await asyncio.to_thread(
        get_runtime().guard.optional_authenticate, authorization, x_api_key
    )


def require_owner_or_admin(extractor: Callable[[Request], Optional[str]]):
    """Dependency factory: caller must own the resource ``extractor`` names, or be admin."""

    async def dependency(
        request: Request, identity: Identity = Depends(get_identity)
    ) -> Identity:
        return get_runtime().guard.require_owner_or_admin(identity, extractor(request))

    return dependency


def _user_id_from_path(request: Request) -> Optional[str]:
    return request.path_params.get("user_id")


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        tokens=TokenResponse(**result.tokens.as_response()),
    )


# -- sessions ---------------------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    body: RegisterRequest, actor: Optional[Identity] = Depends(optional_identity)
):
    """Create an account and start a session.

    Raises:
        400: invalid input or weak password (all violated rules listed)
        403: signup disabled, or an elevated role requested without admin rights
        409: username or email already taken
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup and not (actor and actor.is_admin):
        raise _http_error("forbidden", "signup disabled", status_code=403)
    result = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        full_name=body.full_name,
        role=body.role,
        actor=actor,
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest):
    result = await get_runtime().auth.login(body.username, body.password)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: RefreshRequest):
    """Rotate a refresh token. The presented token is unusable afterwards."""
    result = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/logout", response_model=Envelope)
async def logout(body: LogoutRequest, identity: Identity = Depends(get_session_identity)):
    await get_runtime().auth.logout(body.refresh_token, user_id=identity.user_id)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/me", response_model=Envelope)
async def me(identity: Identity = Depends(get_identity)):
    user = await get_runtime().auth.get_user(identity.user_id)
    data = UserResponse.from_user(user).model_dump(mode="json")
    data["auth_method"] = identity.method
    if identity.scopes is not None:
        data["scopes"] = sorted(identity.scopes)
    return Envelope(status="ok", data=data)


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest, identity: Identity = Depends(get_session_identity)
):
    """Change the caller's password and sign out every device."""
    revoked = await get_runtime().auth.change_password(
        identity.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"password_changed": True, "revoked_sessions": revoked})


# -- API keys ---------------------------------------------------------------


@router.get("/api-keys", response_model=Envelope)
async def list_api_keys(identity: Identity = Depends(get_session_identity)):
    keys = await asyncio.to_thread(get_runtime().api_keys.list_for_user, identity.user_id)
    items = [ApiKeyResponse.from_key(key) for key in keys]
    return Envelope(status="ok", data={"items": items, "count": len(items)})


@router.post("/api-keys", response_model=Envelope, status_code=201)
async def create_api_key(
    body: ApiKeyCreateRequest, identity: Identity = Depends(get_session_identity)
):
    """Issue an API key. The raw key is in this response only."""
    created = await asyncio.to_thread(
        get_runtime().api_keys.create,
        identity.user_id,
        body.name,
        body.scopes,
        description=body.description,
        expires_at=body.expires_at,
    )
    payload = ApiKeyCreatedResponse(
        **ApiKeyResponse.from_key(created.record).model_dump(), api_key=created.raw_key
    )
    return Envelope(status="ok", data=payload)


@router.delete("/api-keys/{key_id}", response_model=Envelope)
async def revoke_api_key(key_id: str, identity: Identity = Depends(get_identity)):
    record = await asyncio.to_thread(get_runtime().api_keys.revoke, key_id, identity)
    return Envelope(status="ok", data={"id": record.id, "revoked": True})


# -- user administration ----------------------------------------------------


@router.post("/users", response_model=Envelope, status_code=201)
async def admin_create_user(
    body: AdminCreateUserRequest, admin: Identity = Depends(get_admin)
):
    user = await get_runtime().auth.admin_create_user(
        admin,
        body.username,
        body.email,
        body.password,
        full_name=body.full_name,
        role=body.role,
        status=body.status,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users", response_model=Envelope)
async def list_users(
    limit: int = Query(100),
    offset: int = Query(0),
    role: Optional[Role] = Query(None),
    status: Optional[UserStatus] = Query(None),
    admin: Identity = Depends(get_admin),
):
    users = await get_runtime().auth.list_users(
        limit=limit, offset=offset, role=role, status=status
    )
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[UserResponse.from_user(u) for u in users],
            count=len(users),
            limit=limit,
            offset=offset,
        ),
    )


@router.get("/users/{user_id}", response_model=Envelope)
async def get_user(
    user_id: str, identity: Identity = Depends(require_owner_or_admin(_user_id_from_path))
):
    user = await get_runtime().auth.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/{user_id}", response_model=Envelope)
async def update_user(
    user_id: str, body: UserUpdateRequest, admin: Identity = Depends(get_admin)
):
    """Update profile, role or status. Role and status changes end the user's sessions."""
    user = await get_runtime().auth.update_user(
        user_id,
        actor=admin,
        email=body.email,
        full_name=body.full_name,
        role=body.role,
        status=body.status,
        meta=body.meta,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope)
async def delete_user(user_id: str, admin: Identity = Depends(get_admin)):
    await get_runtime().auth.delete_user(user_id, actor=admin)
    return Envelope(status="ok", data={"id": user_id, "deleted": True})
