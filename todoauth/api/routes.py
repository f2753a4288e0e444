from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from todoauth.api.schemas import (
    AuthResponse,
    CreateUserRequest,
    Envelope,
    LoginRequest,
    LogoutResponse,
    TokenInfoResponse,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
)
from todoauth.logging import get_logger
from todoauth.service.errors import ValidationError
from todoauth.service.runtime import get_runtime
from todoauth.storage.common import parse_user_id
from todoauth.storage.errors import InvalidIdentifier
from todoauth.storage.models import (
    CreateUserParams,
    LoginParams,
    PageParams,
    Role,
    TokenInfo,
    UpdateUserParams,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


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


async def get_principal(authorization: Optional[str] = Header(None)) -> TokenInfo:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_principal(
    principal: TokenInfo = Depends(get_principal),
) -> TokenInfo:
    if principal.role != Role.ADMIN:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _path_user_id(user_id: str) -> uuid.UUID:
    try:
        return parse_user_id(user_id)
    except InvalidIdentifier as exc:
        raise ValidationError(str(exc), detail={"field": "id"}) from exc


def _require_self_or_admin(principal: TokenInfo, user_id: uuid.UUID) -> None:
    # Role passthrough from the validated token; no further lookup
    if principal.role != Role.ADMIN and principal.user_id != user_id:
        raise _http_error(
            "forbidden", "cannot access another user", status_code=403
        )


# auth
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    token, user = await runtime.auth.login_or_register(
        LoginParams(
            external_id=body.external_id,
            provider=body.provider,
            email=body.email,
            name=body.name,
        )
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=token,
            expires_in=int(runtime.tokens.duration.total_seconds()),
            user=UserResponse.from_user(user),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    token = runtime.auth.extract_bearer(authorization)
    await runtime.auth.logout(token)
    return Envelope(status="ok", data=LogoutResponse())


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def whoami(principal: TokenInfo = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=TokenInfoResponse(
            user_id=str(principal.user_id), role=principal.role.value
        ),
    )


# users
@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: CreateUserRequest, principal: TokenInfo = Depends(get_admin_principal)
):
    runtime = get_runtime()
    user = await runtime.users.create_user(
        CreateUserParams(name=body.name, email=body.email, role=Role(body.role))
    )
    logger.info(
        "admin_created_user", admin_id=str(principal.user_id), user_id=str(user.id)
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: Optional[int] = Query(None, description="Maximum users to return"),
    offset: int = Query(0, description="Users to skip"),
    principal: TokenInfo = Depends(get_admin_principal),
):
    runtime = get_runtime()
    resolved_limit = runtime.settings.default_page_limit if limit is None else limit
    params = PageParams(limit=resolved_limit, offset=offset)
    users = await runtime.users.list_users(params)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[UserResponse.from_user(u) for u in users],
            limit=params.limit,
            offset=params.offset,
        ),
    )


@router.get("/users/email", response_model=Envelope, tags=["users"])
async def get_user_by_email(
    email: str = Query(..., description="Exact email address"),
    principal: TokenInfo = Depends(get_admin_principal),
):
    runtime = get_runtime()
    user = await runtime.users.get_user_by_email(email)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str, principal: TokenInfo = Depends(get_principal)):
    target = _path_user_id(user_id)
    _require_self_or_admin(principal, target)
    runtime = get_runtime()
    user = await runtime.users.get_user(target)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    user_id: str,
    body: UpdateUserRequest,
    principal: TokenInfo = Depends(get_principal),
):
    target = _path_user_id(user_id)
    _require_self_or_admin(principal, target)
    if body.role is not None and principal.role != Role.ADMIN:
        raise _http_error("forbidden", "only admins can change roles", status_code=403)
    runtime = get_runtime()
    user = await runtime.users.update_user(
        UpdateUserParams(
            id=target,
            name=body.name,
            email=body.email,
            role=Role(body.role) if body.role is not None else None,
        )
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: str, principal: TokenInfo = Depends(get_principal)):
    target = _path_user_id(user_id)
    _require_self_or_admin(principal, target)
    runtime = get_runtime()
    await runtime.users.delete_user(target)
    return Envelope(status="ok", data={"deleted": True, "user_id": str(target)})
