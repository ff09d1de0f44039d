from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Response

from idgate.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    PasswordChangeRequest,
    PublicKeyResponse,
    RegisterRequest,
    StatusUpdateRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserListResponse,
    UserResponse,
    UserUpdateRequest,
)
from idgate.service.errors import InvalidTokenError
from idgate.service.runtime import get_runtime
from idgate.storage.models import TokenClaims

router = APIRouter(prefix="/v1")


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("missing bearer token")
    return token.strip()


async def get_claims(authorization: Optional[str] = Header(None)) -> TokenClaims:
    """Resolve the caller's live access token into its claims."""
    runtime = get_runtime()
    return await runtime.auth.resolve_access(_bearer_token(authorization))


async def get_user_id(claims: TokenClaims = Depends(get_claims)) -> str:
    return claims.user_id


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair."""
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=UserResponse.from_user(result.user),
            tokens=TokenResponse.from_pair(result.tokens),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate a refresh token. The submitted refresh token is consumed."""
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenResponse.from_pair(pair))


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(claims: TokenClaims = Depends(get_claims)):
    runtime = get_runtime()
    await runtime.auth.logout(claims.token_id)
    return Response(status_code=204)


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(user_id)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=revoked))


@router.get("/auth/public-key", response_model=Envelope, tags=["auth"])
async def public_key():
    """Verification key for services that check tokens locally."""
    signer = get_runtime().signer
    return Envelope(
        status="ok",
        data=PublicKeyResponse(
            key_id=signer.key_id,
            public_key=signer.public_key_bytes().hex(),
            pem=signer.public_key_pem(),
        ),
    )


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = await runtime.user_service.register(
        email=body.email,
        username=body.username,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    _: str = Depends(get_user_id),
):
    runtime = get_runtime()
    settings = runtime.settings
    limit = min(limit or settings.default_page_size, settings.max_page_size)
    users, total = await runtime.user_service.list(page, limit)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[UserResponse.from_user(user) for user in users],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    user = await runtime.user_service.get(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    _: str = Depends(get_user_id),
):
    runtime = get_runtime()
    user = await runtime.user_service.get(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UserUpdateRequest,
    user_id: str = Path(..., max_length=64),
    _: str = Depends(get_user_id),
):
    runtime = get_runtime()
    user = await runtime.user_service.update(
        user_id, first_name=body.first_name, last_name=body.last_name
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", status_code=204, tags=["users"])
async def delete_user(
    user_id: str = Path(..., max_length=64),
    _: str = Depends(get_user_id),
):
    runtime = get_runtime()
    await runtime.user_service.delete(user_id)
    return Response(status_code=204)


@router.put("/users/{user_id}/password", status_code=204, tags=["users"])
async def change_password(
    body: PasswordChangeRequest,
    user_id: str = Path(..., max_length=64),
    _: str = Depends(get_user_id),
):
    runtime = get_runtime()
    await runtime.user_service.change_password(
        user_id, body.old_password, body.new_password
    )
    return Response(status_code=204)


@router.put("/users/{user_id}/status", response_model=Envelope, tags=["users"])
async def update_status(
    body: StatusUpdateRequest,
    user_id: str = Path(..., max_length=64),
    _: str = Depends(get_user_id),
):
    runtime = get_runtime()
    user = await runtime.user_service.update_status(user_id, body.status.value)
    return Envelope(status="ok", data=UserResponse.from_user(user))
