"""Auth: login, refresh, logout, me, sessions, password change."""

import logging
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from doccontrol.api.deps import (
    auth_rejected_total,
    get_current_user,
    get_identity,
    get_session_coordinator,
    get_token_store,
)
from doccontrol.api.errors import http_exception_for
from doccontrol.config import settings
from doccontrol.core import clock
from doccontrol.core.auth import create_access_token, hash_password, verify_password
from doccontrol.core.gate import AuthenticatedIdentity
from doccontrol.core.rate_limit import client_address, general_limiter, refresh_limiter, sensitive_limiter
from doccontrol.core.results import Rejected
from doccontrol.core.roles import Role
from doccontrol.db.session import get_db
from doccontrol.models.user import User
from doccontrol.services import audit
from doccontrol.services.sessions import SessionCoordinator
from doccontrol.services.token_store import RefreshTokenStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class LoginBody(BaseModel):
    email: str
    password: str
    device_id: str | None = None
    # Also set the access token as an httpOnly cookie (browser flows)
    use_cookie: bool = False


class UserOut(BaseModel):
    id: int
    email: str
    full_name: str | None = None
    role: Role
    is_active: bool


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until access token expires


class TokenResponse(TokenPair):
    user: UserOut


class RefreshBody(BaseModel):
    refresh_token: str = Field(min_length=1)
    device_id: str | None = None


class LogoutBody(BaseModel):
    logout_all: bool = False
    refresh_token: str | None = None


class MessageResponse(BaseModel):
    message: str


class SessionOut(BaseModel):
    id: str
    device_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime
    last_used_at: datetime | None = None
    expires_at: datetime
    current: bool = False


class PasswordChangeBody(BaseModel):
    current_password: str
    new_password: str = Field(min_length=8, max_length=128)


def user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        is_active=user.is_active,
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login with email and password",
    dependencies=[Depends(general_limiter)],
    responses={
        401: {"description": "Invalid email or password"},
        429: {"description": "Too many requests"},
    },
)
async def login(
    request: Request,
    response: Response,
    session: Annotated[AsyncSession, Depends(get_db)],
    store: Annotated[RefreshTokenStore, Depends(get_token_store)],
    body: LoginBody,
) -> TokenResponse:
    email = (body.email or "").strip().lower()
    password = body.password or ""
    ip = client_address(request)
    if not email or not password:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    r = await session.execute(select(User).where(User.email == email))
    user = r.scalar_one_or_none()
    if not user or not user.password_hash or not verify_password(password, user.password_hash):
        logger.warning("Failed login for %s from %s", email, ip)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.is_active:
        logger.warning("Login attempt for inactive account %s from %s", email, ip)
        raise HTTPException(status_code=401, detail="Invalid email or password")

    # Store writes commit in their own transaction; do them before touching this session
    issued = await store.create(
        user.id,
        body.device_id or request.headers.get("x-device-id"),
        ip_address=ip,
        user_agent=request.headers.get("user-agent"),
    )
    access_token = create_access_token(user.id, user.role, session_id=issued.session_id)
    user.last_login_at = clock.utcnow()
    await audit.log_action(session, user.id, audit.ACTION_LOGIN, "session", issued.session_id, ip_address=ip)

    if body.use_cookie:
        response.set_cookie(
            settings.auth_cookie_name,
            access_token,
            max_age=settings.access_token_expire_seconds,
            httponly=True,
            secure=settings.app_env == "production",
            samesite="lax",
        )
    return TokenResponse(
        access_token=access_token,
        refresh_token=issued.value,
        expires_in=settings.access_token_expire_seconds,
        user=user_out(user),
    )


@router.post(
    "/refresh",
    response_model=TokenPair,
    summary="Exchange refresh token for new access and refresh tokens",
    dependencies=[Depends(refresh_limiter)],
    responses={
        401: {"description": "Refresh token invalid, expired or already used"},
        429: {"description": "Too many requests"},
    },
)
async def refresh_tokens(
    request: Request,
    store: Annotated[RefreshTokenStore, Depends(get_token_store)],
    body: RefreshBody,
) -> TokenPair:
    """Exchange refresh_token for new access_token and refresh_token (rotation)."""
    device_id = body.device_id or request.headers.get("x-device-id")
    result = await store.rotate(body.refresh_token, device_id)
    if isinstance(result, Rejected):
        auth_rejected_total.labels(code=result.code.value).inc()
        raise http_exception_for(result)
    access_token = create_access_token(result.user_id, result.role, session_id=result.session_id)
    return TokenPair(
        access_token=access_token,
        refresh_token=result.value,
        expires_in=settings.access_token_expire_seconds,
    )


@router.post(
    "/logout",
    response_model=MessageResponse,
    summary="Logout current device or all devices",
    dependencies=[Depends(general_limiter)],
    responses={401: {"description": "No or invalid access token"}},
)
async def logout(
    request: Request,
    response: Response,
    identity: Annotated[AuthenticatedIdentity, Depends(get_identity)],
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    session: Annotated[AsyncSession, Depends(get_db)],
    body: LogoutBody | None = None,
) -> MessageResponse:
    body = body or LogoutBody()
    if body.logout_all:
        report = await coordinator.logout_all(identity.user_id)
        action, message = audit.ACTION_LOGOUT_ALL, "Logged out from all devices"
    else:
        report = await coordinator.logout_current(identity.user_id, identity.session_id, body.refresh_token)
        action, message = audit.ACTION_LOGOUT, "Logged out successfully"
    await audit.log_action(
        session,
        identity.user_id,
        action,
        "session",
        identity.session_id,
        details={"refresh_tokens": report.refresh_tokens, "sessions": report.sessions},
        ip_address=client_address(request),
    )
    response.delete_cookie(settings.auth_cookie_name)
    return MessageResponse(message=message)


@router.get(
    "/me",
    response_model=UserOut,
    summary="Get current authenticated user",
    dependencies=[Depends(general_limiter)],
    responses={401: {"description": "Not authenticated or invalid token"}},
)
async def me(user: Annotated[User, Depends(get_current_user)]) -> UserOut:
    return user_out(user)


@router.get(
    "/sessions",
    response_model=list[SessionOut],
    summary="List the caller's active sessions",
    dependencies=[Depends(general_limiter)],
)
async def my_sessions(
    identity: Annotated[AuthenticatedIdentity, Depends(get_identity)],
    store: Annotated[RefreshTokenStore, Depends(get_token_store)],
) -> list[SessionOut]:
    items, _ = await store.list_sessions(identity.user_id, limit=200)
    return [
        SessionOut(
            id=s.id,
            device_id=s.device_id,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            created_at=s.created_at,
            last_used_at=s.last_used_at,
            expires_at=s.expires_at,
            current=s.id == identity.session_id,
        )
        for s in items
    ]


@router.post(
    "/password",
    response_model=MessageResponse,
    summary="Change password and sign out every device",
    dependencies=[Depends(sensitive_limiter)],
    responses={
        400: {"description": "Current password is incorrect"},
        401: {"description": "Not authenticated"},
        429: {"description": "Too many requests"},
    },
)
async def change_password(
    request: Request,
    user: Annotated[User, Depends(get_current_user)],
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    session: Annotated[AsyncSession, Depends(get_db)],
    body: PasswordChangeBody,
) -> MessageResponse:
    if not user.password_hash or not verify_password(body.current_password, user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    report = await coordinator.logout_all(user.id)
    user.password_hash = hash_password(body.new_password)
    await audit.log_action(
        session,
        user.id,
        audit.ACTION_PASSWORD_CHANGED,
        "user",
        user.id,
        details={"refresh_tokens": report.refresh_tokens, "sessions": report.sessions},
        ip_address=client_address(request),
    )
    return MessageResponse(message="Password changed. Please sign in again.")
