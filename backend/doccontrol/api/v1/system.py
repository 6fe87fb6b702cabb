"""Admin session management."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from doccontrol.api.deps import get_session_coordinator, get_token_store, require_roles
from doccontrol.core.gate import AuthenticatedIdentity
from doccontrol.core.rate_limit import client_address, general_limiter
from doccontrol.core.roles import ADMIN_ROLES
from doccontrol.db.session import get_db
from doccontrol.schemas.pagination import PaginatedResponse
from doccontrol.services import audit
from doccontrol.services.sessions import SessionCoordinator
from doccontrol.services.token_store import RefreshTokenStore

router = APIRouter(
    prefix="/system",
    tags=["system"],
    dependencies=[Depends(general_limiter)],
)

require_admin = require_roles(*ADMIN_ROLES)


class AdminSessionOut(BaseModel):
    id: str
    user_id: int
    device_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime
    last_used_at: datetime | None = None
    expires_at: datetime


class SessionsPage(PaginatedResponse):
    items: list[AdminSessionOut]


class RevokeResponse(BaseModel):
    user_id: int
    revoked_refresh_tokens: int
    revoked_sessions: int


@router.get(
    "/sessions",
    response_model=SessionsPage,
    summary="List active sessions (admin)",
    responses={401: {"description": "Not authenticated"}, 403: {"description": "Admin role required"}},
)
async def list_sessions(
    _: Annotated[AuthenticatedIdentity, Depends(require_admin)],
    store: Annotated[RefreshTokenStore, Depends(get_token_store)],
    user_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> SessionsPage:
    items, total = await store.list_sessions(user_id, limit=limit, offset=offset)
    return SessionsPage(
        items=[
            AdminSessionOut(
                id=s.id,
                user_id=s.user_id,
                device_id=s.device_id,
                ip_address=s.ip_address,
                user_agent=s.user_agent,
                created_at=s.created_at,
                last_used_at=s.last_used_at,
                expires_at=s.expires_at,
            )
            for s in items
        ],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(items) < total,
    )


@router.delete(
    "/sessions/users/{user_id}",
    response_model=RevokeResponse,
    summary="Sign a user out of every device (admin)",
    responses={401: {"description": "Not authenticated"}, 403: {"description": "Admin role required"}},
)
async def revoke_user_sessions(
    user_id: int,
    request: Request,
    identity: Annotated[AuthenticatedIdentity, Depends(require_admin)],
    coordinator: Annotated[SessionCoordinator, Depends(get_session_coordinator)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> RevokeResponse:
    report = await coordinator.logout_all(user_id)
    await audit.log_action(
        session,
        identity.user_id,
        audit.ACTION_SESSIONS_REVOKED,
        "user",
        user_id,
        details={"refresh_tokens": report.refresh_tokens, "sessions": report.sessions},
        ip_address=client_address(request),
    )
    return RevokeResponse(
        user_id=user_id,
        revoked_refresh_tokens=report.refresh_tokens,
        revoked_sessions=report.sessions,
    )
