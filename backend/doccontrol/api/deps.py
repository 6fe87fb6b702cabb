"""FastAPI dependencies: auth gate (header/cookie adapters), role enforcement, core services."""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from doccontrol.api.errors import http_exception_for
from doccontrol.config import settings
from doccontrol.core.gate import AuthenticatedIdentity, authenticate, authorize
from doccontrol.core.results import Rejected
from doccontrol.core.roles import Role
from doccontrol.db.session import get_db
from doccontrol.models.user import User
from doccontrol.services.sessions import SessionCoordinator
from doccontrol.services.token_store import RefreshTokenStore

logger = logging.getLogger(__name__)

auth_rejected_total = Counter(
    "doccontrol_auth_rejected_total",
    "Requests rejected by the auth gate",
    ["code"],
)


def bearer_token_from_header(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def token_from_cookie(request: Request) -> str | None:
    return (request.cookies.get(settings.auth_cookie_name) or "").strip() or None


def extract_access_token(request: Request) -> str | None:
    """Authorization header first, then the auth cookie set for browser flows."""
    return bearer_token_from_header(request) or token_from_cookie(request)


def _reject(rejected: Rejected, request: Request) -> HTTPException:
    auth_rejected_total.labels(code=rejected.code.value).inc()
    logger.info("Auth rejected on %s %s: %s", request.method, request.url.path, rejected.reason)
    return http_exception_for(rejected)


async def get_identity(request: Request) -> AuthenticatedIdentity:
    result = authenticate(extract_access_token(request))
    if isinstance(result, Rejected):
        raise _reject(result, request)
    request.state.identity = result
    return result


async def get_current_user(
    identity: Annotated[AuthenticatedIdentity, Depends(get_identity)],
    session: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    r = await session.execute(select(User).where(User.id == identity.user_id))
    user = r.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_roles(*roles: Role):
    """Dependency factory: 403 unless the caller's role is one of `roles`."""
    allowed = frozenset(roles)
    if not allowed:
        raise ValueError("require_roles needs at least one role")

    async def _require(
        request: Request,
        identity: Annotated[AuthenticatedIdentity, Depends(get_identity)],
    ) -> AuthenticatedIdentity:
        result = authorize(identity, allowed)
        if isinstance(result, Rejected):
            raise _reject(result, request)
        return result

    return _require


def get_token_store(request: Request) -> RefreshTokenStore:
    return request.app.state.token_store


def get_session_coordinator(
    store: Annotated[RefreshTokenStore, Depends(get_token_store)],
) -> SessionCoordinator:
    return SessionCoordinator(store)
