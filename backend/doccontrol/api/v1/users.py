"""User endpoints: admin user creation, dev seed."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from doccontrol.api.deps import require_roles
from doccontrol.api.v1.auth import UserOut, user_out
from doccontrol.config import settings
from doccontrol.core.auth import hash_password
from doccontrol.core.gate import AuthenticatedIdentity
from doccontrol.core.rate_limit import client_address, general_limiter
from doccontrol.core.roles import ADMIN_ROLES, Role
from doccontrol.db.session import get_db
from doccontrol.models.user import User
from doccontrol.services import audit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/users", tags=["users"])

DEV_SEED_EMAIL = "admin@doccontrol.local"
DEV_SEED_PASSWORD = "admin12345"


class UserCreateBody(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=128)
    full_name: str | None = None
    role: Role = Role.USER


@router.post(
    "",
    response_model=UserOut,
    status_code=201,
    summary="Create a user (admin)",
    dependencies=[Depends(general_limiter)],
    responses={
        400: {"description": "Email already registered"},
        401: {"description": "Not authenticated"},
        403: {"description": "Admin role required"},
    },
)
async def create_user(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_db)],
    identity: Annotated[AuthenticatedIdentity, Depends(require_roles(*ADMIN_ROLES))],
    body: UserCreateBody,
) -> UserOut:
    email = body.email.strip().lower()
    if body.role == Role.SUPERADMIN and identity.role != Role.SUPERADMIN:
        raise HTTPException(status_code=403, detail="Only a superadmin can create a superadmin")
    r = await session.execute(select(User).where(User.email == email))
    if r.scalar_one_or_none() is not None:
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(
        email=email,
        password_hash=hash_password(body.password),
        full_name=(body.full_name or "").strip() or None,
        role=body.role,
    )
    session.add(user)
    try:
        await session.flush()
    except IntegrityError as e:
        logger.warning("Create user IntegrityError: %s", e)
        raise HTTPException(status_code=400, detail="Email already registered") from e
    await session.refresh(user)
    await audit.log_action(
        session,
        identity.user_id,
        audit.ACTION_USER_CREATED,
        "user",
        user.id,
        details={"role": user.role.value},
        ip_address=client_address(request),
    )
    return user_out(user)


@router.post(
    "/seed",
    summary="Seed default admin (debug only)",
    responses={404: {"description": "Only when debug=True"}},
)
async def seed_default_admin(session: Annotated[AsyncSession, Depends(get_db)]):
    """Create admin@doccontrol.local only when debug=True and it does not exist yet."""
    if not settings.debug:
        raise HTTPException(status_code=404, detail="Not found")
    r = await session.execute(select(User).where(User.email == DEV_SEED_EMAIL))
    if r.scalar_one_or_none() is not None:
        return {"message": "User already exists", "status": "ok"}
    user = User(
        email=DEV_SEED_EMAIL,
        password_hash=hash_password(DEV_SEED_PASSWORD),
        full_name="Administrator",
        role=Role.SUPERADMIN,
    )
    session.add(user)
    await session.flush()
    return {"message": "Default admin created", "email": DEV_SEED_EMAIL, "status": "ok"}
