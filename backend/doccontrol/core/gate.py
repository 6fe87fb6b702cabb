"""Transport-agnostic auth gate: access token -> identity, identity + allowed roles -> decision."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from doccontrol.core.auth import verify_access_token
from doccontrol.core.results import Rejected, forbidden, unauthorized
from doccontrol.core.roles import Role


@dataclass(frozen=True)
class AuthenticatedIdentity:
    user_id: int
    role: Role
    session_id: str | None = None
    token_id: str | None = None


def authenticate(token: str | None) -> AuthenticatedIdentity | Rejected:
    """Every failure (missing, malformed, tampered, expired) is the same UNAUTHORIZED."""
    if not token:
        return unauthorized("no token provided")
    claims = verify_access_token(token)
    if isinstance(claims, Rejected):
        return claims
    return AuthenticatedIdentity(
        user_id=claims.user_id,
        role=claims.role,
        session_id=claims.session_id,
        token_id=claims.token_id,
    )


def authorize(
    identity: AuthenticatedIdentity | Rejected,
    allowed_roles: Iterable[Role],
) -> AuthenticatedIdentity | Rejected:
    if isinstance(identity, Rejected):
        return identity
    allowed = frozenset(allowed_roles)
    if identity.role not in allowed:
        return forbidden(f"role {identity.role.value} not in {sorted(r.value for r in allowed)}")
    return identity
