"""Security audit trail: sign-ins, sign-outs, password and account changes."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from doccontrol.core import clock
from doccontrol.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

ACTION_LOGIN = "login"
ACTION_LOGOUT = "logout"
ACTION_LOGOUT_ALL = "logout_all"
ACTION_PASSWORD_CHANGED = "password_changed"
ACTION_USER_CREATED = "user_created"
ACTION_SESSIONS_REVOKED = "sessions_revoked"


async def log_action(
    session: AsyncSession,
    user_id: int | None,
    action: str,
    resource: str,
    resource_id: str | int | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
) -> AuditLog:
    """Add an audit row to the caller's session; it commits with the request."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details,
        ip_address=ip_address,
        created_at=clock.utcnow(),
    )
    session.add(entry)
    await session.flush()
    logger.debug("Audit %s by user %s on %s/%s", action, user_id, resource, entry.resource_id)
    return entry
