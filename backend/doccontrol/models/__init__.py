from doccontrol.models.user import User
from doccontrol.models.user_session import UserSession
from doccontrol.models.refresh_token import RefreshToken
from doccontrol.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserSession",
    "RefreshToken",
    "AuditLog",
]
