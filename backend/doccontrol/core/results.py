"""Explicit failure variant returned by the auth core instead of raising.

Core operations return either their success value or a ``Rejected``; the HTTP
layer translates the code to a status (see doccontrol.api.errors).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class AuthErrorCode(str, enum.Enum):
    UNAUTHORIZED = "unauthorized"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    CONFIGURATION = "configuration"


@dataclass(frozen=True)
class Rejected:
    code: AuthErrorCode
    # Internal reason for logs; never sent to the client
    reason: str = ""
    headers: dict[str, str] = field(default_factory=dict)


def unauthorized(reason: str = "") -> Rejected:
    return Rejected(AuthErrorCode.UNAUTHORIZED, reason)


def invalid_refresh_token(reason: str = "") -> Rejected:
    return Rejected(AuthErrorCode.INVALID_REFRESH_TOKEN, reason)


def forbidden(reason: str = "") -> Rejected:
    return Rejected(AuthErrorCode.FORBIDDEN, reason)
