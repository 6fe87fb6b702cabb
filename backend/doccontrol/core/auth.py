"""Password hashing, access-token signing/verification and refresh-token primitives."""

from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError

from doccontrol.config import settings
from doccontrol.core import clock
from doccontrol.core.results import Rejected, unauthorized
from doccontrol.core.roles import Role

REQUIRED_CLAIMS = ("sub", "role", "iat", "exp", "jti")


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    role: Role
    issued_at: datetime
    expires_at: datetime
    token_id: str
    session_id: str | None = None


def _refresh_token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_password(password: str) -> str:
    """Hash password with bcrypt. Bytes truncated to 72 (bcrypt limit)."""
    pwd_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(pwd_bytes, bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify password with bcrypt. Plain password truncated to 72 bytes."""
    plain_bytes = plain_password.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(plain_bytes, password_hash.encode("utf-8"))
    except ValueError:
        # Stored hash is not a bcrypt hash
        return False


def _get_jwt_signing_key_and_algorithm() -> tuple[str, str]:
    """Return (key, algorithm) for signing access tokens."""
    if settings.use_rs256:
        return settings.jwt_private_key.strip(), "RS256"
    return settings.secret_key, settings.jwt_algorithm


def _get_jwt_verification_key_and_algorithms() -> tuple[str, list[str]]:
    """Return (key, algorithms) for verifying access tokens."""
    if settings.use_rs256:
        return settings.jwt_public_key.strip(), ["RS256"]
    return settings.secret_key, [settings.jwt_algorithm]


def create_access_token(
    user_id: int,
    role: Role | str,
    *,
    session_id: str | None = None,
    now: datetime | None = None,
) -> str:
    issued_at = now or clock.utcnow()
    expire = issued_at + timedelta(minutes=settings.access_token_expire_minutes)
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": str(user_id),
        "role": Role(role).value,
        "iat": int(issued_at.timestamp()),
        "exp": int(expire.timestamp()),
        "jti": uuid.uuid4().hex,
    }
    if session_id:
        payload["sid"] = session_id
    key, algorithm = _get_jwt_signing_key_and_algorithm()
    result = jwt.encode(payload, key, algorithm=algorithm)
    return result if isinstance(result, str) else result.decode("utf-8")


def decode_token(token: str) -> dict[str, Any]:
    """Verify signature, structure and expiry; raise JWTError otherwise.

    Expiry is checked against clock.utcnow() rather than jose's own clock so
    that it follows the same notion of time as issuance.
    """
    key, algorithms = _get_jwt_verification_key_and_algorithms()
    payload = jwt.decode(
        token,
        key,
        algorithms=algorithms,
        issuer=settings.jwt_issuer,
        # jose's require_* options switch its own wall-clock exp check back on;
        # presence of every claim is enforced by REQUIRED_CLAIMS below
        options={"verify_exp": False},
    )
    missing = [name for name in REQUIRED_CLAIMS if payload.get(name) in (None, "")]
    if missing:
        raise JWTClaimsError(f"Missing claims: {', '.join(missing)}")
    try:
        exp = int(payload["exp"])
    except (TypeError, ValueError) as e:
        raise JWTClaimsError("Expiration Time claim (exp) must be an integer.") from e
    if int(clock.utcnow().timestamp()) >= exp:
        raise ExpiredSignatureError("Signature has expired.")
    return payload


def verify_access_token(token: str) -> AccessClaims | Rejected:
    """Decode an access token into claims, or Rejected(UNAUTHORIZED) for any failure."""
    if not token:
        return unauthorized("empty token")
    try:
        payload = decode_token(token)
    except ExpiredSignatureError:
        return unauthorized("expired")
    except JWTError as e:
        return unauthorized(f"invalid: {e}")
    role = Role.parse(payload.get("role"))
    if role is None:
        return unauthorized("unknown role")
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        return unauthorized("non-numeric subject")
    return AccessClaims(
        user_id=user_id,
        role=role,
        issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        token_id=str(payload["jti"]),
        session_id=payload.get("sid"),
    )


def create_refresh_token() -> str:
    """Generate a new refresh token (plain string; caller must hash and store)."""
    return secrets.token_urlsafe(32)


def hash_refresh_token(token: str) -> str:
    """SHA256 hash of refresh token for storage."""
    return _refresh_token_hash(token)
