"""
Refresh token store: the source of truth for renewable sessions.

Every public method runs in its own transaction and commits before returning,
so revocations are visible to the next lookup. Rotation and revoke-all take a
row lock on the owning user (SELECT ... FOR UPDATE) so a rotation racing a
revoke-all or another rotation of the same value is serialised; the
conditional delete then lets exactly one caller consume a token. SQLite has no
row locks, so the default session factory there opens every transaction with
BEGIN IMMEDIATE (see doccontrol.db.session.store_session_maker).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doccontrol.config import settings
from doccontrol.core import clock
from doccontrol.core.auth import create_refresh_token, hash_refresh_token
from doccontrol.core.results import Rejected, invalid_refresh_token
from doccontrol.core.roles import Role
from doccontrol.db.session import store_session_maker
from doccontrol.models.refresh_token import RefreshToken
from doccontrol.models.user import User
from doccontrol.models.user_session import UserSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A freshly minted refresh token. `value` is the only copy of the raw token."""

    value: str
    user_id: int
    role: Role
    session_id: str
    device_id: str | None
    expires_at: datetime


@dataclass(frozen=True)
class RevocationReport:
    refresh_tokens: int
    sessions: int


@dataclass(frozen=True)
class CleanupReport:
    expired_refresh_tokens: int
    old_refresh_tokens: int
    expired_sessions: int


def _no_sync(stmt):
    return stmt.execution_options(synchronize_session=False)


class RefreshTokenStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or store_session_maker

    @staticmethod
    def _expiry(now: datetime) -> datetime:
        return now + timedelta(days=settings.refresh_token_expire_days)

    @staticmethod
    async def _lock_user(session: AsyncSession, user_id: int) -> User | None:
        r = await session.execute(select(User).where(User.id == user_id).with_for_update())
        return r.scalar_one_or_none()

    @staticmethod
    async def _insert_token(
        session: AsyncSession,
        user_id: int,
        session_id: str,
        device_id: str | None,
        now: datetime,
    ) -> tuple[str, datetime]:
        value = create_refresh_token()
        expires_at = RefreshTokenStore._expiry(now)
        session.add(
            RefreshToken(
                user_id=user_id,
                session_id=session_id,
                token_hash=hash_refresh_token(value),
                device_id=device_id,
                created_at=now,
                expires_at=expires_at,
            )
        )
        await session.flush()
        return value, expires_at

    async def create(
        self,
        user_id: int,
        device_id: str | None = None,
        *,
        session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> IssuedRefreshToken:
        """Mint a refresh token for user_id; opens a new Session unless session_id is given."""
        now = now or clock.utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                user = await session.get(User, user_id)
                if user is None:
                    raise LookupError(f"User {user_id} not found")
                expires_at = self._expiry(now)
                if session_id is None:
                    session_id = uuid.uuid4().hex
                    session.add(
                        UserSession(
                            id=session_id,
                            user_id=user_id,
                            device_id=device_id,
                            ip_address=ip_address,
                            user_agent=(user_agent or "")[:512] or None,
                            created_at=now,
                            last_used_at=now,
                            expires_at=expires_at,
                        )
                    )
                    await session.flush()
                else:
                    await session.execute(
                        _no_sync(
                            update(UserSession)
                            .where(UserSession.id == session_id, UserSession.user_id == user_id)
                            .values(expires_at=expires_at, last_used_at=now)
                        )
                    )
                value, expires_at = await self._insert_token(session, user_id, session_id, device_id, now)
                role = user.role
        return IssuedRefreshToken(
            value=value,
            user_id=user_id,
            role=role,
            session_id=session_id,
            device_id=device_id,
            expires_at=expires_at,
        )

    async def rotate(
        self,
        old_value: str,
        device_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> IssuedRefreshToken | Rejected:
        """
        Consume old_value and mint its replacement in one transaction.

        Unknown, expired, already consumed or revoked values, and tokens of
        inactive users, yield Rejected(INVALID_REFRESH_TOKEN).
        """
        now = now or clock.utcnow()
        old_value = (old_value or "").strip()
        if not old_value:
            return invalid_refresh_token("empty refresh token")
        token_hash = hash_refresh_token(old_value)
        async with self._session_factory() as session:
            async with session.begin():
                r = await session.execute(
                    select(
                        RefreshToken.id,
                        RefreshToken.user_id,
                        RefreshToken.session_id,
                        RefreshToken.device_id,
                    ).where(
                        RefreshToken.token_hash == token_hash,
                        RefreshToken.expires_at > now,
                    )
                )
                row = r.one_or_none()
                if row is None:
                    logger.warning("Refresh rejected: token unknown, expired or already used")
                    return invalid_refresh_token("unknown, expired or already used")

                user = await self._lock_user(session, row.user_id)
                deleted = await session.execute(
                    _no_sync(
                        delete(RefreshToken).where(
                            RefreshToken.id == row.id,
                            RefreshToken.expires_at > now,
                        )
                    )
                )
                if deleted.rowcount != 1:
                    logger.warning("Refresh rejected: token for user %s consumed concurrently", row.user_id)
                    return invalid_refresh_token("consumed concurrently")
                if user is None or not user.is_active:
                    logger.warning("Refresh rejected: user %s missing or inactive", row.user_id)
                    return invalid_refresh_token("inactive user")

                device = device_id or row.device_id
                expires_at = self._expiry(now)
                session_id = row.session_id
                bumped = 0
                if session_id:
                    res = await session.execute(
                        _no_sync(
                            update(UserSession)
                            .where(UserSession.id == session_id)
                            .values(expires_at=expires_at, last_used_at=now, device_id=device)
                        )
                    )
                    bumped = res.rowcount
                if not bumped:
                    session_id = uuid.uuid4().hex
                    session.add(
                        UserSession(
                            id=session_id,
                            user_id=row.user_id,
                            device_id=device,
                            created_at=now,
                            last_used_at=now,
                            expires_at=expires_at,
                        )
                    )
                    await session.flush()
                value, expires_at = await self._insert_token(session, row.user_id, session_id, device, now)
                role = user.role
        return IssuedRefreshToken(
            value=value,
            user_id=row.user_id,
            role=role,
            session_id=session_id,
            device_id=device,
            expires_at=expires_at,
        )

    async def revoke(self, value: str, *, user_id: int | None = None) -> bool:
        """Delete one token. Revoking an unknown or already revoked token is not an error."""
        value = (value or "").strip()
        if not value:
            return False
        stmt = delete(RefreshToken).where(RefreshToken.token_hash == hash_refresh_token(value))
        if user_id is not None:
            stmt = stmt.where(RefreshToken.user_id == user_id)
        async with self._session_factory() as session:
            async with session.begin():
                res = await session.execute(_no_sync(stmt))
        return res.rowcount > 0

    async def revoke_session(self, session_id: str, *, user_id: int | None = None) -> RevocationReport:
        """Delete a Session row and every refresh token minted under it."""
        tokens_stmt = delete(RefreshToken).where(RefreshToken.session_id == session_id)
        session_stmt = delete(UserSession).where(UserSession.id == session_id)
        if user_id is not None:
            tokens_stmt = tokens_stmt.where(RefreshToken.user_id == user_id)
            session_stmt = session_stmt.where(UserSession.user_id == user_id)
        async with self._session_factory() as session:
            async with session.begin():
                if user_id is not None:
                    await self._lock_user(session, user_id)
                tokens = await session.execute(_no_sync(tokens_stmt))
                sessions = await session.execute(_no_sync(session_stmt))
        return RevocationReport(refresh_tokens=tokens.rowcount, sessions=sessions.rowcount)

    async def revoke_all_for_user(self, user_id: int) -> RevocationReport:
        """Delete every refresh token and Session of the user ("logout all devices")."""
        async with self._session_factory() as session:
            async with session.begin():
                await self._lock_user(session, user_id)
                tokens = await session.execute(
                    _no_sync(delete(RefreshToken).where(RefreshToken.user_id == user_id))
                )
                sessions = await session.execute(
                    _no_sync(delete(UserSession).where(UserSession.user_id == user_id))
                )
        return RevocationReport(refresh_tokens=tokens.rowcount, sessions=sessions.rowcount)

    async def cleanup_expired(self, *, now: datetime | None = None) -> CleanupReport:
        """
        Delete expired refresh tokens, refresh tokens created more than
        refresh_token_max_age_days ago (even if unexpired), and expired Sessions.
        """
        now = now or clock.utcnow()
        cutoff = now - timedelta(days=settings.refresh_token_max_age_days)
        async with self._session_factory() as session:
            async with session.begin():
                expired = await session.execute(
                    _no_sync(delete(RefreshToken).where(RefreshToken.expires_at < now))
                )
                old = await session.execute(
                    _no_sync(delete(RefreshToken).where(RefreshToken.created_at < cutoff))
                )
                sessions = await session.execute(
                    _no_sync(delete(UserSession).where(UserSession.expires_at < now))
                )
        return CleanupReport(
            expired_refresh_tokens=expired.rowcount,
            old_refresh_tokens=old.rowcount,
            expired_sessions=sessions.rowcount,
        )

    async def list_sessions(
        self,
        user_id: int | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
        now: datetime | None = None,
    ) -> tuple[list[UserSession], int]:
        """Active (unexpired) sessions, newest first, with the total count."""
        now = now or clock.utcnow()
        conditions = [UserSession.expires_at > now]
        if user_id is not None:
            conditions.append(UserSession.user_id == user_id)
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(UserSession).where(*conditions))
            r = await session.execute(
                select(UserSession)
                .where(*conditions)
                .order_by(UserSession.created_at.desc(), UserSession.id)
                .limit(limit)
                .offset(offset)
            )
            items = list(r.scalars().all())
        return items, int(total or 0)
