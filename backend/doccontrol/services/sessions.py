"""Logout coordination across refresh tokens and Session rows."""

from __future__ import annotations

import logging

from doccontrol.services.token_store import RefreshTokenStore, RevocationReport

logger = logging.getLogger(__name__)


class SessionCoordinator:
    """
    Access tokens are stateless and left to expire; logging out means making
    sure no refresh token can mint a new one.
    """

    def __init__(self, store: RefreshTokenStore) -> None:
        self._store = store

    async def logout_current(
        self,
        user_id: int,
        session_id: str | None,
        refresh_token: str | None = None,
    ) -> RevocationReport:
        """Revoke the caller's current session and, if given, one of their refresh tokens."""
        tokens = 0
        sessions = 0
        if session_id:
            report = await self._store.revoke_session(session_id, user_id=user_id)
            tokens += report.refresh_tokens
            sessions += report.sessions
        if refresh_token and await self._store.revoke(refresh_token, user_id=user_id):
            tokens += 1
        if not tokens and not sessions:
            # Refresh tokens of this device stay usable until they are revoked or expire
            logger.warning(
                "Logout user %s revoked nothing (session %s, refresh token %s)",
                user_id,
                session_id or "-",
                "given" if refresh_token else "not given",
            )
        else:
            logger.info("Logout user %s session %s: %s tokens revoked", user_id, session_id, tokens)
        return RevocationReport(refresh_tokens=tokens, sessions=sessions)

    async def logout_all(self, user_id: int) -> RevocationReport:
        report = await self._store.revoke_all_for_user(user_id)
        logger.info(
            "Logout all devices for user %s: %s tokens, %s sessions revoked",
            user_id,
            report.refresh_tokens,
            report.sessions,
        )
        return report
