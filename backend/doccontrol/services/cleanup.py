"""Expired/stale refresh token and session purge, triggered by the cron endpoint or the scheduler."""

from __future__ import annotations

import hmac
import logging

from doccontrol.core.results import AuthErrorCode, Rejected, unauthorized
from doccontrol.services.token_store import CleanupReport, RefreshTokenStore

logger = logging.getLogger(__name__)


def check_cron_secret(authorization: str | None, configured_secret: str) -> Rejected | None:
    """None when the Authorization header carries the configured bearer secret."""
    if not configured_secret:
        return Rejected(AuthErrorCode.CONFIGURATION, "CRON_SECRET not configured")
    expected = f"Bearer {configured_secret}"
    if not authorization or not hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8")):
        return unauthorized("bad cron secret")
    return None


async def run_token_cleanup(store: RefreshTokenStore) -> CleanupReport:
    """Idempotent: a second run right after the first deletes nothing."""
    report = await store.cleanup_expired()
    logger.info(
        "Token cleanup: %s expired refresh tokens, %s old refresh tokens, %s expired sessions",
        report.expired_refresh_tokens,
        report.old_refresh_tokens,
        report.expired_sessions,
    )
    return report
