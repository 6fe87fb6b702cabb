"""Scheduler-triggered maintenance. Authenticated by the shared CRON_SECRET, not by user tokens."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from doccontrol.api.deps import get_token_store
from doccontrol.api.errors import http_exception_for
from doccontrol.config import settings
from doccontrol.core import clock
from doccontrol.services.cleanup import check_cron_secret, run_token_cleanup
from doccontrol.services.token_store import RefreshTokenStore

router = APIRouter(prefix="/cron", tags=["cron"])


class CleanupResponse(BaseModel):
    """Field names are snake_case like the rest of the API (not deletedSessionsCount etc.)."""

    success: bool
    message: str
    deleted_sessions_count: int = Field(description="Sessions whose expires_at has passed")
    deleted_old_refresh_tokens_count: int = Field(
        description="Refresh tokens created more than refresh_token_max_age_days ago, even if unexpired"
    )
    deleted_expired_refresh_tokens_count: int = Field(description="Refresh tokens whose expires_at has passed")
    timestamp: datetime


@router.get(
    "/cleanup-tokens",
    response_model=CleanupResponse,
    summary="Purge expired and stale refresh tokens and sessions",
    description=(
        "Call with `Authorization: Bearer <CRON_SECRET>`. Recommended schedule: hourly (0 * * * *). "
        "Response keys are snake_case: deleted_sessions_count, deleted_old_refresh_tokens_count, "
        "deleted_expired_refresh_tokens_count."
    ),
    responses={
        401: {"description": "Missing or incorrect cron secret"},
        500: {"description": "CRON_SECRET not configured"},
    },
)
async def cleanup_tokens(
    request: Request,
    store: Annotated[RefreshTokenStore, Depends(get_token_store)],
) -> CleanupResponse:
    rejected = check_cron_secret(request.headers.get("authorization"), settings.cron_secret)
    if rejected is not None:
        raise http_exception_for(rejected)
    report = await run_token_cleanup(store)
    return CleanupResponse(
        success=True,
        message="Token cleanup completed successfully",
        deleted_sessions_count=report.expired_sessions,
        deleted_old_refresh_tokens_count=report.old_refresh_tokens,
        deleted_expired_refresh_tokens_count=report.expired_refresh_tokens,
        timestamp=clock.utcnow(),
    )
