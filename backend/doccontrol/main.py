import logging
import sys
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from doccontrol.api.errors import install_exception_handlers
from doccontrol.api.v1 import auth, cron, system, users

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logging.getLogger("doccontrol").setLevel(logging.DEBUG)
from doccontrol.config import settings
from doccontrol.core.rate_limit import create_rate_limit_store
from doccontrol.db.session import init_db
from doccontrol.services.token_store import RefreshTokenStore
from prometheus_client import make_asgi_app

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_token_cleanup():
    """Hourly purge of expired/stale refresh tokens and sessions (same work as /cron/cleanup-tokens)."""
    from doccontrol.services.cleanup import run_token_cleanup

    try:
        await run_token_cleanup(app.state.token_store)
    except Exception:
        logger.exception("Scheduled token cleanup failed")


async def scheduled_rate_limit_purge():
    """Drop finished windows from the in-process rate limit store."""
    store = app.state.rate_limit_store
    purge = getattr(store, "purge_expired", None)
    if purge is not None:
        removed = purge()
        if removed:
            logger.debug("Rate limit: purged %s expired windows", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_jwt_config()
    if settings.app_env == "production" and not settings.cron_secret:
        logger.warning("CRON_SECRET is not set; /cron/cleanup-tokens will answer 500")
    await init_db()

    if settings.token_cleanup_schedule_enabled:
        minute = settings.token_cleanup_cron_minute if 0 <= settings.token_cleanup_cron_minute <= 59 else 0
        scheduler.add_job(scheduled_token_cleanup, "cron", minute=minute)
    scheduler.add_job(scheduled_rate_limit_purge, "interval", minutes=15)

    scheduler.start()
    yield
    scheduler.shutdown()
    await app.state.rate_limit_store.close()


app = FastAPI(
    title="Document Control API",
    description="Document control backend: authentication, sessions and token lifecycle",
    version="0.1.0",
    lifespan=lifespan,
)
# Process-lifetime services; the memory rate limit store is not shared across instances
app.state.rate_limit_store = create_rate_limit_store()
app.state.token_store = RefreshTokenStore()
install_exception_handlers(app)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        if getattr(settings, "enable_hsts", False):
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] if settings.cors_origins else ["*"]
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth.router, prefix="/api/v1")
app.include_router(users.router, prefix="/api/v1")
app.include_router(system.router, prefix="/api/v1")
app.include_router(cron.router, prefix="/api/v1")

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
def health(request: Request):
    return {"status": "ok"}
