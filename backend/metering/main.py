import asyncio
import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.engine.url import make_url

from metering.admin.router import router as admin_router
from metering.apikeys.router import router as apikeys_router
from metering.core.config import settings
from metering.db.init_db import init_db
from metering.db.session import SessionLocal, engine
from metering.grader.router import router as grader_router
from metering.notify.circuit_breaker import BreakerRegistry
from metering.notify.email import WebhookEmailSender
from metering.quota.router import admin_router as quota_admin_router
from metering.quota.router import router as quota_router
from metering.ratelimit.events import RateLimitEventLogger
from metering.ratelimit.limiter import FixedWindowRateLimiter, sweep_forever
from metering.ratelimit.middleware import RateLimitHeadersMiddleware
from metering.ratelimit.overrides import OverrideCache
from metering.ratelimit.report import RateLimitReportScheduler
from metering.ratelimit.router import router as ratelimit_admin_router
from metering.system.router import router as system_router
from metering.tokens.router import admin_router as tokens_admin_router
from metering.tokens.router import router as tokens_router

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Metered API Access Service",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Api-Key"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "X-RateLimit-Tier", "Retry-After"],
)
app.add_middleware(RateLimitHeadersMiddleware)

app.state.rate_limiter = FixedWindowRateLimiter()
app.state.override_cache = OverrideCache(ttl_s=settings.OVERRIDE_CACHE_TTL_SECONDS)
app.state.event_logger = RateLimitEventLogger(SessionLocal, max_workers=settings.RATE_LIMIT_EVENT_WORKERS)
app.state.breakers = BreakerRegistry()
app.state.email_sender = WebhookEmailSender(
    settings.EMAIL_WEBHOOK_URL,
    breaker=app.state.breakers.get_or_create(
        "email", error_threshold_pct=60, volume_threshold=5, reset_timeout_s=60
    ),
    timeout_s=settings.EMAIL_WEBHOOK_TIMEOUT_SECONDS,
)
app.state.report_scheduler = RateLimitReportScheduler(
    SessionLocal,
    app.state.email_sender,
    settings.RATE_LIMIT_REPORT_RECIPIENTS,
)
app.state.background_tasks = []


@app.on_event("startup")
async def on_startup() -> None:
    db_url = make_url(settings.DATABASE_URL)
    logger.info(
        "Config sanity: env=%s db_host=%s cors_origins=%s window_s=%s report_enabled=%s",
        settings.ENV,
        db_url.host or "local",
        len(settings.CORS_ORIGINS),
        settings.RATE_LIMIT_WINDOW_SECONDS,
        settings.RATE_LIMIT_REPORT_ENABLED,
    )
    init_db()

    app.state.background_tasks.append(
        asyncio.create_task(sweep_forever(app.state.rate_limiter, settings.RATE_LIMIT_SWEEP_SECONDS))
    )
    if settings.RATE_LIMIT_REPORT_ENABLED:
        app.state.report_scheduler.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    for task in app.state.background_tasks:
        task.cancel()
    app.state.background_tasks.clear()
    await app.state.report_scheduler.stop()
    app.state.event_logger.shutdown(wait=True)


# --- Routers ---
app.include_router(grader_router, prefix="/api/v1/grader", tags=["grader"])
app.include_router(apikeys_router, prefix="/api/v1/api-keys", tags=["api-keys"])
app.include_router(quota_router, prefix="/api/v1/quota", tags=["quota"])
app.include_router(tokens_router, prefix="/api/v1/tokens", tags=["tokens"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(quota_admin_router, prefix="/api/v1/admin/quota", tags=["quota-admin"])
app.include_router(tokens_admin_router, prefix="/api/v1/admin/tokens", tags=["tokens-admin"])
app.include_router(ratelimit_admin_router, prefix="/api/v1/admin/rate-limits", tags=["rate-limits-admin"])
app.include_router(system_router, prefix="/api/v1/system", tags=["system"])


# --- System ---
@app.get("/health", tags=["system"])
def health():
    return {"status": "ok"}


@app.get("/ready", tags=["system"])
def readiness():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        raise HTTPException(status_code=503, detail="Database not ready")
    return {"status": "ready"}
