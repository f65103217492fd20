"""
Prompt Enhancer Credits - FastAPI Backend
Credit ledger, daily quota refresh and paid prompt enhancement.
"""

import asyncio
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, credits, enhance, admin
from services.enhancer import close_enhancer
from services.errors import CreditError
from services.quota_refresher import refresh_all


logger = logging.getLogger(__name__)


async def _periodic_daily_refresh() -> None:
    interval_minutes = max(int(settings.DAILY_REFRESH_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await refresh_all()
            logger.info(
                "Daily refresh tick: refreshed=%s skipped=%s errors=%s",
                result.get("refreshed", 0),
                result.get("skipped", 0),
                result.get("errors", 0),
            )
        except Exception as exc:
            logger.warning("Daily refresh tick failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Prompt Enhancer Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Ledger schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    refresh_task = None
    if int(settings.DAILY_REFRESH_SWEEP_INTERVAL_MINUTES) > 0:
        refresh_task = asyncio.create_task(_periodic_daily_refresh())
        logger.info(
            "Daily refresh loop enabled (every %s min).",
            int(settings.DAILY_REFRESH_SWEEP_INTERVAL_MINUTES),
        )
    yield
    if refresh_task is not None:
        refresh_task.cancel()
        try:
            await refresh_task
        except asyncio.CancelledError:
            pass
    await close_enhancer()
    await engine.dispose()
    logger.info("Shutting down API...")


app = FastAPI(
    title="Prompt Enhancer Credits API",
    description="Daily credit quotas and paid prompt enhancement",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CreditError)
async def credit_error_handler(request: Request, exc: CreditError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(enhance.router, prefix="/enhance", tags=["Enhance"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Prompt Enhancer Credits API",
        "version": "0.1.0",
        "status": "running"
    }
