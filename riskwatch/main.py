"""RiskWatch API with scheduled watchlist monitoring.

Starts the API server, the check dispatcher, and the tick that queues
due watchlist checks.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from riskwatch.config import get_settings
from riskwatch.models.database import dispose_db, init_db
from riskwatch.routers import (
    alerts_router, batch_router, reports_router, verify_router, watchlist_router,
)
from riskwatch.services.scheduler import dispatch_due_checks, dispatcher

# ─── LOGGING ─────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-25s | %(levelname)-7s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("riskwatch")


# ─── SCHEDULER ───────────────────────────────────────────────────────────────

async def monitoring_tick():
    """Queue every watchlist check that is due."""
    try:
        await dispatch_due_checks(dispatcher)
    except Exception as e:
        logger.error(f"Monitoring tick failed: {e}")


# ─── APP LIFECYCLE ───────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    settings = get_settings()

    logger.info("Initializing database...")
    await init_db()
    logger.info("Database ready")

    await dispatcher.start()

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        monitoring_tick,
        trigger=IntervalTrigger(seconds=settings.scheduler_tick_seconds),
        id="monitoring_tick",
        name="Queue due watchlist checks",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info(f"Scheduler started, ticking every {settings.scheduler_tick_seconds}s")

    yield

    scheduler.shutdown(wait=False)
    await dispatcher.stop()
    await dispose_db()
    logger.info("Scheduler stopped")


# ─── APP ─────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="RiskWatch API",
    description=(
        "Risk tracking for phone numbers and social profiles. "
        "Combines community reports, reputation lookups, geographic risk and "
        "behavioral patterns into one score, monitors watchlists for changes, "
        "and scores bulk submissions."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(verify_router, prefix="/api/v1")
app.include_router(reports_router, prefix="/api/v1")
app.include_router(watchlist_router, prefix="/api/v1")
app.include_router(alerts_router, prefix="/api/v1")
app.include_router(batch_router, prefix="/api/v1")


# ─── HEALTH CHECK ────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    s = get_settings()
    db = s.database_url
    return {
        "status": "ok",
        "service": "riskwatch-api",
        "version": "1.0.0",
        "db_type": "postgres" if "postgres" in db else "sqlite",
        "dispatcher_running": dispatcher.running,
    }


@app.get("/")
async def root():
    return {
        "name": "RiskWatch API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
