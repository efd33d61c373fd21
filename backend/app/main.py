"""Ledgerwatch API: main entry point."""

from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_session_factory
from app.config import settings
from app.core.database import async_session_factory, engine, init_db
from app.core.logging import configure_logging
from app.core.middleware import RequestLoggingMiddleware
from app.services.job_queue import JobQueue
from app.services.jobs import build_worker_pool
from app.services.seed import seed_all

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: schema, seeds and the background worker pool."""
    # Startup
    configure_logging()
    logger.info("Starting Ledgerwatch API", env=settings.app_env)
    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
    await init_db()
    async with async_session_factory() as session:
        await seed_all(session)

    queue = JobQueue(async_session_factory)
    pool = build_worker_pool(async_session_factory, queue)
    await pool.start()
    app.state.job_queue = queue
    app.state.worker_pool = pool
    yield
    # Shutdown
    logger.info("Shutting down Ledgerwatch API")
    await pool.stop()
    await engine.dispose()


app = FastAPI(
    title="Ledgerwatch API",
    description="Transaction ingestion, categorization and AML / fraud monitoring",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    redirect_slashes=False,
)

# ── Middleware ─────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


# ── Health Check ──────────────────────────────────
@app.get("/health", tags=["system"])
async def health_check():
    """Liveness probe: always returns healthy if the process is running."""
    return {"status": "healthy", "version": "0.1.0"}


@app.get("/ready", tags=["system"])
async def readiness_check(session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory)):
    """Readiness probe: checks DB connectivity."""
    checks = {"database": "unknown", "api": "ok"}
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
    except (SQLAlchemyError, OSError) as e:
        logger.warning("readiness_check_failed", error=str(e))
        checks["database"] = f"error: {e}"
        return {"status": "degraded", "checks": checks}

    return {"status": "ready", "checks": checks}


# ── API Routes ────────────────────────────────────
from app.api.v1 import jobs  # noqa: E402

app.include_router(jobs.router, prefix="/api/v1/jobs", tags=["jobs"])
