"""Pulsewatch — FastAPI Application Entry Point.

Synthetic web-performance pulses: dispatch workers, collect heartbeats,
detect Core Web Vitals regressions against a rolling baseline.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pulsewatch.database import init_db, test_connection, db_url, _mask_url
from pulsewatch.scheduler.jobs import start_scheduler, stop_scheduler
from pulsewatch.api.pulse_routes import router as pulse_router
from pulsewatch.api.catalog_routes import router as catalog_router
from pulsewatch.api.notification_routes import router as notification_router
from pulsewatch.api.project_routes import router as project_router
from pulsewatch.orchestrator.notifications import hub
from pulsewatch.core.logging import get_logger

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("Pulsewatch starting up...")
    logger.info(f"Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    # Test connection first
    db_ok = test_connection()
    if db_ok:
        try:
            init_db()
        except Exception as e:
            logger.error(f"Table creation failed: {e}")
    else:
        logger.error("Database NOT connected — endpoints will fail")
    # Serverless deployments run the reaper from an external cron instead
    if not IS_SERVERLESS:
        start_scheduler()
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    logger.info("Pulsewatch shut down")


app = FastAPI(
    title="Pulsewatch",
    description="Pulse orchestration and Core Web Vitals baseline engine.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(pulse_router)
app.include_router(catalog_router)
app.include_router(notification_router)
app.include_router(project_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "pulsewatch",
        "version": "1.0.0",
        "subscribers": hub.subscriber_count,
    }


@app.get("/debug/db", tags=["System"])
async def debug_db():
    """Debug endpoint — check database connectivity."""
    error = None
    connected = False
    try:
        connected = test_connection()
    except Exception as e:
        error = str(e)

    backend = "postgresql" if db_url.startswith("postgresql") else "sqlite"
    return {
        "connected": connected,
        "backend": backend,
        "url": _mask_url(db_url),
        "environment": "serverless" if IS_SERVERLESS else "local",
        "error": error,
    }
