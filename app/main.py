"""
POS Sales Ledger
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.config import get_settings
from app.utils.logger import log

# Import routers
from app.api import health, sync

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{settings.app_version}")
    log.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        from app.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Start the scheduler for provider pulls and ledger jobs
    scheduler_started = False
    if settings.enable_scheduler:
        try:
            from app.scheduler import start_scheduler
            start_scheduler()
            scheduler_started = True
            log.info("Scheduler started successfully")
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    if scheduler_started:
        from app.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    POS sales ingestion and reconciliation

    Pulls orders from Toast and Square into a per-tenant extract, reconciles
    them into a canonical sales ledger and keeps daily sales aggregates in step.

    - Idempotent ledger upsert keyed by provider ids
    - Retraction of rows whose source no longer qualifies
    - Bulk resyncs with batched classification and aggregation
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(sync.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
        "status": "/status",
        "endpoints": {
            "sync_all": "POST /sync/{tenant_id}/all",
            "sync_range": "POST /sync/{tenant_id}/range",
            "catch_up": "POST /sync/{tenant_id}/catch-up",
            "sync_status": "GET /sync/{tenant_id}/status",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
