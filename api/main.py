"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, jobs
from api.dependencies import get_checkpoint_store
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.logging import setup_logging
from ingestion.scheduler import CheckpointRetentionScheduler
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Archive Ingest Operations API",
    description="Health and checkpoint inspection for archive ingestion jobs",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(jobs.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Archive Ingest Operations API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Checkpoint backend: {settings.CHECKPOINT_BACKEND}")

    store = app.dependency_overrides.get(get_checkpoint_store, get_checkpoint_store)()
    app.state.retention_scheduler = CheckpointRetentionScheduler(store)
    app.state.retention_scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Archive Ingest Operations API")
    scheduler = getattr(app.state, "retention_scheduler", None)
    if scheduler is not None:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Archive Ingest Operations API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "checkpoints": "/jobs/{job_id}/checkpoints",
            "latest_checkpoint": "/jobs/{job_id}/checkpoints/latest"
        }
    }
