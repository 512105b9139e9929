"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from clipforge.config import settings
from clipforge.db.database import async_session_maker, init_db, close_db
from clipforge.api.routes import router
from clipforge.pipeline import PipelineOrchestrator
from clipforge.providers import build_providers
from clipforge.workers.job_runner import JobRunner

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting ClipForge...")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    http_client = httpx.AsyncClient(timeout=settings.http_timeout)
    providers = build_providers(settings, http_client)
    orchestrator = PipelineOrchestrator.from_settings(settings, providers, async_session_maker)
    runner = JobRunner(
        orchestrator,
        async_session_maker,
        lease_ttl=settings.lease_ttl_seconds,
        job_timeout=settings.job_timeout,
    )

    app.state.providers = providers
    app.state.orchestrator = orchestrator
    app.state.publisher = orchestrator.publisher
    app.state.runner = runner
    logger.info(f"Pipeline ready (worker {runner.worker_id})")

    # Pick up jobs a previous worker left unfinished
    await runner.resume_incomplete()

    yield

    # Shutdown
    logger.info("Shutting down ClipForge...")
    await runner.shutdown()
    shutdown_renderer = getattr(providers.renderer, "shutdown", None)
    if shutdown_renderer is not None:
        await shutdown_renderer()
    await http_client.aclose()
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Turns long-form videos into short vertical clips and publishes them",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router, prefix="/api")

# Serve locally stored media
if settings.storage_backend == "local":
    app.mount("/media", StaticFiles(directory=str(settings.storage_dir)), name="media")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.app_name,
        "version": "1.0.0",
        "api": "/api",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clipforge.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
