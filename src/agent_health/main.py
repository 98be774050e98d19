"""
Main FastAPI Application Entry Point

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. ORPHAN RUN CLEANUP ON STARTUP (Feature: orphan-cleanup)
   - cleanup_orphaned_runs() called during lifespan startup
   - Runs that were "running" when the server stopped have no orchestrator
     left; they are finalized as cancelled with stats computed

2. TRACE POLLER RESUME ON STARTUP (Feature: trace-polling)
   - resume_pending() starts a poller for every report still waiting for
     traces, continuing from its persisted attempt count

3. GRACEFUL SHUTDOWN
   - In-flight run tasks and pollers are cancelled; pollers resume from
     storage on the next start

==============================================================================
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
import logging
from .controllers import router
from . import config
from .sqlite_service import get_db_service
from .benchmark_service import get_benchmark_service, get_trace_polling_service

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ==============================================================================
# LIFESPAN MANAGER (Feature: orphan-cleanup)
# ==============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup recovery and shutdown of background work.

    Startup actions:
    1. Finalize runs orphaned by the previous process as cancelled
    2. Resume trace polling for reports with metrics still pending

    Shutdown actions:
    1. Cancel executing runs and live pollers
    """
    logger.info("Starting API server...")
    db = get_db_service()
    benchmark_service = get_benchmark_service(db)
    poller = get_trace_polling_service(db)
    try:
        # 1. Clean up orphaned runs (Feature: orphan-cleanup)
        await benchmark_service.cleanup_orphaned_runs()
        logger.info("Orphaned run cleanup completed")

        # 2. Resume polling (Feature: trace-polling)
        await poller.resume_pending()
    except Exception as e:
        logger.error(f"Error during startup: {str(e)}")

    try:
        yield
    finally:
        await benchmark_service.shutdown()
        await poller.shutdown()

    logger.info("API server shutting down...")


app = FastAPI(title=config.API_TITLE, docs_url="/api/docs", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)

@app.get("/")
async def root():
    return {"message": "Agent Health API", "docs": "/api/docs"}

@app.get("/health")
async def health():
    return {"status": "ok"}

if __name__ == "__main__":
    uvicorn.run("src.agent_health.main:app", host=config.API_HOST, port=config.API_PORT, reload=config.API_DEBUG)
