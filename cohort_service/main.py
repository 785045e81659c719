"""
FastAPI application entry point for the cohort service.

Provides REST API for:
- Cohort queries, DSL verification and CSV export
- Patient drilldown
- Cohort templates
- Feature materialization jobs
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from cohort_service.config import settings
from cohort_service.db import get_engine, init_schema
from cohort_service.dependencies import shutdown_cohort_service


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),
    ]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting cohort service...")

    try:
        init_schema()
        logger.info("Database schema initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database schema: {e}")
        raise

    logger.info("Cohort service started")
    yield

    # Shutdown
    logger.info("Shutting down cohort service...")
    shutdown_cohort_service()


# Create FastAPI application
app = FastAPI(
    title="Cohort Engine",
    description="Cohort DSL queries, exports, drilldowns and feature materialization",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
    }


@app.get("/ready")
def readiness_check():
    """Readiness: the database answers a trivial query."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not_ready", "database": "unavailable"})
    return {"status": "ready", "database": "ok"}


# Import and include routers
from cohort_service.routers import cohort
app.include_router(cohort.router, prefix="/api/v1/cohort", tags=["cohort"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "cohort_service.main:app",
        host="0.0.0.0",
        port=8080,
        reload=settings.debug,
    )
