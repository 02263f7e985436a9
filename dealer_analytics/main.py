"""
FastAPI application entry point for the dealership analytics report service.

Configures logging and CORS, manages the asyncpg pool through the lifespan
handler, and registers the report router.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dealer_analytics import __version__
from dealer_analytics.api import api_router
from dealer_analytics.core.config import get_settings
from dealer_analytics.core.database import close_db, init_db
from dealer_analytics.reports import REPORT_REGISTRY

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for FastAPI application startup and shutdown events.

    On startup:
        - Initialize database connection pool

    On shutdown:
        - Close database connection pool
    """
    logger.info("Dealer analytics API starting with %d reports", len(REPORT_REGISTRY))
    try:
        await init_db()
        logger.info("Database connection pool initialized")
    except Exception as e:
        # Reports answer with a DatabaseError envelope until the pool comes up
        logger.error(f"Failed to initialize database: {e}")

    yield

    logger.info("Dealer analytics API shutting down")
    await close_db()
    logger.info("Database connection pool closed")


# Create FastAPI application
app = FastAPI(
    title="Dealer Analytics API",
    version=__version__,
    description=(
        "Tenant-scoped analytics reports over dealership operations: vehicles, "
        "workshop quotes, service bays, permissions, integrations, workflows "
        "and cost configuration."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Dict with status 'healthy'
    """
    return {"status": "healthy"}


@app.get("/")
async def root():
    """
    Root endpoint providing API information.

    Returns:
        Dict with API name, version and report count
    """
    return {
        "name": "Dealer Analytics API",
        "version": __version__,
        "reports": len(REPORT_REGISTRY),
        "catalog": "/api/company/reports",
        "docs": "/docs",
        "openapi": "/openapi.json",
    }


# Run with uvicorn when executed directly
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dealer_analytics.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
