"""
Backend API package initialization.

This package contains the FastAPI router for the report service:
- reports: one GET route per registered report plus the report catalog
"""

from fastapi import APIRouter

from dealer_analytics.api.reports import router as reports_router

# Create main API router
api_router = APIRouter()

api_router.include_router(reports_router)

__all__ = [
    "api_router",
    "reports_router",
]
