"""
Pivot report API package initialization.

This package contains FastAPI router modules for the pivot report tables:
- marketing: Marketing tree levels and CRM details per node
- dashboard: Sales dashboard tree levels and the daily time series
"""

from fastapi import APIRouter

from pivot_report.api.marketing import router as marketing_router
from pivot_report.api.dashboard import router as dashboard_router

# Create main API router
api_router = APIRouter()

api_router.include_router(marketing_router, prefix="/marketing", tags=["marketing"])
api_router.include_router(dashboard_router, prefix="/dashboard", tags=["dashboard"])

__all__ = [
    "api_router",
    "marketing_router",
    "dashboard_router",
]
