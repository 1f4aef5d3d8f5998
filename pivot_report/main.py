"""
FastAPI application entry point for the Pivot Report API.

Configures logging and CORS, manages the asyncpg pools across the app
lifespan, registers the marketing and dashboard routers, and maps request
validation failures to 400 responses.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pivot_report import __version__
from pivot_report.api import api_router
from pivot_report.core.database import init_db, close_db

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for FastAPI application startup and shutdown events.

    On startup:
        - Initialize the warehouse and CRM connection pools

    On shutdown:
        - Close the connection pools
    """
    logger.info("Pivot Report API starting")
    try:
        await init_db()
        logger.info("Database connection pools initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        # Continue startup; frame-backed sources need no pool

    yield

    logger.info("Pivot Report API shutting down")
    try:
        await close_db()
        logger.info("Database connection pools closed")
    except Exception as e:
        logger.error(f"Error closing database pools: {e}")


app = FastAPI(
    title="Pivot Report API",
    version=__version__,
    description=(
        "Hierarchical pivot tables over ad-spend and CRM sales rows: "
        "tree levels with rollup metrics, CRM details per node and a daily "
        "sales time series."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Invalid request bodies (empty dimensions, start > end, bad depth) are 400s."""
    logger.warning(f"Invalid request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "detail": jsonable_errors(exc)},
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
        Dict with API name and version
    """
    return {
        "name": "Pivot Report API",
        "version": __version__,
        "docs": "/docs",
        "openapi": "/openapi.json",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pivot_report.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
