"""
FastAPI application entry point for sitemark.

Provides REST API for:
- Opening remote PDF drawings and persisting their annotations
- Project report export (compose + publish)
- Downloading stored export artifacts and pin photos
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sitemark import __version__
from sitemark.config import settings
from sitemark.db import init_schema
from sitemark.errors import SitemarkError


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
    logger.info("Starting sitemark application...")

    try:
        init_schema()
        logger.info("Database schema initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database schema: {e}")
        raise

    logger.info("sitemark application started")
    yield

    # Shutdown
    logger.info("Shutting down sitemark application...")


# Create FastAPI application
app = FastAPI(
    title="Sitemark",
    description="Annotation persistence and project report export for shared PDF drawings",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Export-Url"],
)


# Error rendering: every error body is {"error": "..."}
@app.exception_handler(SitemarkError)
async def sitemark_error_handler(request: Request, exc: SitemarkError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request body")
    return JSONResponse(
        status_code=400,
        content={"error": f"Invalid request: {location}: {message}" if location else f"Invalid request: {message}"},
    )


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "bucket": settings.storage_bucket,
    }


# Import and include routers
from sitemark.routers import annotations, export, storage
app.include_router(annotations.router, prefix="/api/v1/files", tags=["annotations"])
app.include_router(export.router, prefix="/api/v1/export", tags=["export"])
app.include_router(storage.router, prefix="/api/v1/storage", tags=["storage"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "sitemark.main:app",
        host="0.0.0.0",
        port=8080,
        reload=settings.debug,
    )
