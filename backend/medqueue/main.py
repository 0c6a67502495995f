"""
MedQueue - Appointment & Queue Scheduling Engine

Main FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .database import Database
from .exceptions import (
    SchedulingError,
    ValidationError,
    NotFound,
    InvalidTransition,
    QuotaExceeded,
    ConcurrencyConflict,
    PersistenceError
)
from .routers import doctors_router, queue_router, shifts_router

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting %s v%s", settings.APP_NAME, settings.APP_VERSION)
    await Database.connect()

    yield

    # Shutdown
    await Database.disconnect()
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"]
)


# Trace Middleware
@app.middleware("http")
async def trace_middleware(request: Request, call_next):
    logger.debug("INCOMING %s %s", request.method, request.url.path)
    response = await call_next(request)
    logger.debug("OUTGOING %s %s -> %s", request.method, request.url.path, response.status_code)
    return response


ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    QuotaExceeded: status.HTTP_409_CONFLICT,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@app.exception_handler(SchedulingError)
async def scheduling_exception_handler(request: Request, exc: SchedulingError):
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.error("%s %s: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)

    response = JSONResponse(status_code=status_code, content=exc.to_dict())
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    response = JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )
    # Force CORS headers
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


# Global error handler with CORS headers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)

    response = JSONResponse(
        status_code=500,
        content={"detail": str(exc)}
    )
    # Force CORS headers
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "*"
    response.headers["Access-Control-Allow-Headers"] = "*"
    return response


# Include routers
app.include_router(doctors_router)
app.include_router(queue_router)
app.include_router(shifts_router)


@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - health check."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "healthy",
        "docs": "/docs"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Detailed health check."""
    return {
        "status": "healthy",
        "database": "connected" if Database.client else "disconnected",
        "version": settings.APP_VERSION
    }


# Entry point for running directly
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "medqueue.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
