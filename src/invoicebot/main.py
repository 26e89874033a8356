"""
Main FastAPI application module for the invoice bot.

This module initializes the FastAPI application, configures middleware,
sets up health check endpoints, and registers the webhook router.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .db import dispose_engine, get_db, init_db
from .routers import webhook
from .utils.logging import get_logger, setup_logging

# Set up structured logging
setup_logging(level="DEBUG" if settings.debug else settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Creates missing tables on startup and disposes the engine on shutdown.
    """
    logger.info("Application starting up", extra={"environment": settings.environment})
    await init_db()

    yield

    logger.info("Application shutting down")
    await dispose_engine()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Chat-first invoicing over WhatsApp and Messenger",
    version="1.0.0",
    lifespan=lifespan,
)

# Attach rate limiter to app
app.state.limiter = webhook.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next) -> Response:
    """
    Correlation ID middleware.

    Reuses an incoming ``X-Correlation-ID`` or generates one, stores it on
    the request state and echoes it in the response headers.
    """
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    request.state.correlation_id = correlation_id

    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next) -> Response:
    """Log method, path, status and processing time of every request."""
    start_time = time.time()
    correlation_id = getattr(request.state, "correlation_id", None)

    logger.info(
        f"Incoming request: {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "correlation_id": correlation_id,
        },
    )

    response = await call_next(request)
    process_time = time.time() - start_time

    logger.info(
        f"Request completed: {request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "process_time": f"{process_time:.4f}s",
            "correlation_id": correlation_id,
        },
    )

    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.

    Logs the stack trace and answers 500 with an error id; technical details
    stay in the logs.
    """
    error_id = str(uuid.uuid4())
    correlation_id = getattr(request.state, "correlation_id", None)

    logger.error(
        "Unhandled exception occurred",
        extra={
            "error_id": error_id,
            "correlation_id": correlation_id,
            "error_type": type(exc).__name__,
            "error_message": str(exc),
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "error_id": error_id,
            "message": "An unexpected error occurred. Please contact support with the error ID if the issue persists.",
        },
        headers={"X-Error-ID": error_id},
    )


# Health check endpoints
@app.get("/healthz", tags=["health"])
async def health_check() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "ok"}


@app.get("/readyz", tags=["health"])
async def readiness_check(db: AsyncSession = Depends(get_db)) -> dict[str, str]:
    """
    Readiness probe: one round trip to the database.

    Raises:
        HTTPException: 503 if the database is not reachable
    """
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "connected"}
    except SQLAlchemyError as e:
        logger.error(
            "Readiness check failed - database connection error",
            extra={"error": str(e)},
            exc_info=True,
        )
        raise HTTPException(status_code=503, detail="Database connection unavailable")


# Register routers
app.include_router(webhook.router, prefix="/whatsapp", tags=["webhook"])

logger.info("Invoice bot application initialized")
