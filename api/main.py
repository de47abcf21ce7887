"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, oauth
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.database import async_session_maker
from core.error_logger import ErrorLogger
from core.exceptions import (
    ETLException,
    ConfigError,
    CryptoError,
    StateError,
    TokenError,
    ProviderError,
    DestinationError,
)
from core.logging import setup_logging
from credentials.cipher import get_cipher
from pipeline.runner import build_runner
from pipeline.scheduler import JobScheduler
from schemas.api import ErrorResponse
import logging

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Storefront Export Scheduler API",
    description="Scheduled storefront exports with OAuth-authorized destinations",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(oauth.router)


def _status_for(error: ETLException) -> int:
    if isinstance(error, ConfigError):
        return 404 if error.message == "Destination not found" else 400
    if isinstance(error, StateError):
        return 400
    if isinstance(error, TokenError):
        return 401
    if isinstance(error, ProviderError):
        return 502
    if isinstance(error, DestinationError) and error.reauthorization_required:
        return 401
    return 500


@app.exception_handler(ETLException)
async def etl_exception_handler(request: Request, exc: ETLException):
    status_code = _status_for(exc)
    body = ErrorResponse(
        error_type=type(exc).__name__,
        code=exc.code,
        # Internal failures (crypto, storage) are not described to callers
        message=exc.message if status_code < 500 else "Internal error",
        reauthorization_required=bool(getattr(exc, "reauthorization_required", False)),
        request_id=getattr(request.state, "request_id", None),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _runner_factory(session):
    return build_runner(session, error_logger=ErrorLogger(async_session_maker))


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    setup_logging()
    logger.info("Starting Storefront Export Scheduler API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    # Refuse to start without a master secret
    try:
        get_cipher()
    except CryptoError as e:
        logger.critical(f"Credential encryption unavailable: {e.message}")
        raise

    scheduler = JobScheduler(runner_factory=_runner_factory)
    app.state.scheduler = scheduler
    await scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Storefront Export Scheduler API")
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Storefront Export Scheduler API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "authorize": "/oauth/authorize/{destination_id}",
            "callback": "/oauth/callback",
            "refresh": "/oauth/refresh/{destination_id}",
            "revoke": "/oauth/revoke/{destination_id}"
        }
    }
