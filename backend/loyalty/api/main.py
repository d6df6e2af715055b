"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes the routers and sets
up startup and shutdown events. When run with uvicorn it initialises
the database and loads configuration from ``loyalty.core.config``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from loyalty.api.error_handlers import (
    generic_exception_handler,
    receipt_error_handler,
    validation_exception_handler,
)
from loyalty.api.routes.receipts import router as receipts_router
from loyalty.core.config import is_development, settings
from loyalty.core.database import init_db
from loyalty.core.errors import ReceiptProcessingError
from loyalty.core.observability import init_sentry, sentry_enabled

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    lifespan=lifespan,
)


# Tag Sentry events with the request route
@app.middleware("http")
async def sentry_context_middleware(request: Request, call_next):
    if sentry_enabled():
        scope = sentry_sdk.get_current_scope()
        scope.set_tag("path", request.url.path)
        scope.set_tag("method", request.method)
    return await call_next(request)


# Allow all origins in development, the configured list elsewhere
allow_origins = ["*"] if is_development() else list(dict.fromkeys(settings.BACKEND_CORS_ORIGINS or []))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ReceiptProcessingError, receipt_error_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(receipts_router, prefix=settings.API_PREFIX)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": f"Welcome to the {settings.PROJECT_NAME} API"}


@app.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """Health check endpoint (supports GET & HEAD)."""
    return {"status": "healthy"}
