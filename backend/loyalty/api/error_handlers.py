"""
Custom exception handlers for FastAPI.
Renders pipeline errors as ``{error, details, receiptId}`` and gives
clear messages for validation and server errors.
"""

import logging

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from loyalty.core.errors import ReceiptProcessingError
from loyalty.core.observability import sentry_capture

logger = logging.getLogger(__name__)


def receipt_error_handler(request: Request, exc: ReceiptProcessingError):
    if exc.status_code >= 500:
        logger.error("[api] %s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.details)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": "Validation error",
            "details": jsonable_encoder(exc.errors()),
            "receiptId": None,
        },
    )


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("[api] unhandled error on %s %s", request.method, request.url.path)
    sentry_capture(exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "details": str(exc),
            "receiptId": None,
        },
    )
