"""
Global error handling middleware.

WHAT: Translate domain exceptions to HTTP responses
WHY: Consistent error bodies with status codes a client can act on
HOW: FastAPI exception handlers keyed on the exception taxonomy
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from datetime import datetime

from ..core.config import settings
from ..utils.exceptions import (
    MarketplaceException,
    NotFoundError,
    NotAuthorizedError,
    InvalidStateError,
    InvalidAmountError,
    SelfDealingError,
    VersionConflictError,
    ValidationError,
    UnavailableError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Checked in order; first match wins
STATUS_CODES = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (NotAuthorizedError, status.HTTP_403_FORBIDDEN),
    (VersionConflictError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (InvalidAmountError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (SelfDealingError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (UnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_code_for(exc: MarketplaceException) -> int:
    for exc_type, code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """
    Handle FastAPI RequestValidationError.

    WHAT: Request validation failed
    WHY: Invalid request payload
    HOW: Return 400 with field errors
    """
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

    # Clean up error details to be JSON serializable
    cleaned_errors = []
    for error in exc.errors():
        cleaned_error = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "input": error.get("input")
        }
        if "ctx" in error:
            cleaned_error["ctx"] = {
                k: str(v) if isinstance(v, Exception) else v
                for k, v in error["ctx"].items()
            }
        cleaned_errors.append(cleaned_error)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": cleaned_errors,
            "timestamp": datetime.now().isoformat()
        }
    )


async def marketplace_exception_handler(request: Request, exc: MarketplaceException):
    """
    Handle domain exceptions.

    WHAT: Rejected offer/transaction operation
    WHY: The client needs the failed precondition and whether a retry can help
    HOW: Status code from the taxonomy; Retry-After on unavailable store
    """
    status_code = status_code_for(exc)
    headers = None
    if isinstance(exc, UnavailableError):
        headers = {"Retry-After": str(max(1, int(settings.DB_BUSY_TIMEOUT_SECONDS)))}

    logger.warning(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={
            **exc.to_dict(),
            "retryable": exc.retryable,
            "timestamp": datetime.now().isoformat()
        },
        headers=headers,
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app.

    Args:
        app: FastAPI application instance
    """
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(MarketplaceException, marketplace_exception_handler)

    logger.info("Exception handlers registered")
