"""
Domain exception -> HTTP response mapping.

Services raise EntitlementError subclasses; this module is the only place
that turns them into status codes.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from entitlement_core.entitlements.errors import (
    DisallowedEventKindError,
    EntitlementError,
    LinkingConflictError,
    NoBillingCustomerError,
    ProviderUnavailableError,
    StaleWriteError,
    TierRequirementError,
    UnknownProductError,
    VerificationError,
)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (VerificationError, status.HTTP_400_BAD_REQUEST),
    (UnknownProductError, status.HTTP_400_BAD_REQUEST),
    (NoBillingCustomerError, status.HTTP_400_BAD_REQUEST),
    (DisallowedEventKindError, status.HTTP_409_CONFLICT),
    (LinkingConflictError, status.HTTP_409_CONFLICT),
    (ProviderUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StaleWriteError, status.HTTP_503_SERVICE_UNAVAILABLE),
]

RETRYABLE_ERRORS = (ProviderUnavailableError, StaleWriteError)


def status_for(exc: EntitlementError) -> int:
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code
    return status.HTTP_400_BAD_REQUEST


async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    if isinstance(exc, TierRequirementError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    status_code = status_for(exc)
    content = {"error": exc.error_code, "detail": exc.message}
    if isinstance(exc, RETRYABLE_ERRORS):
        content["retryable"] = True

    log = logger.warning if status_code < 500 else logger.error
    log(
        "Request rejected",
        extra={"path": request.url.path, "error_code": exc.error_code, "status_code": status_code},
    )
    return JSONResponse(status_code=status_code, content=content)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={"path": request.url.path, "method": request.method, "error": str(exc)},
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EntitlementError, entitlement_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
