"""
Error Translation - Maps domain exceptions to HTTP responses.

Every AppraisalError leaves the API as
``{"error": <kind>, "detail": <message>, "guidance": <next step or null>}``.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from structlog import get_logger

from app.exceptions import (
    AccountNotFoundError,
    AppraisalError,
    EntitlementDenied,
    InvalidTransitionError,
    ParseError,
    RequestNotFoundError,
    StorageError,
    TransportError,
    ValidationError,
)
from app.models.api import ErrorResponse
from app.observability import metrics

logger = get_logger(__name__)

ERROR_STATUS: dict[type[AppraisalError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    EntitlementDenied: status.HTTP_402_PAYMENT_REQUIRED,
    TransportError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ParseError: status.HTTP_502_BAD_GATEWAY,
    StorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
    RequestNotFoundError: status.HTTP_404_NOT_FOUND,
    AccountNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
}

PARSE_GUIDANCE = (
    "We couldn't read a valuation from the analysis. "
    "Try again with more photos or a more detailed description."
)
TRANSPORT_GUIDANCE = "The valuation service is temporarily unavailable. Please try again shortly."
STORAGE_GUIDANCE = "We couldn't save your request. Please try again shortly."


def status_for(exc: AppraisalError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]  # type: ignore[index]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(exc: AppraisalError) -> ErrorResponse:
    """User-visible body for a domain error."""
    if isinstance(exc, EntitlementDenied):
        return ErrorResponse(error=exc.kind, detail=exc.reason, guidance=exc.guidance)
    if isinstance(exc, ValidationError):
        return ErrorResponse(error=exc.kind, detail=exc.message)
    if isinstance(exc, ParseError):
        return ErrorResponse(error=exc.kind, detail=exc.message, guidance=PARSE_GUIDANCE)
    if isinstance(exc, TransportError):
        return ErrorResponse(error=exc.kind, detail=exc.message, guidance=TRANSPORT_GUIDANCE)
    if isinstance(exc, StorageError):
        return ErrorResponse(error=exc.kind, detail=exc.message, guidance=STORAGE_GUIDANCE)
    return ErrorResponse(error=exc.kind, detail=str(exc))


async def appraisal_error_handler(request: Request, exc: AppraisalError) -> JSONResponse:
    """Exception handler registered on the app for AppraisalError."""
    status_code = status_for(exc)
    metrics.record_error(exc.kind, request.url.path)

    log = logger.error if status_code >= 500 else logger.info
    log(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        error=exc.kind,
        status_code=status_code,
        detail=str(exc),
    )
    return JSONResponse(status_code=status_code, content=error_body(exc).model_dump())
