"""
Exception handlers for FastAPI.

Centralized exception handling with structured error responses and logging.
"""
import logging
import uuid
from typing import Any, Dict

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from ciliosclick.core.config import get_settings
from ciliosclick.core.exceptions import (
    CiliosClickError,
    PoolExhaustedError,
    SignatureInvalidError,
    StorageUnavailableError,
)

settings = get_settings()
logger = logging.getLogger(__name__)


def get_trace_id(request: Request) -> str:
    """
    Extract trace ID from request headers or generate one.

    Args:
        request: FastAPI request object

    Returns:
        Trace ID string
    """
    trace_id = (
        request.headers.get("X-Trace-Id")
        or request.headers.get("X-Request-Id")
        or request.headers.get("X-Correlation-Id")
    )

    if not trace_id:
        trace_id = str(uuid.uuid4())

    return trace_id


def _error_response(
    exc: CiliosClickError,
    trace_id: str,
    headers: Dict[str, str] = None,
) -> JSONResponse:
    response_data = exc.to_dict()
    response_data["error"]["trace_id"] = trace_id
    return JSONResponse(
        status_code=exc.status_code,
        content=response_data,
        headers={"X-Trace-Id": trace_id, **(headers or {})},
    )


async def ciliosclick_error_handler(
    request: Request,
    exc: CiliosClickError,
) -> JSONResponse:
    """
    Handle CiliosClickError exceptions.

    Args:
        request: FastAPI request object
        exc: CiliosClickError exception

    Returns:
        JSONResponse with error details
    """
    trace_id = get_trace_id(request)

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{exc.error_code} - {exc.detail}",
        extra={
            "trace_id": trace_id,
            "error_code": exc.error_code,
            "status_code": exc.status_code,
            "context": exc.context,
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=settings.DEBUG,  # Include traceback only in debug mode
    )

    return _error_response(exc, trace_id)


async def signature_invalid_handler(
    request: Request,
    exc: SignatureInvalidError,
) -> JSONResponse:
    """Handle rejected webhook deliveries without echoing header values."""
    trace_id = get_trace_id(request)

    logger.warning(
        f"Rejected webhook delivery: {exc.detail}",
        extra={
            "trace_id": trace_id,
            "error_code": exc.error_code,
            "path": request.url.path,
            "client": request.client.host if request.client else None,
        },
    )

    return _error_response(exc, trace_id)


async def pool_exhausted_handler(
    request: Request,
    exc: PoolExhaustedError,
) -> JSONResponse:
    """Handle PoolExhaustedError raised outside the webhook boundary."""
    trace_id = get_trace_id(request)

    logger.critical(
        f"Account pool exhausted: {exc.detail}",
        extra={
            "trace_id": trace_id,
            "error_code": exc.error_code,
            "context": exc.context,
            "path": request.url.path,
        },
    )

    return _error_response(exc, trace_id)


async def storage_unavailable_handler(
    request: Request,
    exc: StorageUnavailableError,
) -> JSONResponse:
    """Handle StorageUnavailableError with a Retry-After hint."""
    trace_id = get_trace_id(request)

    logger.error(
        f"Storage unavailable: {exc.detail}",
        extra={
            "trace_id": trace_id,
            "error_code": exc.error_code,
            "context": exc.context,
            "path": request.url.path,
            "method": request.method,
        },
    )

    headers = {}
    retry_after = exc.context.get("retry_after")
    if retry_after:
        headers["Retry-After"] = str(int(retry_after))

    return _error_response(exc, trace_id, headers)


async def validation_error_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle Pydantic validation errors from FastAPI.

    Args:
        request: FastAPI request object
        exc: RequestValidationError exception

    Returns:
        JSONResponse with validation error details
    """
    trace_id = get_trace_id(request)

    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error.get("loc", []))
        errors.append({
            "field": field,
            "message": error.get("msg"),
            "type": error.get("type"),
        })

    logger.warning(
        f"Validation error: {len(errors)} field(s) failed validation",
        extra={
            "trace_id": trace_id,
            "errors": errors,
            "path": request.url.path,
            "method": request.method,
        },
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "errors": errors,
                "trace_id": trace_id,
            }
        },
        headers={"X-Trace-Id": trace_id},
    )


async def pydantic_validation_error_handler(
    request: Request,
    exc: PydanticValidationError,
) -> JSONResponse:
    """
    Handle Pydantic ValidationError (from model validation).

    Args:
        request: FastAPI request object
        exc: Pydantic ValidationError

    Returns:
        JSONResponse with validation error details
    """
    trace_id = get_trace_id(request)

    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error.get("loc", []))
        errors.append({
            "field": field,
            "message": error.get("msg"),
            "type": error.get("type"),
        })

    logger.warning(
        f"Pydantic validation error: {len(errors)} field(s) failed validation",
        extra={
            "trace_id": trace_id,
            "errors": errors,
            "path": request.url.path,
            "method": request.method,
        },
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Model validation failed",
                "errors": errors,
                "trace_id": trace_id,
            }
        },
        headers={"X-Trace-Id": trace_id},
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Handle unexpected exceptions.

    Args:
        request: FastAPI request object
        exc: Exception

    Returns:
        JSONResponse with generic error message
    """
    trace_id = get_trace_id(request)

    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {str(exc)}",
        extra={
            "trace_id": trace_id,
            "exception_type": type(exc).__name__,
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=True,  # Always include traceback for unhandled exceptions
    )

    error_detail = str(exc) if settings.DEBUG else "An internal error occurred"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_SERVER_ERROR",
                "message": error_detail,
                "trace_id": trace_id,
            }
        },
        headers={"X-Trace-Id": trace_id},
    )


# Exception handler mapping
EXCEPTION_HANDLERS: Dict[Any, Any] = {
    CiliosClickError: ciliosclick_error_handler,
    SignatureInvalidError: signature_invalid_handler,
    PoolExhaustedError: pool_exhausted_handler,
    StorageUnavailableError: storage_unavailable_handler,
    # FastAPI/Pydantic exceptions
    RequestValidationError: validation_error_handler,
    PydanticValidationError: pydantic_validation_error_handler,
    # Generic exception (must be last)
    Exception: generic_exception_handler,
}
