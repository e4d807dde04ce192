"""Structured error responses for cradle exceptions."""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog
from ..errors import InvalidInputError, ValidationError, WriteFailedError

log = structlog.get_logger()


def _error_body(request: Request, error: str, message: str, **extra) -> dict:
    return {
        "error": error,
        "message": message,
        "request_id": structlog.contextvars.get_contextvars().get("request_id"),
        "path": str(request.url.path),
        **extra,
    }


async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    log.warning("event.invalid", path=request.url.path, errors=len(exc.errors))
    return JSONResponse(
        status_code=422,
        content=_error_body(request, "ValidationError", str(exc), errors=exc.errors),
    )


async def write_failed_handler(request: Request, exc: WriteFailedError) -> JSONResponse:
    log.warning(
        "event.write_failed",
        path=request.url.path,
        owner_id=exc.owner_id,
        correlation_id=exc.correlation_id,
    )
    return JSONResponse(
        status_code=502,
        content=_error_body(
            request,
            "WriteFailedError",
            "The event store rejected the event; it was not recorded and may be retried",
            correlation_id=exc.correlation_id,
        ),
    )


async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
    log.info("prediction.invalid_input", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=422,
        content=_error_body(request, "InvalidInputError", str(exc)),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(WriteFailedError, write_failed_handler)
    app.add_exception_handler(InvalidInputError, invalid_input_handler)
