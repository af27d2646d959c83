from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from fintrack.config import get_settings

logger = structlog.get_logger(__name__)


def error_body(message: str, error=None) -> dict:
    return {"message": message, "error": error}


def describe_validation_errors(errors) -> tuple[str, list[dict]]:
    details = []
    for error in errors:
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(location)
        details.append({"field": field, "message": error.get("msg", "Invalid value.")})
    if not details:
        return "Invalid request.", details
    first = details[0]
    if errors[0].get("type") == "missing":
        return f"Missing required field: {first['field']}", details
    if first["field"]:
        return f"Invalid value for {first['field']}: {first['message']}", details
    return first["message"], details


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message, details = describe_validation_errors(exc.errors())
    return JSONResponse(status_code=400, content=error_body(message, details))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, method=request.method)
    detail = str(exc) if get_settings().is_development else None
    return JSONResponse(status_code=500, content=error_body("Server error", detail))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
