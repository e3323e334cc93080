from __future__ import annotations

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else "unknown"


def _json_error(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: object = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "details": details,
            "request_id": _request_id(request),
        },
    )


def _printable(value):
    """Make validation error context JSON-safe (raw bodies arrive as bytes)."""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {key: _printable(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_printable(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def register_error_handlers(app) -> None:
    """Render every error as ``{code, message, details, request_id}``."""

    # FastAPI's HTTPException subclasses Starlette's; one handler covers both.
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        if isinstance(detail, dict):
            return _json_error(
                request,
                exc.status_code,
                detail.get("code", f"http_{exc.status_code}"),
                detail.get("message", "Request failed"),
                detail.get("details"),
            )
        if isinstance(detail, str) and detail:
            return _json_error(request, exc.status_code, f"http_{exc.status_code}", detail)
        return _json_error(
            request, exc.status_code, f"http_{exc.status_code}", "Request failed", detail
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            error = dict(error)
            for key in ("input", "ctx"):
                if key in error:
                    error[key] = _printable(error[key])
            errors.append(error)
        return _json_error(request, 422, "validation_error", "Validation error", errors)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            f"Unhandled exception on {request.method} {request.url.path} "
            f"(request {_request_id(request)})"
        )
        return _json_error(request, 500, "internal_error", "Internal server error")
