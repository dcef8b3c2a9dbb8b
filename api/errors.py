"""
API error envelope.

Every failure leaves the API as
    {"success": false, "error": {"code": ..., "message": ..., "details": ...}}
with `details` only when the app runs in debug mode.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.settings import get_settings
from facebook.graph import FacebookAPIError
from models.schemas import ErrorCode

logger = structlog.get_logger()


class AppError(Exception):
    """An expected API failure with an HTTP status and a machine-readable code."""

    def __init__(self, status_code: int, message: str,
                 code: str = ErrorCode.INTERNAL_ERROR, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details


def not_found(message: str, code: str = ErrorCode.NOT_FOUND) -> AppError:
    return AppError(404, message, code)


def bad_request(message: str, code: str = ErrorCode.VALIDATION_ERROR) -> AppError:
    return AppError(400, message, code)


def error_response(status_code: int, code: str, message: str,
                   details: Optional[Any] = None) -> JSONResponse:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None and get_settings().debug:
        error["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


_STATUS_CODES = {
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.UNAUTHORIZED,
    404: ErrorCode.NOT_FOUND,
}


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("api_error", path=request.url.path, method=request.method,
            status=exc.status_code, code=exc.code, message=exc.message)
        return error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        logger.info("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
        return error_response(400, ErrorCode.VALIDATION_ERROR, "Validation error", exc.errors())

    @app.exception_handler(FacebookAPIError)
    async def _facebook_error(request: Request, exc: FacebookAPIError):
        logger.warning("facebook_api_error", path=request.url.path, error=exc.message)
        return error_response(400, ErrorCode.FACEBOOK_API_ERROR, exc.message, exc.payload or None)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        code = _STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
        return error_response(exc.status_code, code, str(exc.detail))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, method=request.method,
                     error=str(exc), exc_info=True)
        return error_response(500, ErrorCode.INTERNAL_ERROR, "Internal server error", str(exc))
