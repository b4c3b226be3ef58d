"""
Error taxonomy and the response envelope

Every response, success or failure, is shaped as
{"success": bool, "message": str, "data": any, "statusCode": int}.
"""
import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, data: Any = None):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class AuthError(AppError):
    status_code = 401
    default_message = "Not authorized to access this route"


class AuthorizationError(AppError):
    status_code = 403
    default_message = "Not authorized to access this route"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Resource already exists"


class RateLimitError(AppError):
    status_code = 429
    default_message = "Too many requests from this IP, please try again later"


class InternalError(AppError):
    status_code = 500


def api_response(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    body = {
        "success": status_code < 400,
        "message": message,
        "data": jsonable_encoder(data),
        "statusCode": status_code,
    }
    return JSONResponse(status_code=status_code, content=body)


def error_response(message: str, status_code: int = 500, data: Any = None) -> JSONResponse:
    return api_response(data, message, status_code)


def register_error_handlers(app: FastAPI, production: bool) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc.message, exc.status_code, exc.data)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return error_response("Validation failed", 400, exc.errors())

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code == 401:
            message = "Not authorized to access this route"
        return error_response(message, exc.status_code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        if production:
            return error_response("Something went wrong", 500)
        detail = {
            "error": repr(exc),
            "stack": traceback.format_exception(type(exc), exc, exc.__traceback__),
        }
        return error_response(str(exc) or "Internal Server Error", 500, detail)
