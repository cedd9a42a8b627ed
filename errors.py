"""
Error taxonomy for the API.

Every failure a handler can raise maps onto one of the classes below and is
rendered by the handlers registered in ``register_exception_handlers`` as

    {"message": "...", "stack": "..."}

with ``stack`` only outside production.
"""
import logging
import traceback
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

import config

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    status_code = 400


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 400


class SignatureMismatch(ConflictError):
    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


class AuthorizationError(AppError):
    status_code = 403


class UpstreamError(AppError):
    status_code = 502


def error_body(message: str, exc: Optional[BaseException] = None) -> dict:
    body = {"message": message}
    if not config.is_production():
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)) if exc else None
    return body


def _log(request: Request, status_code: int, message: str, exc: BaseException):
    line = f"{status_code} - {message} - {request.url.path} - {request.method}"
    if status_code >= 500:
        logger.error(line, exc_info=exc)
    else:
        logger.info(line)


async def app_error_handler(request: Request, exc: AppError):
    _log(request, exc.status_code, exc.message, exc)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc))


async def http_exception_handler(request: Request, exc: HTTPException):
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    _log(request, exc.status_code, message, exc)
    return JSONResponse(status_code=exc.status_code, content=error_body(message, exc), headers=exc.headers)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", []) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", "Invalid input"))
    message = "; ".join(parts) or "Invalid input"
    _log(request, 400, message, exc)
    return JSONResponse(status_code=400, content=error_body(message, exc))


async def unhandled_error_handler(request: Request, exc: Exception):
    _log(request, 500, str(exc), exc)
    return JSONResponse(status_code=500, content=error_body(str(exc) or "Internal server error", exc))


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
