"""
Error values and the terminal error handler.

Stages return an AppError to stop the pipeline; routes may raise one. Either
way it ends up in ErrorHandler.handle, which logs it and renders the JSON error
contract: {"status": "error", "statusCode": int, "message": str, "stack"?: str}.
"""

import logging
import traceback
from http import HTTPStatus

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from models.schemas import ErrorResponse


def status_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


class AppError(Exception):
    """
    Base error value. Carries the HTTP status, a client-facing message and
    optional response headers.
    """

    status_code: int = 500
    kind: str = "unhandled"

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
    ):
        if status_code is not None:
            self.status_code = status_code
        self.message = message or status_phrase(self.status_code)
        self.headers = dict(headers or {})
        super().__init__(self.message)


class NotFoundError(AppError):
    """No route matched the request."""

    status_code = 404
    kind = "not_found"


class BadRequestError(AppError):
    status_code = 400


class UnauthorizedError(AppError):
    status_code = 401

    def __init__(self, message: str | None = None):
        super().__init__(message or "Unauthorized", headers={"WWW-Authenticate": "Bearer"})


class PayloadTooLargeError(AppError):
    status_code = 413

    def __init__(self, limit: int):
        super().__init__("request entity too large")
        self.limit = limit


class UnhandledError(AppError):
    """Wraps any exception that escaped a stage or a route."""

    def __init__(self, cause: BaseException, expose_message: bool = False):
        message = str(cause) if expose_message and str(cause) else None
        super().__init__(message, status_code=500)
        self.__cause__ = cause


def from_http_exception(exc: StarletteHTTPException) -> AppError:
    """Map Starlette/FastAPI HTTP exceptions (router 404, 405, route-raised) to error values."""
    detail = exc.detail if isinstance(exc.detail, str) else None
    if exc.status_code == 404:
        error: AppError = NotFoundError(detail)
    else:
        error = AppError(detail, status_code=exc.status_code)
    if exc.headers:
        error.headers.update(exc.headers)
    return error


def from_validation_error(exc: RequestValidationError) -> AppError:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
    return AppError("; ".join(parts) or "Validation failed", status_code=422)


class ErrorHandler:
    """
    Terminal stage: logs every error centrally and renders it as JSON.
    Stack traces are included only when expose_stack is set (development).
    """

    def __init__(self, logger: logging.Logger, expose_stack: bool = False):
        self.logger = logger
        self.expose_stack = expose_stack

    def handle(self, request: Request, error: BaseException) -> JSONResponse:
        if not isinstance(error, AppError):
            error = UnhandledError(error, expose_message=self.expose_stack)
        self._log(request, error)
        body = ErrorResponse(
            status_code=error.status_code or 500,
            message=error.message,
            stack=self._format_stack(error) if self.expose_stack else None,
        )
        return JSONResponse(
            status_code=body.status_code,
            content=body.to_content(),
            headers=error.headers or None,
        )

    def _log(self, request: Request, error: AppError) -> None:
        extra = {
            "path": request.url.path,
            "method": request.method,
            "status_code": error.status_code,
            "error_kind": error.kind,
            "error": error.message,
        }
        if error.status_code >= 500:
            source = error.__cause__ or error
            self.logger.error(
                "unhandled_error",
                extra=extra,
                exc_info=(type(source), source, source.__traceback__),
            )
        else:
            self.logger.warning("request_error", extra=extra)

    @staticmethod
    def _format_stack(error: AppError) -> str:
        source = error.__cause__ or error
        return "".join(traceback.format_exception(source))


def register_exception_handlers(app: FastAPI, handler: ErrorHandler) -> None:
    """Route every exception FastAPI catches itself through the same handler."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return handler.handle(request, from_http_exception(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return handler.handle(request, from_validation_error(exc))

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return handler.handle(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return handler.handle(request, exc)
