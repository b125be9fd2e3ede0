"""
Exception handlers producing the standard error body.

``{"error": <reason phrase>, "message": <detail>, "statusCode": <code>}``

4xx errors and 503s pass through unchanged; anything else is logged and
replaced with a generic 500 so internal details never reach clients.
"""

from __future__ import annotations

import contextlib
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from .responses import NegotiatedResponse, error_body

logger = logging.getLogger(__name__)

GENERIC_500 = "Internal Server Error"
DATABASE_ERROR_MESSAGE = "Unable to return result(s) from database"


class DatabaseQueryError(StarletteHTTPException):
    """Raised by route handlers when a database call fails.

    The underlying error is logged where it is caught; clients only see
    the fixed message.
    """

    def __init__(self) -> None:
        super().__init__(status_code=500, detail=DATABASE_ERROR_MESSAGE)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Bad Request"
    first = errors[0]
    loc = "/".join(str(p) for p in first.get("loc", ()))
    msg = first.get("msg", "is invalid")
    return f"{loc} {msg}".strip()


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    status = exc.status_code
    if status >= 500 and status != 503 and not isinstance(exc, DatabaseQueryError):
        logger.error("HTTP %s on %s %s: %s", status, request.method, request.url.path, exc.detail)
        return NegotiatedResponse(
            error_body(500, GENERIC_500), request=request, status_code=500
        )
    if status == 404 and exc.detail == "Not Found":
        message = f"Route {request.method}:{request.url.path} not found"
    else:
        message = str(exc.detail)
    return NegotiatedResponse(
        error_body(status, message),
        request=request,
        status_code=status,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return NegotiatedResponse(
        error_body(400, _validation_message(exc)), request=request, status_code=400
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return NegotiatedResponse(error_body(500, GENERIC_500), request=request, status_code=500)


class UnhandledErrorMiddleware(BaseHTTPMiddleware):
    """Answers uncaught route errors with the generic 500.

    Installed innermost, so the response still passes through the header,
    rate limit and request logging middleware.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:  # noqa: BLE001
            return await unhandled_exception_handler(request, exc)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


@contextlib.asynccontextmanager
async def database_errors(action: str):
    """Translate database failures inside the block into DatabaseQueryError."""
    try:
        yield
    except StarletteHTTPException:
        raise
    except Exception as e:  # noqa: BLE001
        logger.exception("Database error while %s", action)
        raise DatabaseQueryError() from e
