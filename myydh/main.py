"""
Application assembly.

``create_app`` wires settings, the database, authenticators, middleware and
the three route groups:

- public: healthcheck and API docs
- bearer secured: ``/documents`` and ``/preferences`` (per-route flag)
- basic secured: ``/admin/access`` and ``/admin/metrics``
"""

from __future__ import annotations

import contextvars
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from . import __version__
from .api import admin, documents, preferences
from .api.dependencies import require_acceptable, require_admin
from .api.errors import UnhandledErrorMiddleware, register_exception_handlers
from .config.models import Settings
from .database import Database
from .identity.auth import BasicAuthGate, BearerTokenAuthenticator
from .monitoring.metrics import request_duration
from .monitoring.pressure import LoadSheddingMiddleware, PressureMonitor
from .security.headers import SecurityHeadersMiddleware
from .security.rate_limit import RateLimiter, RateLimiterBackend, RateLimitMiddleware

trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="system")

logger = logging.getLogger("myydh")


class AddTraceIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "trace_id"):
            record.trace_id = trace_id_var.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - trace_id=%(trace_id)s - %(message)s",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, AddTraceIdFilter) for f in handler.filters):
            handler.addFilter(AddTraceIdFilter())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a trace id to each request and logs its outcome.

    Headers are not logged, so credentials never reach the log.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
        token = trace_id_var.set(trace_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - start
            request_duration.labels(request.method, str(response.status_code)).observe(elapsed)
            logger.info(
                "%s %s -> %s (%.1f ms)",
                request.method,
                request.url.path,
                response.status_code,
                elapsed * 1000,
            )
            response.headers["x-trace-id"] = trace_id
            return response
        finally:
            trace_id_var.reset(token)


def create_app(
    settings: Settings,
    db: Optional[Database] = None,
    monitor: Optional[PressureMonitor] = None,
    rate_backend: Optional[RateLimiterBackend] = None,
) -> FastAPI:
    """Build the application from validated settings.

    ``db``, ``monitor`` and ``rate_backend`` default to the production
    implementations and are injectable for tests.
    """
    database = db or Database.from_settings(settings.database)
    pressure = monitor or PressureMonitor(settings.process_load)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("MyYDH CRUD API starting")
        pressure.start()
        yield
        await pressure.stop()
        await database.close()
        logger.info("MyYDH CRUD API shut down")

    app = FastAPI(
        title="MyYDH CRUD API",
        description=(
            "RESTful API supporting CRUD functionality of patient contact "
            "preferences and clinical document metadata."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/docs/openapi.json",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.db = database
    app.state.bearer_authenticator = BearerTokenAuthenticator(
        database, settings.database.tables.bearer_token
    )
    app.state.basic_auth_gate = BasicAuthGate(settings.admin)

    register_exception_handlers(app)

    # Public
    app.include_router(admin.health_router)

    # Bearer secured; whether a route checks tokens is decided per route
    serialized = [Depends(require_acceptable())]
    app.include_router(documents.router, dependencies=serialized)
    app.include_router(preferences.router, dependencies=serialized)

    # Basic secured
    app.include_router(admin.access_router, dependencies=serialized + [Depends(require_admin)])
    app.include_router(admin.metrics_router, dependencies=[Depends(require_admin)])

    # Middleware: the last added runs first
    app.add_middleware(UnhandledErrorMiddleware)
    cors = settings.cors
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors.allow_origins(),
        allow_credentials=cors.allow_credentials,
        allow_methods=["GET", "PUT", "POST", "DELETE"],
        allow_headers=(
            [h.strip() for h in cors.allowed_headers.split(",")] if cors.allowed_headers else ["*"]
        ),
        expose_headers=(
            [h.strip() for h in cors.exposed_headers.split(",")] if cors.exposed_headers else []
        ),
        max_age=cors.max_age or 600,
    )
    app.add_middleware(LoadSheddingMiddleware, monitor=pressure)
    app.add_middleware(
        RateLimitMiddleware, limiter=RateLimiter(settings.rate_limit, backend=rate_backend)
    )
    app.add_middleware(SecurityHeadersMiddleware, cacheable_prefixes=("/docs",))
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(RequestContextMiddleware)

    logger.info(
        "Configured for %s; bearer token auth %s",
        settings.database.client,
        "enabled" if settings.bearer_token_auth_enabled else "disabled",
    )
    return app
