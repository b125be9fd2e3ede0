from __future__ import annotations

from typing import Iterable

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

SECURITY_HEADERS = {
    "x-content-type-options": "nosniff",
    "x-frame-options": "SAMEORIGIN",
    "x-dns-prefetch-control": "off",
    "x-download-options": "noopen",
    "x-permitted-cross-domain-policies": "none",
    "referrer-policy": "no-referrer",
    "strict-transport-security": "max-age=31536000; includeSubDomains",
    # Opt out of FLoC
    "permissions-policy": "interest-cohort=()",
}

NO_CACHE_HEADERS = {
    "cache-control": "no-store, max-age=0, must-revalidate",
    "pragma": "no-cache",
    "expires": "0",
    "surrogate-control": "no-store",
}

DEFAULT_CSP = "default-src 'self';frame-ancestors 'none'"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security and cache-disabling headers to every response.

    Paths under ``cacheable_prefixes`` (documentation) keep their own
    caching and content security policy.
    """

    def __init__(self, app: ASGIApp, cacheable_prefixes: Iterable[str] = ()):
        super().__init__(app)
        self.cacheable_prefixes = tuple(cacheable_prefixes)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for k, v in SECURITY_HEADERS.items():
            response.headers.setdefault(k, v)

        if request.url.path.startswith(self.cacheable_prefixes):
            return response

        for k, v in NO_CACHE_HEADERS.items():
            response.headers[k] = v
        content_type = response.headers.get("content-type", "")
        if "html" not in content_type and "xml" not in content_type:
            response.headers["content-security-policy"] = DEFAULT_CSP
        return response
