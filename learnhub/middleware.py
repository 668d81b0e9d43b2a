"""
HTTP middleware: security headers and per-client rate limiting.
"""

from __future__ import annotations

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from learnhub.ratelimit import RateLimiter

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "X-DNS-Prefetch-Control": "off",
}
HSTS_VALUE = "max-age=15552000; includeSubDomains"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, *, hsts: bool = False):
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if self.hsts:
            response.headers.setdefault("Strict-Transport-Security", HSTS_VALUE)
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Limits requests under ``prefix`` per client address. Exempt paths (the
    health probe, Stripe's webhook deliveries) are never counted.
    """

    def __init__(
        self,
        app,
        *,
        limiter: RateLimiter,
        prefix: str = "/api",
        exempt_paths: tuple[str, ...] = (),
    ):
        super().__init__(app)
        self.limiter = limiter
        self.prefix = prefix
        self.exempt_paths = frozenset(exempt_paths)

    def _applies_to(self, path: str) -> bool:
        in_prefix = path == self.prefix or path.startswith(self.prefix + "/")
        return in_prefix and path not in self.exempt_paths

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS" or not self._applies_to(request.url.path):
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        result = await run_in_threadpool(self.limiter.hit, client)
        if not result.allowed:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests, please try again later."},
                headers={
                    "Retry-After": str(result.reset_after),
                    "RateLimit-Limit": str(result.limit),
                    "RateLimit-Remaining": "0",
                    "RateLimit-Reset": str(result.reset_after),
                },
            )
        response = await call_next(request)
        response.headers["RateLimit-Limit"] = str(result.limit)
        response.headers["RateLimit-Remaining"] = str(result.remaining)
        response.headers["RateLimit-Reset"] = str(result.reset_after)
        return response
