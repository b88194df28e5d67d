"""
Security Headers Middleware

Adds defensive response headers to everything the API returns. The API
only serves JSON, so the content policy forbids loading anything at all.
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from core.config import settings

# Paths whose responses carry bearers, OTP outcomes or profile data.
NO_STORE_PREFIXES = ("/api/v1/auth", "/api/v1/admin", "/api/v1/subscriptions")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Headers added:
    - X-Content-Type-Options: Prevents MIME type sniffing
    - X-Frame-Options / frame-ancestors: Prevents clickjacking
    - Referrer-Policy: Controls referrer information
    - Cache-Control: no-store on credential and account responses
    - Strict-Transport-Security: Forces HTTPS (production only)
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Cross-Origin-Resource-Policy"] = "same-site"

        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"

        if not settings.DEBUG and settings.ENVIRONMENT == "production":
            # Force HTTPS for 1 year, include subdomains
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response
