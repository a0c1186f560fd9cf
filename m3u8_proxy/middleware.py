"""Request/response decoration shared by every route."""

import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from m3u8_proxy.config import CLOUDFLARE_HEADERS, settings

logger = logging.getLogger(__name__)

API_KEY_HEADER_NAME = "X-API-Key"
API_KEY_QUERY_NAME = "api_key"

# Reachable without an API key
PUBLIC_PATH_PREFIXES = ("/proxy", "/hello", "/health")


class CORSPreflightMiddleware(BaseHTTPMiddleware):
    """Answers CORS preflights and tags every response with an allowed origin."""

    def _allow_origin(self, request: Request) -> str:
        allowed = settings.allowed_origins_list
        if not allowed:
            return "*"
        origin = request.headers.get("Origin", "")
        return origin if origin in allowed else allowed[0]

    async def dispatch(self, request: Request, call_next):
        allow_origin = self._allow_origin(request)

        if request.method == "OPTIONS":
            return Response(
                status_code=204,
                headers={
                    "Access-Control-Allow-Origin": allow_origin,
                    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
                    "Access-Control-Allow-Headers": (
                        "Origin, Range, Accept-Encoding, Referer, Cache-Control, X-Requested-With, Content-Type"
                    ),
                    "Access-Control-Expose-Headers": "Server, Content-Length, Content-Range, Date",
                    "Access-Control-Max-Age": "86400",
                },
            )

        response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = allow_origin
        if allow_origin != "*":
            response.headers["Vary"] = "Origin"
        return response


class CacheControlMiddleware(BaseHTTPMiddleware):
    """Strips Cloudflare diagnostics and marks successful responses as cacheable."""

    async def dispatch(self, request: Request, call_next):
        # Starlette headers are immutable, so filter the raw ASGI headers instead
        blocked = {name.lower().encode("latin-1") for name in CLOUDFLARE_HEADERS}
        blocked.add(b"cache-control")
        request.scope["headers"] = [(k, v) for k, v in request.scope["headers"] if k.lower() not in blocked]

        response = await call_next(request)

        for header in CLOUDFLARE_HEADERS:
            if header in response.headers:
                del response.headers[header]

        if 200 <= response.status_code < 300:
            response.headers["Cache-Control"] = f"public, max-age={settings.cache_max_age_seconds}"

        return response


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Requires the configured API key on every endpoint except the proxy and health routes."""

    async def dispatch(self, request: Request, call_next):
        api_key = settings.api_key

        if not api_key or request.method == "OPTIONS" or request.url.path.startswith(PUBLIC_PATH_PREFIXES):
            return await call_next(request)

        if request.headers.get(API_KEY_HEADER_NAME) == api_key:
            return await call_next(request)

        if request.query_params.get(API_KEY_QUERY_NAME) == api_key:
            return await call_next(request)

        logger.warning(f"Rejected request without valid API key: {request.url.path}")
        return JSONResponse(
            status_code=401,
            content={
                "message": "API Key is missing or invalid",
                "details": (
                    f"Please provide a valid API key either in the {API_KEY_HEADER_NAME} header "
                    f"or as an {API_KEY_QUERY_NAME} query parameter"
                ),
            },
        )
