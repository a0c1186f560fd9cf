"""Main FastAPI application for the M3U8 rewriting proxy."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncGenerator, AsyncIterator
from urllib.parse import quote, urlparse

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse

from m3u8_proxy.cipher import get_cipher
from m3u8_proxy.config import settings
from m3u8_proxy.exceptions import UpstreamStatusError, UpstreamUnavailableError
from m3u8_proxy.gatekeeper import Gatekeeper, decode_proxy_path
from m3u8_proxy.m3u8_rewriter import M3U8Rewriter
from m3u8_proxy.middleware import APIKeyMiddleware, CacheControlMiddleware, CORSPreflightMiddleware
from m3u8_proxy.models import FetchContext, HealthResponse, ProxyTarget
from m3u8_proxy.output_cache import playlist_cache

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"

PLAYLIST_ROUTE = "/proxy/m3u8/"
RESOURCE_ROUTE = "/proxy/"
PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"

CACHE_CLEANUP_INTERVAL_SECONDS = 30

# Upstream response headers passed through on resource requests
FORWARDED_RESPONSE_HEADERS = (
    "Content-Type",
    "Content-Length",
    "Content-Range",
    "Content-Encoding",
    "Accept-Ranges",
    "Last-Modified",
    "ETag",
)

# Global HTTP client for origin requests
http_client: httpx.AsyncClient | None = None

# Process-wide URL cipher, None when no encryption key is configured
cipher = get_cipher()


async def _cleanup_cache_periodically() -> None:
    """Drop expired playlists so the cache does not grow without bound."""
    while True:
        await asyncio.sleep(CACHE_CLEANUP_INTERVAL_SECONDS)
        removed = playlist_cache.cleanup_expired()
        if removed:
            logger.debug(f"Removed {removed} expired playlists from cache")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan (startup and shutdown)."""
    global http_client

    # Startup
    logger.info("Starting M3U8 Proxy")
    http_client = httpx.AsyncClient(
        limits=httpx.Limits(
            max_keepalive_connections=settings.http_max_keepalive_connections,
            max_connections=settings.http_max_connections,
        ),
        timeout=httpx.Timeout(settings.http_timeout_seconds),
        follow_redirects=True,
    )
    logger.info(f"HTTP client initialized with timeout={settings.http_timeout_seconds}s")
    if cipher is None:
        logger.info("URL encryption disabled: no encryption key configured")
    cleanup_task = asyncio.create_task(_cleanup_cache_periodically())

    yield

    # Shutdown
    logger.info("Shutting down M3U8 Proxy")
    cleanup_task.cancel()
    with suppress(asyncio.CancelledError):
        await cleanup_task
    if http_client:
        await http_client.aclose()
        logger.info("HTTP client closed")


# Initialize FastAPI app
app = FastAPI(
    title="M3U8 Proxy",
    description="Proxy that rewrites HLS playlists so every segment, key and variant is fetched through it",
    version=VERSION,
    lifespan=lifespan,
)

# Last added runs first: CORS answers preflights before the API key check
app.add_middleware(CacheControlMiddleware)
app.add_middleware(APIKeyMiddleware)
app.add_middleware(CORSPreflightMiddleware)


def _raw_remainder(request: Request, route_prefix: str) -> str:
    """
    Return the still percent-encoded path after the route prefix.

    The decoded path cannot be used: an encoded target contains %2F, which
    would be indistinguishable from the separator before the params segment.
    """
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    path = path.split("?", 1)[0]
    if not path.startswith(route_prefix):
        return ""
    return path[len(route_prefix):]


def _capture_query(target_url: str, request_query: str) -> str:
    """Pick the query string that gets carried onto every rewritten URI."""
    target_query = urlparse(target_url).query
    if target_query:
        return f"?{target_query}"
    if request_query:
        return f"?{request_query}"
    return ""


def _upstream_headers(request: Request, target: ProxyTarget) -> dict[str, str]:
    """Build headers for the origin request."""
    headers = {
        "User-Agent": request.headers.get("User-Agent", "M3U8Proxy/1.0"),
    }
    if target.referer:
        headers["Referer"] = target.referer
        headers["Origin"] = target.referer.rstrip("/")

    # Forward Range header for byte-range requests (required for #EXT-X-BYTERANGE)
    if "Range" in request.headers:
        headers["Range"] = request.headers["Range"]
    return headers


def _get_http_client() -> httpx.AsyncClient:
    if http_client is None:
        raise RuntimeError("HTTP client is not initialized")
    return http_client


def _build_context(request: Request, target: ProxyTarget, playlist_url: str) -> FetchContext:
    """Derive prefix, suffix, query and encryption for one playlist rewrite."""
    proxy_base_url = str(request.base_url).rstrip("/")

    suffix = ""
    if target.params:
        suffix = "/" + quote(json.dumps(target.params), safe="")

    return FetchContext(
        base_url=playlist_url,
        prefix=f"{proxy_base_url}{RESOURCE_ROUTE}",
        playlist_prefix=f"{proxy_base_url}{PLAYLIST_ROUTE}",
        suffix=suffix,
        encrypt=cipher is not None and (settings.encrypt_urls or target.encrypted),
        query=_capture_query(target.url, request.url.query),
    )


@app.api_route(
    "/proxy/m3u8/{path:path}",
    methods=["GET", "HEAD"],
    summary="Proxy HLS playlist",
    description="Fetch a playlist from the origin and rewrite every URI to go through this proxy",
)
async def proxy_playlist(request: Request, path: str) -> Response:
    """
    Fetch and rewrite an M3U8 playlist.

    This endpoint:
    1. Decodes the target URL (and optional JSON params) from the path
    2. Serves a recently rewritten copy when one is cached
    3. Gatekeeps the target (extension, then content-type probe)
    4. Fetches the playlist from the origin
    5. Rewrites segment, variant and attribute URIs to point back at the proxy
    """
    target = decode_proxy_path(_raw_remainder(request, PLAYLIST_ROUTE), cipher)
    # Rewritten URIs embed the proxy base URL
    cache_key = f"{request.base_url}|{request.url.path}?{request.url.query}"

    cached = playlist_cache.get(cache_key)
    if cached is not None:
        logger.debug(f"[PROXY] Playlist cache hit: {target.url}")
        return Response(content=cached.content, media_type=cached.media_type)

    client = _get_http_client()
    await Gatekeeper(client, settings.probe_timeout_seconds).enforce(target)

    logger.info(f"[PROXY] Fetching playlist: url={target.url}, encrypted_target={target.encrypted}")
    try:
        upstream = await client.get(target.url, headers=_upstream_headers(request, target))
    except httpx.TimeoutException:
        logger.error(f"Timeout fetching playlist: {target.url}")
        raise UpstreamUnavailableError(target.url, "timeout")
    except httpx.HTTPError as e:
        logger.error(f"HTTP error fetching playlist: {target.url}: {e}")
        raise UpstreamUnavailableError(target.url, str(e))

    if upstream.status_code >= 400:
        logger.error(f"[PROXY] Origin error: status={upstream.status_code}, url={target.url}")
        raise UpstreamStatusError(target.url, upstream.status_code)

    manifest_text = upstream.text
    logger.debug(f"[PROXY] Manifest preview (first 200 chars): {manifest_text[:200]}")

    # Relative URIs resolve against the final URL after redirects
    context = _build_context(request, target, str(upstream.url))
    rewriter = M3U8Rewriter(context, cipher=cipher, key_scan_depth=settings.key_scan_depth)
    rewritten_manifest = rewriter.rewrite_manifest(manifest_text)
    logger.info(f"[PROXY] Manifest rewritten: {len(rewritten_manifest)} bytes, url={target.url}")

    playlist_cache.put(cache_key, rewritten_manifest, PLAYLIST_MEDIA_TYPE)
    return Response(content=rewritten_manifest, media_type=PLAYLIST_MEDIA_TYPE)


async def _stream_body(upstream: httpx.Response, url: str) -> AsyncIterator[bytes]:
    """Relay the origin body, always closing the upstream response."""
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        # Headers are already sent; the client sees a truncated body
        logger.warning(f"[PROXY] Upstream stream interrupted: {url}: {e}")
    finally:
        await upstream.aclose()


@app.api_route(
    "/proxy/{path:path}",
    methods=["GET", "HEAD"],
    summary="Proxy HLS resource",
    description="Stream a segment, key, subtitle or other HLS resource from the origin",
)
async def proxy_resource(request: Request, path: str) -> Response:
    """Gatekeep and stream a non-playlist resource through unchanged."""
    target = decode_proxy_path(_raw_remainder(request, RESOURCE_ROUTE), cipher)

    client = _get_http_client()
    await Gatekeeper(client, settings.probe_timeout_seconds).enforce(target)

    logger.info(f"[PROXY] Forwarding: method={request.method}, url={target.url}")
    upstream_request = client.build_request(
        request.method,
        target.url,
        headers=_upstream_headers(request, target),
    )
    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.TimeoutException:
        logger.error(f"Timeout fetching resource: {target.url}")
        raise UpstreamUnavailableError(target.url, "timeout")
    except httpx.HTTPError as e:
        logger.error(f"HTTP error fetching resource: {target.url}: {e}")
        raise UpstreamUnavailableError(target.url, str(e))

    if upstream.status_code >= 400:
        await upstream.aclose()
        logger.error(f"[PROXY] Origin error: status={upstream.status_code}, url={target.url}")
        raise UpstreamStatusError(target.url, upstream.status_code)

    response_headers = {
        name: upstream.headers[name] for name in FORWARDED_RESPONSE_HEADERS if name in upstream.headers
    }
    return StreamingResponse(
        _stream_body(upstream, target.url),
        status_code=upstream.status_code,
        headers=response_headers,
    )


@app.get("/hello", include_in_schema=False)
async def hello() -> PlainTextResponse:
    """Liveness probe."""
    return PlainTextResponse(f"M3U8 Proxy is running v{VERSION}")


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint",
)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        cached_playlists=playlist_cache.size(),
        version=VERSION,
    )
