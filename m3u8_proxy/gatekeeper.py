"""Admission control for inbound proxy requests."""

import json
import logging
import posixpath
import re
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from m3u8_proxy.cipher import URLCipher
from m3u8_proxy.config import HLS_CONTENT_TYPES, HLS_EXTENSIONS
from m3u8_proxy.exceptions import (
    MalformedTargetError,
    UnsupportedResourceError,
    UpstreamUnavailableError,
)
from m3u8_proxy.models import GateDecision, ProxyTarget

logger = logging.getLogger(__name__)

# Cipher tokens are unpadded URL-safe base64
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def decode_target(raw: str) -> str:
    """
    URL-decode a target, tolerating one extra layer of encoding.

    Upstream redirect chains sometimes encode the target twice. At most two
    passes are made.
    """
    decoded = unquote(raw)
    if "%" in decoded:
        decoded = unquote(decoded)
    return decoded


def parse_params(raw: str) -> dict[str, str]:
    """
    Parse the optional percent-encoded JSON parameter segment.

    Anything that is not a JSON object of strings is ignored.
    """
    if not raw:
        return {}
    try:
        data = json.loads(unquote(raw))
    except ValueError:
        logger.debug(f"Ignoring unparsable proxy params: {raw[:100]}")
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): v for k, v in data.items() if isinstance(v, str)}


def _is_http_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def decode_proxy_path(raw_path: str, cipher: Optional[URLCipher] = None) -> ProxyTarget:
    """
    Decode the part of a proxy path that follows the route prefix.

    Args:
        raw_path: Still percent-encoded "<target>[/<params>]"
        cipher: Cipher used to open encrypted targets, if configured

    Returns:
        ProxyTarget with an absolute URL

    Raises:
        MalformedTargetError: If the target is empty or not an absolute URL
        CipherError: If the target is a cipher token that does not decrypt
    """
    raw_target, _, raw_params = raw_path.lstrip("/").partition("/")
    if not raw_target:
        raise MalformedTargetError("")

    url = decode_target(raw_target)
    encrypted = False

    if cipher is not None and not _is_http_url(url) and TOKEN_PATTERN.match(url):
        url = cipher.decrypt(url)
        encrypted = True

    if not _is_http_url(url):
        raise MalformedTargetError(url)

    return ProxyTarget(url=url, params=parse_params(raw_params.strip("/")), encrypted=encrypted)


def get_extension(url: str) -> str:
    """Return the lower-cased file extension of the URL path, or an empty string."""
    path = urlparse(url).path
    return posixpath.splitext(path)[1].lower()


def normalize_content_type(value: Optional[str]) -> str:
    """Lower-case a Content-Type header and drop its parameters."""
    if not value:
        return ""
    return value.split(";", 1)[0].strip().lower()


class Gatekeeper:
    """Decides whether a proxy target is an HLS resource before it is fetched."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        probe_timeout: float = 5.0,
        extensions: tuple[str, ...] = HLS_EXTENSIONS,
        content_types: tuple[str, ...] = HLS_CONTENT_TYPES,
    ):
        self.http_client = http_client
        self.probe_timeout = probe_timeout
        self.extensions = extensions
        self.content_types = content_types

    async def check(self, target: ProxyTarget) -> GateDecision:
        """
        Check a target against the extension allowlist, probing the origin if needed.

        Args:
            target: Decoded proxy target

        Returns:
            GateDecision; never raises for network failures
        """
        extension = get_extension(target.url)
        if extension in self.extensions:
            return GateDecision(allowed=True, reason="extension", detail=extension)

        headers = {}
        if target.referer:
            headers["Referer"] = target.referer

        logger.info(f"[GATE] Probing content type: url={target.url}, extension={extension or 'none'}")
        try:
            response = await self.http_client.head(
                target.url,
                headers=headers,
                timeout=self.probe_timeout,
                follow_redirects=True,
            )
        except httpx.TimeoutException:
            logger.warning(f"[GATE] Probe timed out: {target.url}")
            return GateDecision(
                allowed=False,
                reason=UpstreamUnavailableError.reason,
                detail="Content-type probe timed out",
                probed=True,
            )
        except httpx.HTTPError as e:
            logger.warning(f"[GATE] Probe failed: {target.url}: {e}")
            return GateDecision(
                allowed=False,
                reason=UpstreamUnavailableError.reason,
                detail=f"Content-type probe failed: {e}",
                probed=True,
            )

        content_type = normalize_content_type(response.headers.get("Content-Type"))
        if content_type in self.content_types:
            return GateDecision(
                allowed=True,
                reason="content_type",
                detail=content_type,
                probed=True,
                content_type=content_type,
            )

        logger.warning(
            f"[GATE] Rejected: url={target.url}, status={response.status_code}, "
            f"content_type={content_type or 'none'}"
        )
        return GateDecision(
            allowed=False,
            reason=UnsupportedResourceError.reason,
            detail=f"Unsupported content type: {content_type or 'none'}",
            probed=True,
            content_type=content_type or None,
        )

    async def enforce(self, target: ProxyTarget) -> GateDecision:
        """
        Like check(), but raise the matching HTTP error for a rejection.

        Raises:
            UnsupportedResourceError: If the resource is not HLS
            UpstreamUnavailableError: If the probe could not reach the origin
        """
        decision = await self.check(target)
        if decision.allowed:
            return decision
        if decision.reason == UpstreamUnavailableError.reason:
            raise UpstreamUnavailableError(target.url, decision.detail)
        raise UnsupportedResourceError(target.url, decision.content_type)

