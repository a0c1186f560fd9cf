"""Custom exceptions for the proxy server."""

from fastapi import HTTPException, status


class ProxyError(HTTPException):
    """Base error carrying a machine-readable reason and a human-readable detail."""

    reason = "proxy_error"

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(
            status_code=status_code,
            detail={"reason": self.reason, "detail": message},
        )
        self.message = message


class MalformedTargetError(ProxyError):
    """Raised when the target URL in a proxy path is missing or not absolute."""

    reason = "malformed_target"

    def __init__(self, target: str):
        if target:
            message = f"Target is not an absolute URL: {target}"
        else:
            message = "Target URL is missing"
        super().__init__(message)


class UnsupportedResourceError(ProxyError):
    """Raised when the target is neither a known HLS extension nor an HLS content type."""

    reason = "unsupported_resource"

    def __init__(self, url: str, content_type: str | None = None):
        message = f"Not an HLS resource: {url}"
        if content_type:
            message += f" (content-type: {content_type})"
        super().__init__(message)


class UpstreamUnavailableError(ProxyError):
    """Raised when the origin cannot be reached or times out."""

    reason = "upstream_unavailable"

    def __init__(self, url: str, error: str = ""):
        message = f"Origin unavailable: {url}"
        if error:
            message += f" ({error})"
        super().__init__(message)


class UpstreamStatusError(ProxyError):
    """Raised when the origin answers with an error status."""

    reason = "upstream_status"

    def __init__(self, url: str, upstream_status: int):
        super().__init__(
            f"Origin returned {upstream_status} for {url}",
            status_code=upstream_status,
        )
        self.upstream_status = upstream_status


class CipherError(ProxyError):
    """Raised when an encrypted target token cannot be decrypted."""

    reason = "cipher_failure"

    def __init__(self, message: str = "Invalid or tampered URL token"):
        super().__init__(message)


class ManifestRewriteError(ProxyError):
    """Raised when a playlist as a whole cannot be rewritten."""

    reason = "rewrite_failed"
