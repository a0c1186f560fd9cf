"""Data models for the proxy server."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LineKind(str, Enum):
    """Kind of a single playlist line, derived on every rewrite pass."""

    COMMENT = "comment"
    ATTRIBUTE_URI = "attribute_uri"
    BLANK = "blank"
    URI = "uri"


class FetchContext(BaseModel):
    """Per-request settings for rewriting one playlist."""

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(..., description="Origin URL the playlist was fetched from")
    prefix: str = Field("", description="Prepended to proxied segment, key and other resource URIs")
    playlist_prefix: str = Field(
        "", description="Prepended to proxied variant and rendition playlist URIs; falls back to prefix"
    )
    suffix: str = Field("", description="Appended to every proxied URI")
    encrypt: bool = Field(False, description="Whether proxied targets are encrypted")
    query: str = Field("", description="Query string carried onto every proxied URI, with its leading '?'")

    @field_validator("query")
    @classmethod
    def normalize_query(cls, v: str) -> str:
        """Ensure a non-empty query starts with '?'."""
        if v and not v.startswith("?"):
            return f"?{v}"
        return v


class ProxyTarget(BaseModel):
    """Decoded form of an inbound proxy path."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="Absolute target URL")
    params: dict[str, str] = Field(default_factory=dict, description="Pass-through parameters such as referer")
    encrypted: bool = Field(False, description="Whether the path carried an encrypted token")

    @property
    def referer(self) -> Optional[str]:
        """Referer to send upstream, if the caller supplied one."""
        return self.params.get("referer") or None


class GateDecision(BaseModel):
    """Outcome of gatekeeping an inbound proxy request."""

    allowed: bool
    reason: str = Field(..., description="Machine-readable reason code")
    detail: str = ""
    probed: bool = Field(False, description="Whether an upstream content-type probe was issued")
    content_type: Optional[str] = None


class HealthResponse(BaseModel):
    """Response for the health endpoint."""

    status: str
    cached_playlists: int
    version: str
