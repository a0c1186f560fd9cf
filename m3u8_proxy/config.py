"""Configuration management for the proxy server."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Checked first, no network round trip needed
HLS_EXTENSIONS: tuple[str, ...] = (
    ".m3u8",
    ".m3u",
    ".ts",  # MPEG transport stream
    ".aac",  # Audio segments
    ".key",  # Encryption keys
    ".vtt",  # WebVTT subtitles
    ".srt",  # SubRip subtitles
    ".jpg",  # JPEG segments (some providers use this)
)

# Only consulted when the extension is missing or unknown
HLS_CONTENT_TYPES: tuple[str, ...] = (
    "application/x-mpegurl",
    "application/vnd.apple.mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
    "application/m3u8",
    "video/mp2t",
    "application/octet-stream",  # Some servers send this for ts files
    "image/jpeg",
    "image/jpg",
)

# Stripped from both requests and responses
CLOUDFLARE_HEADERS: tuple[str, ...] = (
    "Cf-Cache-Status",
    "Cf-Ray",
    "Cf-Connecting-Ip",
    "Cf-Ipcountry",
    "Cf-Visitor",
    "Cf-Request-Id",
    "Cf-Worker",
    "Cf-Waf-Error-Id",
    "Cf-Pol-Decisions",
    "Cf-Bot-Score",
    "Cf-Bot-Management-Tag",
    "Cf-Challenge-Id",
    "Cf-Threat-Score",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    # HTTP Client Configuration
    http_timeout_seconds: float = 30.0
    http_max_connections: int = 100
    http_max_keepalive_connections: int = 20
    probe_timeout_seconds: float = 5.0

    # URL Encryption
    encryption_key: Optional[str] = None
    encrypt_urls: bool = False

    # Access Control
    api_key: Optional[str] = None
    allowed_origins: str = ""  # Comma-separated list, empty allows any origin

    # Rewriting
    key_scan_depth: int = 10  # #EXT-X-KEY is expected near the top of a playlist

    # Caching
    playlist_cache_ttl_seconds: int = 5
    cache_max_age_seconds: int = 86400

    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse allowed origins from comma-separated string."""
        if not self.allowed_origins:
            return []
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


# Global settings instance
settings = Settings()
