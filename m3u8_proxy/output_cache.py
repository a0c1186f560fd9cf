"""Thread-safe in-memory cache for rewritten playlists."""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from m3u8_proxy.config import settings


@dataclass
class CachedPlaylist:
    """A rewritten playlist body with its expiry."""

    content: str
    media_type: str
    expires_at: datetime

    def is_expired(self, current_time: datetime) -> bool:
        """Check if the entry has expired."""
        return current_time >= self.expires_at


class PlaylistCache:
    """Short-lived cache of rewritten playlists keyed by proxy base URL, request path and query."""

    def __init__(self, ttl_seconds: Optional[int] = None):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Entry lifetime (defaults to config value); 0 disables caching
        """
        self._entries: dict[str, CachedPlaylist] = {}
        self._lock = threading.Lock()
        self.ttl_seconds = settings.playlist_cache_ttl_seconds if ttl_seconds is None else ttl_seconds

    def get(self, key: str) -> Optional[CachedPlaylist]:
        """
        Return a live entry, dropping it if it has expired.

        Args:
            key: Proxy base URL, request path and query string

        Returns:
            CachedPlaylist, or None on a miss
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            if entry.is_expired(datetime.now(timezone.utc)):
                self._entries.pop(key, None)
                return None

            return entry

    def put(self, key: str, content: str, media_type: str) -> Optional[CachedPlaylist]:
        """
        Store a rewritten playlist.

        Returns:
            The stored entry, or None when caching is disabled
        """
        if self.ttl_seconds <= 0:
            return None

        entry = CachedPlaylist(
            content=content,
            media_type=media_type,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.ttl_seconds),
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        now = datetime.now(timezone.utc)
        with self._lock:
            expired_keys = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired_keys:
                del self._entries[key]
        return len(expired_keys)

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        """Get the current number of cached playlists."""
        with self._lock:
            return len(self._entries)


# Global playlist cache instance
playlist_cache = PlaylistCache()
