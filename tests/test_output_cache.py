"""Tests for the rewritten playlist cache."""

from datetime import datetime, timedelta, timezone

import pytest

from m3u8_proxy.output_cache import PlaylistCache


@pytest.fixture
def cache():
    """Create a fresh cache for each test."""
    return PlaylistCache(ttl_seconds=5)


class TestPlaylistCache:
    """Test suite for the playlist cache."""

    def test_put_and_get(self, cache):
        entry = cache.put("/proxy/m3u8/a?", "#EXTM3U", "application/vnd.apple.mpegurl")

        retrieved = cache.get("/proxy/m3u8/a?")
        assert retrieved is entry
        assert retrieved.content == "#EXTM3U"
        assert retrieved.expires_at > datetime.now(timezone.utc)

    def test_miss(self, cache):
        assert cache.get("/proxy/m3u8/missing?") is None

    def test_expired_entry_dropped_on_get(self, cache):
        entry = cache.put("key", "#EXTM3U", "application/vnd.apple.mpegurl")
        entry.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        assert cache.get("key") is None
        assert cache.size() == 0

    def test_cleanup_expired(self, cache):
        stale = cache.put("stale", "#EXTM3U", "application/vnd.apple.mpegurl")
        cache.put("fresh", "#EXTM3U", "application/vnd.apple.mpegurl")
        stale.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        assert cache.cleanup_expired() == 1
        assert cache.size() == 1
        assert cache.get("fresh") is not None

    def test_zero_ttl_disables_caching(self):
        cache = PlaylistCache(ttl_seconds=0)

        assert cache.put("key", "#EXTM3U", "application/vnd.apple.mpegurl") is None
        assert cache.get("key") is None

    def test_clear(self, cache):
        cache.put("a", "1", "text/plain")
        cache.put("b", "2", "text/plain")
        cache.clear()

        assert cache.size() == 0
