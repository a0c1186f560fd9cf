"""Tests for proxy request gatekeeping."""

import json
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import quote

import httpx
import pytest

from m3u8_proxy.cipher import URLCipher
from m3u8_proxy.exceptions import (
    CipherError,
    MalformedTargetError,
    UnsupportedResourceError,
    UpstreamUnavailableError,
)
from m3u8_proxy.gatekeeper import (
    Gatekeeper,
    decode_proxy_path,
    decode_target,
    get_extension,
    normalize_content_type,
    parse_params,
)
from m3u8_proxy.models import ProxyTarget


def _mock_client(content_type: str | None = None, side_effect: Exception | None = None) -> MagicMock:
    """Create an HTTP client whose HEAD returns the given content type or raises."""
    client = MagicMock(spec=httpx.AsyncClient)
    if side_effect is not None:
        client.head = AsyncMock(side_effect=side_effect)
    else:
        headers = {"Content-Type": content_type} if content_type else {}
        client.head = AsyncMock(return_value=httpx.Response(200, headers=headers))
    return client


class TestDecodeProxyPath:
    """Test suite for decoding inbound proxy paths."""

    def test_single_encoded_target(self):
        target = decode_proxy_path(quote("https://cdn.example/show/index.m3u8", safe=""))

        assert target.url == "https://cdn.example/show/index.m3u8"
        assert target.params == {}
        assert target.encrypted is False

    def test_double_encoded_target(self):
        """Two layers of percent-encoding decode to the original URL."""
        url = "https://cdn.example/show/index.m3u8?tok=1&x=a b"
        twice = quote(quote(url, safe=""), safe="")

        assert decode_proxy_path(twice).url == url

    def test_decode_stops_after_two_passes(self):
        """A triple-encoded target keeps one layer of encoding."""
        once = quote("https://cdn.example/a.ts", safe="")
        thrice = quote(quote(once, safe=""), safe="")

        assert decode_target(thrice) == once

    def test_params_segment(self):
        """JSON params after the target are decoded."""
        params = quote(json.dumps({"referer": "https://site.example/"}), safe="")
        target = decode_proxy_path(f"{quote('https://cdn.example/a.ts', safe='')}/{params}")

        assert target.params == {"referer": "https://site.example/"}
        assert target.referer == "https://site.example/"

    def test_bad_params_are_ignored(self):
        """Unparsable params never fail the request."""
        target = decode_proxy_path(f"{quote('https://cdn.example/a.ts', safe='')}/not-json")

        assert target.url == "https://cdn.example/a.ts"
        assert target.params == {}

    @pytest.mark.parametrize("raw", ["", "/", "//"])
    def test_empty_target_rejected(self, raw):
        with pytest.raises(MalformedTargetError) as exc_info:
            decode_proxy_path(raw)
        assert exc_info.value.status_code == 400

    @pytest.mark.parametrize("raw", ["show%2Findex.m3u8", "ftp%3A%2F%2Fhost%2Fa.ts", "https%3A%2F%2F"])
    def test_non_absolute_target_rejected(self, raw):
        with pytest.raises(MalformedTargetError) as exc_info:
            decode_proxy_path(raw)
        assert exc_info.value.detail["reason"] == "malformed_target"

    def test_encrypted_target(self):
        """Cipher tokens are decrypted when a cipher is configured."""
        cipher = URLCipher("secret")
        token = cipher.encrypt("https://cdn.example/show/seg0.ts?tok=1")
        target = decode_proxy_path(quote(token, safe=""), cipher)

        assert target.url == "https://cdn.example/show/seg0.ts?tok=1"
        assert target.encrypted is True

    def test_tampered_encrypted_target(self):
        with pytest.raises(CipherError):
            decode_proxy_path("bm90LWEtdmFsaWQtdG9rZW4tYXQtYWxs", URLCipher("secret"))

    @pytest.mark.parametrize(
        "raw",
        ["not-a-url.m3u8", "show%2Findex.m3u8", "ftp%3A%2F%2Fhost%2Fa.ts", "a%20b"],
    )
    def test_non_token_target_is_malformed_with_cipher(self, raw):
        """Targets that cannot be cipher tokens are malformed even when a cipher is configured."""
        with pytest.raises(MalformedTargetError) as exc_info:
            decode_proxy_path(raw, URLCipher("secret"))
        assert exc_info.value.detail["reason"] == "malformed_target"


class TestHelpers:
    """Test suite for gatekeeper helpers."""

    def test_parse_params_keeps_strings_only(self):
        raw = quote(json.dumps({"referer": "https://a/", "n": 1, "list": []}), safe="")
        assert parse_params(raw) == {"referer": "https://a/"}
        assert parse_params(quote("[1, 2]", safe="")) == {}
        assert parse_params("") == {}

    def test_get_extension(self):
        assert get_extension("https://cdn.example/show/SEG0.TS?x=1.m3u8") == ".ts"
        assert get_extension("https://cdn.example/show/playlist") == ""
        assert get_extension("https://cdn.example/v1.2/stream") == ""

    def test_normalize_content_type(self):
        assert normalize_content_type("Application/VND.Apple.MpegURL; charset=UTF-8") == "application/vnd.apple.mpegurl"
        assert normalize_content_type(None) == ""


class TestGatekeeper:
    """Test suite for the extension check and content-type HEAD check."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["seg0.ts", "index.m3u8", "list.M3U", "a.aac", "k.key", "s.vtt", "s.srt", "f.jpg"])
    async def test_extension_fast_path(self, path):
        """Known extensions are allowed without a HEAD request."""
        client = _mock_client()
        decision = await Gatekeeper(client).check(ProxyTarget(url=f"https://cdn.example/show/{path}"))

        assert decision.allowed is True
        assert decision.probed is False
        client.head.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content_type",
        ["application/vnd.apple.mpegurl", "application/x-mpegURL; charset=utf-8", "video/MP2T"],
    )
    async def test_head_check_allows_hls_content_type(self, content_type):
        """Unknown extensions are allowed when HEAD returns an HLS content type."""
        client = _mock_client(content_type)
        decision = await Gatekeeper(client).check(ProxyTarget(url="https://cdn.example/live/playlist"))

        assert decision.allowed is True
        assert decision.probed is True
        client.head.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content_type", ["text/html", "application/json", None])
    async def test_head_check_rejects_other_content_type(self, content_type):
        client = _mock_client(content_type)
        gatekeeper = Gatekeeper(client)
        target = ProxyTarget(url="https://cdn.example/page.php")

        decision = await gatekeeper.check(target)
        assert decision.allowed is False
        assert decision.reason == "unsupported_resource"

        with pytest.raises(UnsupportedResourceError):
            await gatekeeper.enforce(target)

    @pytest.mark.asyncio
    async def test_head_check_sends_referer_and_timeout(self):
        client = _mock_client("video/mp2t")
        target = ProxyTarget(url="https://cdn.example/seg?id=1", params={"referer": "https://site.example/"})

        await Gatekeeper(client, probe_timeout=2.5).check(target)

        _, kwargs = client.head.call_args
        assert kwargs["headers"] == {"Referer": "https://site.example/"}
        assert kwargs["timeout"] == 2.5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [httpx.ReadTimeout("timed out"), httpx.ConnectError("connection refused")],
    )
    async def test_head_check_network_failure_rejects(self, error):
        """Timeouts and network errors reject the request instead of raising."""
        client = _mock_client(side_effect=error)
        gatekeeper = Gatekeeper(client)
        target = ProxyTarget(url="https://down.example/stream")

        decision = await gatekeeper.check(target)
        assert decision.allowed is False
        assert decision.reason == "upstream_unavailable"

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await gatekeeper.enforce(target)
        assert exc_info.value.status_code == 400
