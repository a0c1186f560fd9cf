"""HLS M3U8 manifest rewriter that routes every URI back through the proxy."""

import logging
import re
from typing import Optional
from urllib.parse import quote, urljoin, urlparse

from m3u8_proxy.cipher import URLCipher
from m3u8_proxy.exceptions import ManifestRewriteError
from m3u8_proxy.models import FetchContext, LineKind

logger = logging.getLogger(__name__)

# Pattern to match the URI attribute of tags such as #EXT-X-KEY, #EXT-X-MAP, #EXT-X-MEDIA
URI_PATTERN = re.compile(r'URI="([^"]+)"')

KEY_TAG = "#EXT-X-KEY"

# The next URI line after this tag is a variant playlist
VARIANT_TAG = "#EXT-X-STREAM-INF"

# Tags whose URI attribute names a playlist rather than a segment or key
PLAYLIST_URI_TAGS = ("#EXT-X-MEDIA", "#EXT-X-I-FRAME-STREAM-INF")

LINE_BREAK = re.compile(r"\r\n|\r|\n")


def classify_line(line: str) -> LineKind:
    """
    Classify a single playlist line.

    The URI check comes first: #EXT-X-KEY, #EXT-X-MAP and similar tags start
    with '#' but still carry a URI attribute that has to be rewritten.
    """
    if "URI" in line:
        return LineKind.ATTRIBUTE_URI
    if line.startswith("#"):
        return LineKind.COMMENT
    if not line.strip():
        return LineKind.BLANK
    return LineKind.URI


def resolve_uri(candidate: str, base: str) -> Optional[str]:
    """
    Resolve a possibly relative URI against the playlist URL.

    Args:
        candidate: URI as written in the playlist
        base: Absolute URL the playlist was fetched from

    Returns:
        Absolute URI, or None when the candidate cannot be parsed
    """
    candidate = candidate.strip()
    if not candidate:
        return None

    try:
        parsed = urlparse(candidate)
        if parsed.scheme:
            return candidate
        return urljoin(base, candidate)
    except ValueError as e:
        logger.warning(f"Skipping unparsable URI {candidate!r}: {e}")
        return None


def find_key_line(lines: list[str], max_depth: int = 10) -> int:
    """
    Find the index of the first #EXT-X-KEY line.

    Only the first max_depth lines are searched; key tags sit in the playlist
    header, so the scan stays cheap on long media playlists.

    Returns:
        Line index, or -1 if no key line was found
    """
    for i, line in enumerate(lines[:max_depth]):
        if KEY_TAG in line:
            return i
    return -1


class M3U8Rewriter:
    """Rewrites M3U8 playlists so every URI points back at the proxy."""

    def __init__(
        self,
        context: FetchContext,
        cipher: Optional[URLCipher] = None,
        key_scan_depth: int = 10,
    ):
        """
        Initialize the rewriter.

        Args:
            context: Base URL, prefix/suffix, query and encryption flag for this playlist
            cipher: Cipher used when context.encrypt is set
            key_scan_depth: Number of leading lines searched for #EXT-X-KEY
        """
        if context.encrypt and cipher is None:
            raise ValueError("Encryption requested without a cipher")
        self.context = context
        self.cipher = cipher
        self.key_scan_depth = key_scan_depth

    def encode_uri(self, absolute_uri: str, playlist: bool = False) -> str:
        """
        Turn an absolute origin URI into its proxied form.

        The captured query is appended even when the URI has its own query, so
        caller-supplied parameters survive every nested fetch.

        Args:
            absolute_uri: Resolved origin URI
            playlist: Whether the URI names a playlist, which gets the playlist prefix

        Returns:
            prefix + percent-encoded (optionally encrypted) target + suffix
        """
        target = absolute_uri + self.context.query
        if self.context.encrypt:
            target = self.cipher.encrypt(target)
        prefix = self.context.prefix
        if playlist and self.context.playlist_prefix:
            prefix = self.context.playlist_prefix
        return f"{prefix}{quote(target, safe='')}{self.context.suffix}"

    def rewrite_manifest(self, content: str) -> str:
        """
        Rewrite all URIs in an M3U8 playlist.

        Args:
            content: Original playlist body

        Returns:
            Rewritten playlist with the same number of lines

        Raises:
            ManifestRewriteError: If the body is empty or the base URL is not absolute
        """
        if not content.strip():
            raise ManifestRewriteError(f"Empty playlist from {self.context.base_url}")
        base_url = self.context.base_url
        try:
            parsed_base = urlparse(base_url)
        except ValueError as e:
            raise ManifestRewriteError(f"Invalid playlist URL {base_url}: {e}") from e
        if not (parsed_base.scheme and parsed_base.netloc):
            raise ManifestRewriteError(f"Playlist URL is not absolute: {base_url}")

        # Only CR and LF end a line; str.splitlines would also break on U+2028 and friends
        lines = LINE_BREAK.split(content)

        key_index = find_key_line(lines, self.key_scan_depth)
        if key_index >= 0:
            lines[key_index] = self._rewrite_key_line(lines[key_index])

        rewritten_lines = []
        expect_variant = False
        for i, line in enumerate(lines):
            if i == key_index:
                rewritten_lines.append(line)
                continue
            kind = classify_line(line)
            rewritten_lines.append(self._rewrite_line(line, kind, expect_variant))
            if line.startswith(VARIANT_TAG):
                expect_variant = True
            elif kind is LineKind.URI:
                expect_variant = False

        return "\n".join(rewritten_lines)

    def _rewrite_line(self, line: str, kind: LineKind, variant: bool = False) -> str:
        """Rewrite a single line; unparsable URIs leave the line as it was."""
        if kind in (LineKind.COMMENT, LineKind.BLANK):
            return line

        if kind is LineKind.ATTRIBUTE_URI:
            return self._rewrite_attribute_line(line)

        absolute = resolve_uri(line, self.context.base_url)
        if absolute is None:
            return line
        return self.encode_uri(absolute, playlist=variant)

    def _rewrite_attribute_line(self, line: str) -> str:
        """Replace the URI="..." value with its proxied form, keeping other attributes."""
        match = URI_PATTERN.search(line)
        if match is None:
            return line

        absolute = resolve_uri(match.group(1), self.context.base_url)
        if absolute is None:
            return line

        proxied = self.encode_uri(absolute, playlist=line.startswith(PLAYLIST_URI_TAGS))
        return f'{line[:match.start()]}URI="{proxied}"{line[match.end():]}'

    def _rewrite_key_line(self, line: str) -> str:
        """
        Make the #EXT-X-KEY URI absolute.

        Key URIs are fetched by the player directly, so they are never proxied
        or encrypted.
        """
        match = URI_PATTERN.search(line)
        if match is None:
            return line

        absolute = resolve_uri(match.group(1), self.context.base_url)
        if absolute is None:
            return line
        return f'{line[:match.start()]}URI="{absolute}"{line[match.end():]}'
