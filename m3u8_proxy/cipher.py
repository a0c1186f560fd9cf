"""Reversible encryption of target URLs embedded in rewritten playlists."""

import base64
import binascii
import hashlib
import logging
from typing import Optional

from Crypto.Cipher import AES

from m3u8_proxy.config import settings
from m3u8_proxy.exceptions import CipherError

logger = logging.getLogger(__name__)

TAG_SIZE = 16


class URLCipher:
    """
    Encrypts URLs into URL-safe tokens and back.

    AES-SIV is used without a nonce, so the same URL always yields the same
    token. Rewritten playlists stay byte-identical between fetches and can be
    served from the output cache. Tokens are authenticated, so a tampered
    token fails to decrypt instead of producing a garbage URL.
    """

    def __init__(self, secret_key: str):
        """
        Initialize the cipher.

        Args:
            secret_key: Pre-shared secret; any length, hashed down to an AES-SIV key
        """
        self._key = hashlib.sha256(secret_key.encode("utf-8")).digest()

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string into an unpadded URL-safe base64 token.

        Args:
            plaintext: Text to encrypt (typically a full target URL)

        Returns:
            Token made of [A-Za-z0-9_-] only
        """
        cipher = AES.new(self._key, AES.MODE_SIV)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
        return base64.urlsafe_b64encode(tag + ciphertext).decode("ascii").rstrip("=")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by encrypt().

        Args:
            token: Unpadded URL-safe base64 token

        Returns:
            Original plaintext

        Raises:
            CipherError: If the token is malformed, tampered with or not valid UTF-8
        """
        try:
            padding_needed = (4 - len(token) % 4) % 4
            raw = base64.urlsafe_b64decode((token + "=" * padding_needed).encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, ValueError) as e:
            raise CipherError(f"Malformed URL token: {e}") from e

        if len(raw) < TAG_SIZE:
            raise CipherError("URL token is too short")

        tag, ciphertext = raw[:TAG_SIZE], raw[TAG_SIZE:]
        cipher = AES.new(self._key, AES.MODE_SIV)
        try:
            plaintext = cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as e:
            logger.warning("URL token failed authentication")
            raise CipherError() from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CipherError("URL token does not decode to text") from e


def get_cipher() -> Optional[URLCipher]:
    """Build the process-wide cipher from settings, or None when no key is configured."""
    if not settings.encryption_key:
        return None
    return URLCipher(settings.encryption_key)
