"""
Cookie Codec

Authenticated encryption for cookie payloads.
Uses AES-256-GCM with the expiry timestamp bound into the authentication tag,
so a cookie can be neither read, altered nor kept alive past its lifetime by
the browser that stores it.

Blob layout (url-safe base64, unpadded):
    version (1) || expires_at (8, big endian) || nonce (12) || ciphertext || tag (16)
"""

import base64
import functools
import logging
import os
import struct
import time
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class CookieDecryptError(Exception):
    """
    Cookie could not be decrypted.

    `reason` is one of "malformed", "tampered" or "expired" and is meant for
    diagnostics only; callers must treat every reason the same way.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Cookie decryption failed ({reason})")


@functools.lru_cache(maxsize=8)
def derive_cookie_key(secret: str) -> bytes:
    """Derive the 256-bit AES key from the configured cookie secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=CookieCodec.KEY_SIZE,
        salt=b"authorization-gateway/cookie-codec/v1",
        iterations=100_000,
    )
    return kdf.derive(secret.encode("utf-8"))


class CookieCodec:
    """
    Encrypts/decrypts cookie values using AES-256-GCM.

    Features:
    - Unique nonce per encryption
    - Expiry authenticated as associated data
    - Key derived from an arbitrary-length secret (PBKDF2-HMAC-SHA256)
    """

    KEY_SIZE = 32  # 256 bits for AES-256
    NONCE_SIZE = 12  # 96 bits recommended for GCM
    TAG_SIZE = 16  # 128 bits authentication tag
    VERSION = 1

    _HEADER = struct.Struct(">BQ")

    def __init__(self, secret: Optional[str] = None):
        """
        Initialize the codec.

        Args:
            secret: Cookie encryption secret.
                    If not provided, uses COOKIE_ENCRYPTION_KEY env var

        Raises:
            ValueError: If no secret is available
        """
        secret = secret or os.getenv("COOKIE_ENCRYPTION_KEY")
        if not secret:
            raise ValueError(
                "COOKIE_ENCRYPTION_KEY environment variable is required for cookie encryption. "
                "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
            )
        self.cipher = AESGCM(derive_cookie_key(secret))

    def encrypt(self, plaintext: str, max_age: int) -> str:
        """
        Encrypt a cookie payload valid for `max_age` seconds.

        Returns:
            Cookie-safe encoded blob
        """
        expires_at = int(time.time()) + max_age
        header = self._HEADER.pack(self.VERSION, max(expires_at, 0))
        nonce = os.urandom(self.NONCE_SIZE)
        ciphertext_and_tag = self.cipher.encrypt(nonce, plaintext.encode("utf-8"), header)
        return base64.urlsafe_b64encode(header + nonce + ciphertext_and_tag).decode("ascii").rstrip("=")

    def decrypt(self, blob: Optional[str]) -> str:
        """
        Decrypt and verify a cookie payload.

        Raises:
            CookieDecryptError: If the blob is malformed, tampered with or expired
        """
        if not blob:
            raise CookieDecryptError("malformed")

        try:
            raw = base64.urlsafe_b64decode(blob + "=" * (-len(blob) % 4))
        except (ValueError, TypeError):
            raise CookieDecryptError("malformed")

        header_size = self._HEADER.size
        if len(raw) < header_size + self.NONCE_SIZE + self.TAG_SIZE:
            raise CookieDecryptError("malformed")

        header = raw[:header_size]
        version, expires_at = self._HEADER.unpack(header)
        if version != self.VERSION:
            raise CookieDecryptError("malformed")

        nonce = raw[header_size:header_size + self.NONCE_SIZE]
        try:
            plaintext = self.cipher.decrypt(nonce, raw[header_size + self.NONCE_SIZE:], header)
        except InvalidTag:
            raise CookieDecryptError("tampered")

        # Checked after the tag so an attacker cannot probe expiry with forged headers
        if expires_at <= int(time.time()):
            raise CookieDecryptError("expired")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise CookieDecryptError("malformed")

    def try_decrypt(self, blob: Optional[str]) -> Optional[str]:
        """Decrypt a cookie, collapsing every failure to None."""
        if not blob:
            return None
        try:
            return self.decrypt(blob)
        except CookieDecryptError as e:
            logging.debug(f"Ignoring undecryptable cookie: {e.reason}")
            return None


@dataclass(frozen=True)
class CookieSpec:
    """One Set-Cookie header to emit on a response."""
    name: str
    value: str
    max_age: int
    http_only: bool = True
    secure: bool = True
    same_site: str = "lax"
    path: str = "/"

    @classmethod
    def clear(cls, name: str) -> "CookieSpec":
        """Build a cookie that deletes `name` from the browser."""
        return cls(name=name, value="", max_age=0)

    @property
    def is_clearing(self) -> bool:
        return self.max_age <= 0

    def apply(self, response) -> None:
        """Write this cookie onto a Starlette response."""
        response.set_cookie(
            key=self.name,
            value=self.value,
            max_age=self.max_age,
            path=self.path,
            secure=self.secure,
            httponly=self.http_only,
            samesite=self.same_site,
        )
