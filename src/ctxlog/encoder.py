"""
Per-line obfuscation encoder for ctxlog.

When a key is configured, the content part of every line ("@TYPE:id",
"key=value", ...) is replaced by a token; line numbers stay plaintext so
the writer can number lines without the key and readers can locate lines
in files that mix encoded and plain content.

Token layout:
    $cfe1$<base64url(nonce || tag || obfuscated)>

    nonce       8 random bytes
    tag         first 8 bytes of HMAC-SHA256(key, nonce || content)
    obfuscated  UTF-8 content XORed with a SHA-256 keystream over
                (key, nonce, block counter)

Security Note:
    This is defense-in-depth obfuscation with tamper detection. It keeps
    casual readers and grep out of the data files and catches edited lines.
    It is NOT encryption-at-rest and makes no confidentiality claim against
    an attacker who studies the scheme. Use disk encryption for that.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
import secrets

from ctxlog.errors import EncoderKeyError, IntegrityError
from ctxlog.schema import ENCODER_KEY_ENV, encoder_key_problem

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "$cfe1$"

NONCE_BYTES = 8
TAG_BYTES = 8
MIN_KEY_BYTES = 16

_BLOCK_BYTES = hashlib.sha256().digest_size
_BASE64_ALPHABET = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
)


class LineEncoder:
    """
    Encodes and decodes the content part of data lines.

    Usage:
        encoder = LineEncoder(LineEncoder.generate_key())
        token = encoder.encode("decision=use postgres")
        encoder.decode(token)  # "decision=use postgres"

    Instances are stateless apart from the key and safe to share between
    threads.
    """

    def __init__(self, key: bytes) -> None:
        """
        Args:
            key: Secret key, at least 16 bytes

        Raises:
            ValueError: If the key is too short
        """
        if len(key) < MIN_KEY_BYTES:
            msg = f"encoder key must be at least {MIN_KEY_BYTES} bytes"
            raise ValueError(msg)
        self._key = bytes(key)

    @staticmethod
    def generate_key() -> bytes:
        """Generate a random 32-byte key."""
        return secrets.token_bytes(32)

    @classmethod
    def from_hex(cls, hex_key: str) -> "LineEncoder":
        """Build an encoder from a hex-encoded key."""
        try:
            key = bytes.fromhex(hex_key.strip())
        except ValueError as e:
            msg = "encoder key must be a hex string"
            raise ValueError(msg) from e
        return cls(key)

    @classmethod
    def from_env(cls) -> "LineEncoder | None":
        """
        Build an encoder from CTXLOG_ENCODER_KEY, or None if unset.

        Raises:
            EncoderKeyError: If the variable holds an unusable key
        """
        hex_key = os.environ.get(ENCODER_KEY_ENV, "").strip()
        if not hex_key:
            return None
        problem = encoder_key_problem(hex_key)
        if problem:
            raise EncoderKeyError(source=ENCODER_KEY_ENV, reason=problem)
        return cls.from_hex(hex_key)

    @staticmethod
    def is_token(content: str) -> bool:
        """Check whether line content has the shape of an encoded token."""
        if not content.startswith(TOKEN_PREFIX):
            return False
        body = content[len(TOKEN_PREFIX):]
        return bool(body) and all(c in _BASE64_ALPHABET for c in body)

    def encode(self, content: str) -> str:
        """
        Encode line content into a token.

        Args:
            content: Plain line content (already escaped, no newline)

        Returns:
            Token string, safe to place after "<n>|"
        """
        plain = content.encode("utf-8")
        nonce = secrets.token_bytes(NONCE_BYTES)
        tag = self._tag(nonce, plain)
        body = nonce + tag + self._xor(nonce, plain)
        encoded = base64.urlsafe_b64encode(body).rstrip(b"=").decode("ascii")
        return f"{TOKEN_PREFIX}{encoded}"

    def decode(self, token: str) -> str:
        """
        Decode a token back into line content.

        Args:
            token: Token produced by encode()

        Returns:
            The original content

        Raises:
            IntegrityError: If the token is malformed or was tampered with
        """
        prefix = token[:16]
        if not self.is_token(token):
            raise IntegrityError(token_prefix=prefix, reason="not an encoded token")

        body = token[len(TOKEN_PREFIX):]
        try:
            raw = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
        except (binascii.Error, ValueError) as e:
            raise IntegrityError(token_prefix=prefix, reason="bad base64") from e

        if len(raw) < NONCE_BYTES + TAG_BYTES:
            raise IntegrityError(token_prefix=prefix, reason="token too short")

        nonce = raw[:NONCE_BYTES]
        tag = raw[NONCE_BYTES:NONCE_BYTES + TAG_BYTES]
        plain = self._xor(nonce, raw[NONCE_BYTES + TAG_BYTES:])

        if not hmac.compare_digest(tag, self._tag(nonce, plain)):
            raise IntegrityError(token_prefix=prefix, reason="tag mismatch")

        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as e:
            raise IntegrityError(token_prefix=prefix, reason="invalid UTF-8") from e

    def _tag(self, nonce: bytes, plain: bytes) -> bytes:
        return hmac.new(self._key, nonce + plain, hashlib.sha256).digest()[:TAG_BYTES]

    def _xor(self, nonce: bytes, data: bytes) -> bytes:
        out = bytearray(len(data))
        for block_index in range(0, len(data), _BLOCK_BYTES):
            counter = (block_index // _BLOCK_BYTES).to_bytes(8, "big")
            stream = hashlib.sha256(self._key + nonce + counter).digest()
            chunk = data[block_index:block_index + _BLOCK_BYTES]
            for offset, byte in enumerate(chunk):
                out[block_index + offset] = byte ^ stream[offset]
        return bytes(out)
