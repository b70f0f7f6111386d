"""One-way hashing for the web UI password."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Protocol, runtime_checkable

PBKDF2_ITERATIONS = 100_000
PBKDF2_SALT_BYTES = 16
PBKDF2_DIGEST = "sha512"


@runtime_checkable
class CredentialHasher(Protocol):
    def hash(self, plaintext: str) -> str:
        """Return an opaque digest for ``plaintext``."""


class Pbkdf2Hasher:
    """PBKDF2-HMAC digests stored as ``<salt b64>:<hash b64>``."""

    def __init__(self, *, iterations: int = PBKDF2_ITERATIONS, salt_bytes: int = PBKDF2_SALT_BYTES) -> None:
        self.iterations = iterations
        self.salt_bytes = salt_bytes

    def _derive(self, plaintext: str, salt: bytes) -> bytes:
        return hashlib.pbkdf2_hmac(PBKDF2_DIGEST, plaintext.encode("utf-8"), salt, self.iterations)

    def hash(self, plaintext: str) -> str:
        salt = secrets.token_bytes(self.salt_bytes)
        digest = self._derive(plaintext, salt)
        return f"{base64.b64encode(salt).decode('ascii')}:{base64.b64encode(digest).decode('ascii')}"

    def verify(self, plaintext: str, stored: str) -> bool:
        salt_text, sep, digest_text = (stored or "").partition(":")
        if not sep:
            return False
        try:
            salt = base64.b64decode(salt_text, validate=True)
            expected = base64.b64decode(digest_text, validate=True)
        except ValueError:
            return False
        return hmac.compare_digest(self._derive(plaintext, salt), expected)
