"""Symmetric encryption, keyed hashing and comparison helpers.

Ciphertexts are AES-256-GCM with a per-message random salt and nonce. The
key for each message is derived from the configured secret and the salt
with HKDF-SHA256, so the same secret never encrypts twice under one key.
Envelopes are plain dicts of hex strings (``{"salt", "iv", "data"}``) so
they serialize into JWT claims and JSON columns without further encoding.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
from typing import Any, Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

_SALT_BYTES = 16
_NONCE_BYTES = 12
_KEY_INFO = b"parcelhub-envelope-v1"

Envelope = Dict[str, str]


class CipherError(Exception):
    """Ciphertext was tampered with, malformed, or sealed under another secret."""


class Crypto:
    """Secret-bound encryption and HMAC operations."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("crypto secret must not be empty")
        self._secret = secret.encode("utf-8")

    def _derive_key(self, salt: bytes) -> bytes:
        return HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            info=_KEY_INFO,
        ).derive(self._secret)

    def encrypt(self, value: Any) -> Envelope:
        """Encrypt any JSON-serializable value."""
        salt = os.urandom(_SALT_BYTES)
        nonce = os.urandom(_NONCE_BYTES)
        plaintext = json.dumps(value, separators=(",", ":")).encode("utf-8")
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext, None)
        return {"salt": salt.hex(), "iv": nonce.hex(), "data": ciphertext.hex()}

    def decrypt(self, envelope: Any) -> Any:
        """Reverse :meth:`encrypt`; raises :class:`CipherError` on any failure."""
        if not isinstance(envelope, dict):
            raise CipherError("envelope must be a mapping")
        try:
            salt = bytes.fromhex(envelope["salt"])
            nonce = bytes.fromhex(envelope["iv"])
            ciphertext = bytes.fromhex(envelope["data"])
        except (KeyError, TypeError, ValueError) as exc:
            raise CipherError("malformed envelope") from exc
        if len(nonce) != _NONCE_BYTES or not salt:
            raise CipherError("malformed envelope")
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise CipherError("envelope authentication failed") from exc
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CipherError("envelope payload is not JSON") from exc

    def hmac(self, data: str) -> str:
        """Deterministic keyed digest; the only form in which access tokens are stored."""
        return hmac.new(self._secret, str(data).encode("utf-8"), hashlib.sha256).hexdigest()


def hash_digest(data: str) -> str:
    """One-way SHA-256 digest used for password-reset tokens."""
    return hashlib.sha256(str(data).encode("utf-8")).hexdigest()


def safe_compare(a: Union[str, bytes, int], b: Union[str, bytes, int]) -> bool:
    """Constant-time equality.

    Lengths are compared first; content is only examined (in constant time)
    when they match.
    """
    a_bytes = a if isinstance(a, bytes) else str(a).encode("utf-8")
    b_bytes = b if isinstance(b, bytes) else str(b).encode("utf-8")
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)


def random_hex_string(num_bytes: int = 32) -> str:
    return secrets.token_hex(num_bytes)


__all__ = [
    "Crypto",
    "CipherError",
    "Envelope",
    "hash_digest",
    "safe_compare",
    "random_hex_string",
]
