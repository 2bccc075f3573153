from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from parcelhub.config import Settings
from parcelhub.logging import get_logger
from parcelhub.service.crypto import Crypto, safe_compare
from parcelhub.service.device import RequestContext

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
PROTECT = "protect"
ACTIVATION = "activation"


@dataclass
class TokenTriple:
    access_token: str
    refresh_token: str
    protect_token: str
    # HMAC of the access token; the session reference kept in cache and store
    access_hash: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """Issues and verifies HS256 session tokens bound to a device fingerprint.

    Access, refresh, protect and activation tokens each use their own secret,
    so a leaked secret cannot mint tokens of another kind.
    """

    def __init__(self, settings: Settings, crypto: Crypto) -> None:
        self.settings = settings
        self.crypto = crypto
        self._secrets = {
            ACCESS: settings.access_token_secret or "",
            REFRESH: settings.refresh_token_secret or "",
            PROTECT: settings.protect_token_secret or "",
            ACTIVATION: settings.activation_secret or "",
        }
        self._lifetimes = {
            ACCESS: timedelta(minutes=settings.access_token_expire),
            REFRESH: timedelta(days=settings.refresh_token_expire),
            PROTECT: timedelta(days=settings.protect_token_expire),
        }

    def lifetime(self, kind: str) -> timedelta:
        return self._lifetimes[kind]

    def _sign(self, kind: str, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[kind].encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def encode(self, kind: str, claims: dict[str, Any], ttl: timedelta) -> str:
        now = int(time.time())
        payload = {
            **claims,
            "kind": kind,
            "jti": secrets.token_hex(8),
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def decode(self, kind: str, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for a malformed, forged or expired token."""
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed", kind=kind)
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", kind=kind)
            return None

        expected_sig = self._sign(kind, f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", kind=kind, error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("kind") != kind:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def _fingerprint(self, ctx: RequestContext, user_id: str, role: str) -> dict[str, Any]:
        return {
            "ip": self.crypto.hmac(ctx.ip),
            "id": user_id,
            "role": role,
            "browser": self.crypto.hmac(ctx.device.browser),
            "device": self.crypto.hmac(ctx.device.os),
        }

    def issue_triple(
        self, ctx: RequestContext, *, user_id: str, role: str, remember: bool
    ) -> TokenTriple:
        signature = self._fingerprint(ctx, user_id, role)
        access_token = self.encode(ACCESS, signature, self.lifetime(ACCESS))
        access_hash = self.crypto.hmac(access_token)
        linked = {**signature, "remember": bool(remember), "token": access_hash}
        refresh_token = self.encode(REFRESH, linked, self.lifetime(REFRESH))
        protect_token = self.encode(PROTECT, linked, self.lifetime(PROTECT))
        return TokenTriple(access_token, refresh_token, protect_token, access_hash)

    def signature_mismatch(self, claims: Optional[dict[str, Any]], ctx: RequestContext) -> bool:
        """True when the token was minted for a different OS or browser than the caller's."""
        if not claims:
            return True
        device_ok = safe_compare(str(claims.get("device", "")), self.crypto.hmac(ctx.device.os))
        browser_ok = safe_compare(
            str(claims.get("browser", "")), self.crypto.hmac(ctx.device.browser)
        )
        return not (device_ok and browser_ok)

    def encode_ticket(self, payload: Any, ttl: timedelta) -> str:
        """Seal ``payload`` with the crypto secret inside a short-lived activation JWT."""
        return self.encode(ACTIVATION, {"encrypted": self.crypto.encrypt(payload)}, ttl)

    def decode_ticket(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        claims = self.decode(ACTIVATION, token)
        if not claims:
            return None
        return claims.get("encrypted")
