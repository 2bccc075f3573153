"""RFC 6238 time-based one-time passwords (SHA-1, 6 digits, 30 s steps).

SHA-1 is what authenticator apps implement for ``otpauth://totp`` URIs
without an explicit algorithm parameter.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import io
import os
import time
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode
from qrcode.image.svg import SvgPathImage

from parcelhub.logging import get_logger

logger = get_logger(__name__)

INTERVAL = 30
DIGITS = 6


def generate_secret(num_bytes: int = 20) -> str:
    return base64.b32encode(os.urandom(num_bytes)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = INTERVAL, digits: int = DIGITS
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: Optional[str],
    *,
    window: int = 1,
    interval: int = INTERVAL,
    now: Optional[float] = None,
) -> bool:
    """Accept the current step and ``window`` adjacent steps either side for clock drift."""
    if not secret or not code:
        return False
    code = code.strip()
    if len(code) != DIGITS or not code.isdigit():
        return False
    current = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, current + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    """``otpauth://`` URI for QR enrollment in authenticator apps."""
    label = quote(f"{issuer}:{account}")
    query = urlencode({"secret": secret, "issuer": issuer})
    return f"otpauth://totp/{label}?{query}"


def qr_code_data_url(uri: str) -> str:
    """Render ``uri`` as an SVG QR code inside a ``data:`` URL for direct use in an <img>."""
    image = qrcode.make(uri, image_factory=SvgPathImage)
    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"
