from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from itsdangerous import BadSignature, Signer

from parcelhub.config import Settings

PENDING_2FA_TTL_MINUTES = 5
_SIGNED_PREFIX = "s:"


class CookieKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    PROTECT = "protect"
    PENDING_2FA = "pending_2fa"


# Stable opaque names so cookie purpose is not advertised to the client
COOKIE_NAMES: Dict[CookieKind, str] = {
    CookieKind.ACCESS: "xa91fe7",
    CookieKind.REFRESH: "xa92be3",
    CookieKind.PROTECT: "xa93cd4",
    CookieKind.PENDING_2FA: "xa93cd5",
}

_SIGNED_KINDS = {CookieKind.ACCESS, CookieKind.PENDING_2FA}
# protect is the only slot client JavaScript may read
_HTTP_ONLY_KINDS = {CookieKind.ACCESS, CookieKind.REFRESH, CookieKind.PENDING_2FA}


@dataclass
class CookieSpec:
    """A single ``Set-Cookie`` directive: name, value and ``Response.set_cookie`` options."""

    name: str
    value: str
    options: Dict[str, Any] = field(default_factory=dict)

    def apply(self, response: Any) -> None:
        response.set_cookie(self.name, self.value, **self.options)


def apply_cookies(response: Any, cookies: Iterable[CookieSpec]) -> None:
    for cookie in cookies:
        cookie.apply(response)


def _signer(secret: str, kind: CookieKind) -> Signer:
    # a per-slot salt keeps a value signed for one slot from verifying in another
    return Signer(secret, salt=f"parcelhub.cookie.{kind.value}")


def sign_cookie_value(value: str, secret: str, kind: CookieKind) -> str:
    return _SIGNED_PREFIX + _signer(secret, kind).sign(value).decode("utf-8")


def unsign_cookie_value(signed: str, secret: str, kind: CookieKind) -> Optional[str]:
    """Return the original value, or None if the cookie was not signed with ``secret``."""
    if not signed or not signed.startswith(_SIGNED_PREFIX):
        return None
    try:
        value = _signer(secret, kind).unsign(signed[len(_SIGNED_PREFIX):])
    except BadSignature:
        return None
    return value.decode("utf-8") or None


class CookieBuilder:
    """Names, lifetimes and transport attributes for every auth cookie slot."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secret = settings.cookie_secret or ""

    def name(self, kind: CookieKind) -> str:
        return COOKIE_NAMES[kind]

    def lifetime(self, kind: CookieKind) -> timedelta:
        if kind is CookieKind.ACCESS:
            return timedelta(minutes=self.settings.access_token_expire)
        if kind is CookieKind.REFRESH:
            return timedelta(days=self.settings.refresh_token_expire)
        if kind is CookieKind.PROTECT:
            return timedelta(days=self.settings.protect_token_expire)
        return timedelta(minutes=PENDING_2FA_TTL_MINUTES)

    def _base_options(self, kind: CookieKind) -> Dict[str, Any]:
        secure = self.settings.cookie_secure
        return {
            "httponly": kind in _HTTP_ONLY_KINDS,
            "secure": secure,
            # Browsers drop SameSite=None cookies that are not Secure
            "samesite": "none" if secure else "lax",
            "path": "/",
            "domain": self.settings.cookie_domain,
        }

    def build_cookie(self, kind: CookieKind, payload: str, remember: bool) -> CookieSpec:
        """Build the cookie for ``kind``.

        ``remember`` makes the cookie persistent (explicit expiry/max-age);
        otherwise it lives for the browser session. The pending-2FA ticket is
        always bounded to its short window.
        """
        value = sign_cookie_value(payload, self._secret, kind) if kind in _SIGNED_KINDS else payload
        options = self._base_options(kind)
        if remember or kind is CookieKind.PENDING_2FA:
            lifetime = self.lifetime(kind)
            options["max_age"] = int(lifetime.total_seconds())
            options["expires"] = datetime.now(timezone.utc) + lifetime
        return CookieSpec(self.name(kind), value, options)

    def clear(self, kind: CookieKind) -> CookieSpec:
        options = self._base_options(kind)
        options["max_age"] = 0
        options["expires"] = 0
        return CookieSpec(self.name(kind), "", options)

    def clear_all(self) -> List[CookieSpec]:
        return [self.clear(kind) for kind in CookieKind]

    def read(self, kind: CookieKind, cookies: Mapping[str, str]) -> Optional[str]:
        """Read a cookie value from the request; signed slots fail closed to None."""
        raw = cookies.get(self.name(kind))
        if not raw:
            return None
        if kind in _SIGNED_KINDS:
            return unsign_cookie_value(raw, self._secret, kind)
        return raw
