from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Optional

import httpx

from parcelhub.logging import get_logger
from parcelhub.storage.models import DeviceInfo, Location

logger = get_logger(__name__)

IPINFO_URL = "https://ipinfo.io/{ip}/json"

# First match wins; order matters (Android UAs also contain "Linux", Edge UAs contain "Chrome").
_OS_PATTERNS = [
    ("Windows", re.compile(r"Windows NT|Windows Phone|Win64|Win32", re.I)),
    ("Android", re.compile(r"Android", re.I)),
    ("iOS", re.compile(r"iPhone|iPad|iPod", re.I)),
    ("OS X", re.compile(r"Macintosh|Mac OS X", re.I)),
    ("Chrome OS", re.compile(r"CrOS", re.I)),
    ("Linux", re.compile(r"Linux|X11", re.I)),
]

_BROWSER_PATTERNS = [
    ("Edge", re.compile(r"Edg(e|A|iOS)?/", re.I)),
    ("Opera", re.compile(r"OPR/|Opera", re.I)),
    ("Chrome", re.compile(r"Chrome/|CriOS/", re.I)),
    ("Firefox", re.compile(r"Firefox/|FxiOS/", re.I)),
    ("Safari", re.compile(r"Version/[\d.]+.*Safari/", re.I)),
    ("curl", re.compile(r"^curl/", re.I)),
]

_DEVICE_PATTERNS = [
    ("smart-tv", re.compile(r"SmartTV|SMART-TV|GoogleTV|AppleTV|HbbTV|NetCast|BRAVIA|Roku|Tizen.+TV", re.I)),
    ("bot", re.compile(r"bot\b|crawler|spider|crawling|^curl/|^wget/|python-requests|python-httpx", re.I)),
    ("mobile-native", re.compile(r"; wv\)", re.I)),
    ("mobile", re.compile(r"Mobi|iPhone|iPod|Windows Phone", re.I)),
    ("tablet", re.compile(r"Tablet|iPad|Kindle|Silk|Android", re.I)),
    ("desktop", re.compile(r"Windows NT|Macintosh|X11|CrOS", re.I)),
    ("windows", re.compile(r"Windows", re.I)),
    ("mac", re.compile(r"Darwin|Mac", re.I)),
    ("raspberry-pi", re.compile(r"Raspbian|Raspberry", re.I)),
    ("linux", re.compile(r"Linux", re.I)),
    ("chromeos", re.compile(r"Chrome ?OS", re.I)),
]


def _first_match(patterns, user_agent: str) -> str:
    for label, pattern in patterns:
        if pattern.search(user_agent):
            return label
    return "unknown"


def classify_device(user_agent: str) -> str:
    if not user_agent:
        return "unknown"
    return _first_match(_DEVICE_PATTERNS, user_agent)


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Best-effort OS/browser/device class extraction; never raises."""
    if not user_agent:
        return DeviceInfo()
    return DeviceInfo(
        device_type=classify_device(user_agent),
        os=_first_match(_OS_PATTERNS, user_agent),
        browser=_first_match(_BROWSER_PATTERNS, user_agent),
        user_agent=user_agent,
    )


@dataclass
class RequestContext:
    """What the auth core knows about the caller: network address and device."""

    ip: str = "unknown"
    user_agent: str = "unknown"
    device: DeviceInfo = field(default_factory=DeviceInfo)

    @classmethod
    def from_request_data(cls, ip: Optional[str], user_agent: Optional[str]) -> "RequestContext":
        device = parse_user_agent(user_agent)
        return cls(ip=ip or "unknown", user_agent=user_agent or "unknown", device=device)


def _is_public_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_reserved or addr.is_link_local)


class IpLocator:
    """IP geolocation backed by ipinfo.io; every failure degrades to ``Location()``."""

    def __init__(self, token: Optional[str], *, timeout: float = 3.0) -> None:
        self.token = token
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    async def lookup(self, ip: Optional[str]) -> Location:
        if not self.token or not ip or not _is_public_ip(ip):
            return Location()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    IPINFO_URL.format(ip=ip), params={"token": self.token}
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("ip_lookup_failed", error=str(exc))
            return Location()
        if not isinstance(payload, dict):
            return Location()
        return _location_from_ipinfo(payload)


def _location_from_ipinfo(payload: dict) -> Location:
    lat, lng = 0.0, 0.0
    loc = payload.get("loc")
    if isinstance(loc, str) and "," in loc:
        raw_lat, _, raw_lng = loc.partition(",")
        try:
            lat, lng = float(raw_lat), float(raw_lng)
        except ValueError:
            lat, lng = 0.0, 0.0
    return Location(
        city=payload.get("city") or "unknown",
        country=payload.get("country") or "unknown",
        lat=lat,
        lng=lng,
    )
