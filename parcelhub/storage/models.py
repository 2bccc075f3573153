from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

ROLES = ("admin", "agent", "customer")
DEFAULT_ROLE = "customer"
AUTH_PROVIDERS = ("jwt", "google", "github", "twitter", "facebook", "discord", "linkedin")

SESSION_TTL_DAYS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class DeviceInfo:
    device_type: str = "unknown"
    os: str = "unknown"
    browser: str = "unknown"
    user_agent: str = "unknown"


@dataclass
class Location:
    city: str = "unknown"
    country: str = "unknown"
    lat: float = 0
    lng: float = 0


@dataclass
class Session:
    """One sign-in on one device; ``token`` is the HMAC of its current access token."""

    token: str
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    location: Location = field(default_factory=Location)
    ip: Optional[str] = None
    logged_in_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(
        default_factory=lambda: utcnow() + timedelta(days=SESSION_TTL_DAYS)
    )
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    last_activity_at: datetime = field(default_factory=utcnow)
    status: bool = True
    risk_score: int = 0
    trusted_device: bool = False

    @classmethod
    def new(
        cls,
        token: str,
        *,
        device_info: Optional[DeviceInfo] = None,
        location: Optional[Location] = None,
        ip: Optional[str] = None,
        ttl_days: int = SESSION_TTL_DAYS,
    ) -> "Session":
        now = utcnow()
        return cls(
            token=token,
            device_info=device_info or DeviceInfo(),
            location=location or Location(),
            ip=ip,
            logged_in_at=now,
            expires_at=now + timedelta(days=ttl_days),
            last_activity_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("logged_in_at", "expires_at", "revoked_at", "last_activity_at"):
            data[key] = _iso(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            token=data["token"],
            device_info=DeviceInfo(**(data.get("device_info") or {})),
            location=Location(**(data.get("location") or {})),
            ip=data.get("ip"),
            logged_in_at=_parse_dt(data.get("logged_in_at")) or utcnow(),
            expires_at=_parse_dt(data.get("expires_at")) or utcnow(),
            revoked=bool(data.get("revoked", False)),
            revoked_at=_parse_dt(data.get("revoked_at")),
            last_activity_at=_parse_dt(data.get("last_activity_at")) or utcnow(),
            status=bool(data.get("status", True)),
            risk_score=int(data.get("risk_score") or 0),
            trusted_device=bool(data.get("trusted_device", False)),
        )

    def history_view(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "device_info": asdict(self.device_info),
            "location": asdict(self.location),
            "ip": self.ip,
            "logged_in_at": _iso(self.logged_in_at),
            "status": self.status,
        }


@dataclass
class AuthProvider:
    """Linked identity provider; ``profile`` is the normalized tuple only."""

    provider: str
    linked_at: datetime = field(default_factory=utcnow)
    profile: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "linked_at": _iso(self.linked_at),
            "profile": dict(self.profile),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthProvider":
        return cls(
            provider=data["provider"],
            linked_at=_parse_dt(data.get("linked_at")) or utcnow(),
            profile=dict(data.get("profile") or {}),
        )


@dataclass
class TwoFactor:
    enabled: bool = False
    # Encrypted TOTP secret envelope ({salt, iv, data}); never the raw base32 value
    secret: Optional[Dict[str, str]] = None


@dataclass
class User:
    id: str
    email: str
    normalized_email: str
    phone: Optional[str] = None
    family_name: Optional[str] = None
    given_name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = DEFAULT_ROLE
    verified: bool = False
    password_hash: Optional[str] = None
    two_factor: TwoFactor = field(default_factory=TwoFactor)
    auth: List[AuthProvider] = field(default_factory=list)
    sessions: List[Session] = field(default_factory=list)
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def has_provider(self, provider: str) -> bool:
        return any(entry.provider == provider for entry in self.auth)

    def profile_fields(self) -> Dict[str, Any]:
        """Every projectable field; credentials and session history are never included."""
        return {
            "id": self.id,
            "email": self.email,
            "normalized_email": self.normalized_email,
            "phone": self.phone,
            "family_name": self.family_name,
            "given_name": self.given_name,
            "avatar_url": self.avatar_url,
            "role": self.role,
            "verified": self.verified,
            "two_factor": {"enabled": self.two_factor.enabled},
            "auth": [
                {"provider": entry.provider, "linked_at": _iso(entry.linked_at)}
                for entry in self.auth
            ],
            "password_changed_at": _iso(self.password_changed_at),
            "created_at": _iso(self.created_at),
        }

    def to_snapshot(self) -> Dict[str, Any]:
        """Denormalized copy kept in the session cache and attached to principals."""
        return self.profile_fields()
