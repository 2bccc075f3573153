"""Session engine: OTP continuation tickets, pending-2FA tickets and the
session lifecycle (create, authenticate, rotate, revoke).

``SessionManager`` composes the token signer, cookie policy and dual-write
session store. Request handlers receive an explicit :class:`Principal`
instead of reading identity off a mutable request object.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from parcelhub.config import Settings
from parcelhub.logging import get_logger
from parcelhub.service.cookies import CookieBuilder, CookieKind, CookieSpec
from parcelhub.service.crypto import CipherError, Crypto, safe_compare
from parcelhub.service.device import IpLocator, RequestContext
from parcelhub.service.errors import AuthenticationError, SessionExpiredError
from parcelhub.service.tokens import ACCESS, REFRESH, TokenSigner, TokenTriple
from parcelhub.storage.models import Session, User
from parcelhub.storage.session_store import SessionStore

logger = get_logger(__name__)

ACTIVATION_TTL = timedelta(minutes=10)
PENDING_2FA_TTL = timedelta(minutes=5)
OTP_MIN = 100000
OTP_MAX = 999999

OTP_MISMATCH_MESSAGE = (
    "The OTP you entered does not match. Please double-check the code and try again."
)
ACTIVATION_EXPIRED_MESSAGE = (
    "Your verification code has expired or is invalid. Please sign up again."
)
NOT_SIGNED_IN_MESSAGE = "You are not logged in. Please log in to get access."


def normalize_email(email: str) -> str:
    """Fold case everywhere; fold dots only for gmail.com local parts."""
    local, sep, domain = email.strip().lower().rpartition("@")
    if not sep:
        return email.strip().lower()
    if domain == "gmail.com":
        return f"{local.replace('.', '')}@{domain}"
    return f"{local}@{domain}"


def generate_otp() -> str:
    """Uniform 6-digit code in [100000, 999999]."""
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


@dataclass
class Principal:
    """Authenticated caller resolved by the access gate."""

    user_id: str
    role: str
    user: Dict[str, Any] = field(default_factory=dict)
    access_token: str = ""
    access_hash: str = ""


@dataclass
class PendingTwoFactor:
    user_id: str
    remember: bool = False


class SessionManager:
    def __init__(
        self,
        settings: Settings,
        crypto: Crypto,
        signer: TokenSigner,
        cookies: CookieBuilder,
        sessions: SessionStore,
        locator: IpLocator,
    ) -> None:
        self.settings = settings
        self.crypto = crypto
        self.signer = signer
        self.cookies = cookies
        self.sessions = sessions
        self.locator = locator

    # continuation tickets
    def issue_activation(self, payload: Dict[str, Any], ip: str) -> Tuple[str, str]:
        """Seal the pending signup with a fresh OTP; returns (ticket, otp)."""
        otp = generate_otp()
        ticket = self.signer.encode_ticket(
            {"user": payload, "solid_otp": otp, "ip": ip}, ACTIVATION_TTL
        )
        return ticket, otp

    def verify_activation(self, ticket: str, otp: str) -> Dict[str, Any]:
        envelope = self.signer.decode_ticket(ticket)
        if envelope is None:
            raise AuthenticationError(ACTIVATION_EXPIRED_MESSAGE)
        try:
            sealed = self.crypto.decrypt(envelope)
        except CipherError as exc:
            logger.warning("activation_ticket_undecryptable", error=str(exc))
            raise AuthenticationError(ACTIVATION_EXPIRED_MESSAGE) from exc
        if not isinstance(sealed, dict) or not safe_compare(str(otp), str(sealed.get("solid_otp", ""))):
            raise AuthenticationError(OTP_MISMATCH_MESSAGE)
        return dict(sealed.get("user") or {})

    def pending_two_factor_cookie(self, user_id: str, remember: bool) -> CookieSpec:
        ticket = self.signer.encode_ticket({"id": user_id, "remember": bool(remember)}, PENDING_2FA_TTL)
        return self.cookies.build_cookie(CookieKind.PENDING_2FA, ticket, remember=True)

    def read_pending_two_factor(self, request_cookies: Dict[str, str]) -> Optional[PendingTwoFactor]:
        ticket = self.cookies.read(CookieKind.PENDING_2FA, request_cookies)
        envelope = self.signer.decode_ticket(ticket)
        if envelope is None:
            return None
        try:
            data = self.crypto.decrypt(envelope)
        except CipherError:
            logger.warning("pending_2fa_ticket_undecryptable")
            return None
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return PendingTwoFactor(user_id=str(data["id"]), remember=bool(data.get("remember")))

    # session lifecycle
    def _triple_cookies(self, triple: TokenTriple, remember: bool) -> List[CookieSpec]:
        return [
            self.cookies.build_cookie(CookieKind.ACCESS, triple.access_token, remember),
            self.cookies.build_cookie(CookieKind.REFRESH, triple.refresh_token, remember),
            self.cookies.build_cookie(CookieKind.PROTECT, triple.protect_token, remember),
        ]

    async def create_session(
        self, user: User, ctx: RequestContext, *, remember: bool
    ) -> List[CookieSpec]:
        """Issue a device-bound triple, record the session, and return the cookies to set."""
        triple = self.signer.issue_triple(ctx, user_id=user.id, role=user.role, remember=remember)
        location = await self.locator.lookup(ctx.ip)
        session = Session.new(
            triple.access_hash,
            device_info=ctx.device,
            location=location,
            ip=ctx.ip,
            ttl_days=self.settings.refresh_token_expire,
        )
        await self.sessions.add(user, session)
        logger.info("session_created", user_id=user.id, role=user.role, remember=remember)
        cookies = self._triple_cookies(triple, remember)
        cookies.append(self.cookies.clear(CookieKind.PENDING_2FA))
        return cookies

    async def authenticate(self, access_token: Optional[str]) -> Principal:
        """Access gate: valid JWT, live cache membership, and a cached snapshot."""
        if not access_token:
            raise AuthenticationError(NOT_SIGNED_IN_MESSAGE)
        claims = self.signer.decode(ACCESS, access_token)
        if not claims or not claims.get("id"):
            raise SessionExpiredError()
        user_id = str(claims["id"])
        access_hash = self.crypto.hmac(access_token)
        is_member, snapshot = await self.sessions.lookup(user_id, access_hash)
        if not is_member or snapshot is None:
            logger.info("session_not_live", user_id=user_id, member=is_member)
            raise SessionExpiredError()
        return Principal(
            user_id=user_id,
            role=str(snapshot.get("role") or claims.get("role")),
            user=snapshot,
            access_token=access_token,
            access_hash=access_hash,
        )

    async def refresh(self, refresh_token: Optional[str], ctx: RequestContext) -> List[CookieSpec]:
        claims = self.signer.decode(REFRESH, refresh_token)
        if not claims or not claims.get("id") or not claims.get("token"):
            raise SessionExpiredError()
        if self.signer.signature_mismatch(claims, ctx):
            logger.warning("refresh_signature_mismatch", user_id=claims.get("id"))
            raise SessionExpiredError()
        user_id = str(claims["id"])
        old_hash = str(claims["token"])
        is_live, snapshot = await self.sessions.lookup_for_refresh(user_id, old_hash)
        if not is_live or snapshot is None:
            # signed-out, pruned or evicted sessions cannot be revived by an old refresh token
            raise SessionExpiredError()
        remember = bool(claims.get("remember"))
        role = str(snapshot.get("role") or claims.get("role"))
        triple = self.signer.issue_triple(ctx, user_id=user_id, role=role, remember=remember)
        await self.sessions.rotate(user_id, old_hash, triple.access_hash)
        logger.info("session_rotated", user_id=user_id)
        return self._triple_cookies(triple, remember)

    async def revoke_current(self, principal: Principal) -> List[CookieSpec]:
        await self.sessions.revoke_one(principal.user_id, principal.access_hash)
        return self.cookies.clear_all()

    async def revoke_token(self, principal: Principal, token_hash: str) -> List[CookieSpec]:
        """Revoke one of the caller's sessions; scoped to the caller's own set."""
        await self.sessions.revoke_one(principal.user_id, token_hash)
        if safe_compare(token_hash, principal.access_hash):
            return self.cookies.clear_all()
        return []

    async def revoke_others(self, principal: Principal) -> int:
        return await self.sessions.revoke_all_others(principal.user_id, principal.access_hash)

    async def revoke_everything(self, user_id: str) -> None:
        await self.sessions.revoke_all(user_id)
