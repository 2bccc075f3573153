from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from urllib.parse import urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from parcelhub.config import Settings
from parcelhub.logging import get_logger
from parcelhub.service import totp
from parcelhub.service.cookies import CookieSpec
from parcelhub.service.crypto import CipherError, Crypto, hash_digest, random_hex_string
from parcelhub.service.device import RequestContext
from parcelhub.service.email import Mailer
from parcelhub.service.engine import Principal, SessionManager, normalize_email
from parcelhub.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
    UpstreamError,
)
from parcelhub.service.oauth import OAUTH_STATE_TTL_SECONDS, OAuthClient, OAuthProfile
from parcelhub.storage.errors import ConstraintViolation
from parcelhub.storage.memory import MemoryStore
from parcelhub.storage.models import AuthProvider, User, utcnow
from parcelhub.storage.postgres import PostgresStore
from parcelhub.storage.redis_cache import MemoryCache, RedisCache

logger = get_logger(__name__)

PASSWORD_RESET_TTL = timedelta(minutes=10)
FORBIDDEN_PROFILE_FIELDS = frozenset({"password", "email", "normalized_email"})

_PASSWORD_RULES = (
    (re.compile(r".{8,}"), "at least 8 characters"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[^A-Za-z0-9]"), "a special character"),
)

DUPLICATE_EMAIL_MESSAGE = "This email is already registered. Use a different email address."
BAD_CREDENTIALS_MESSAGE = "Incorrect email or password. Please check your credentials and try again."
TOTP_FAILED_MESSAGE = (
    "Invalid or expired 2FA token. Check your Google Authenticator app and try again."
)
RESET_INVALID_MESSAGE = "Password reset token is invalid or has expired."
FORBIDDEN_MESSAGE = "You do not have permission to perform this action"


def check_password_strength(password: str) -> None:
    """Raise ``ValueError`` naming every rule ``password`` breaks."""
    missing = [label for pattern, label in _PASSWORD_RULES if not pattern.search(password or "")]
    if missing:
        raise ValueError("Password must contain " + ", ".join(missing) + ".")


def _display_name(user: User) -> str:
    return user.family_name or user.given_name or "there"


def require_role(principal: Principal, roles: Iterable[str]) -> None:
    if principal.role not in set(roles):
        logger.info("role_forbidden", user_id=principal.user_id, role=principal.role)
        raise ForbiddenError(FORBIDDEN_MESSAGE)


def project_fields(fields: Mapping[str, Any], selection: Optional[str]) -> Dict[str, Any]:
    """Project ``fields`` to a comma-separated selection; forbidden fields never leak."""
    requested = []
    for raw in (selection or "").split(","):
        name = raw.strip().lstrip("+-").strip()
        if name and name not in FORBIDDEN_PROFILE_FIELDS:
            requested.append(name)
    if not requested:
        return {k: v for k, v in fields.items() if k not in FORBIDDEN_PROFILE_FIELDS}
    return {name: fields[name] for name in requested if name in fields}


@dataclass
class AuthResult:
    """Outcome of an auth operation: envelope content plus cookies, or a redirect."""

    message: str
    data: Optional[Dict[str, Any]] = None
    cookies: List[CookieSpec] = field(default_factory=list)
    redirect: Optional[str] = None
    status_code: int = 200


class AuthService:
    """Signup, signin, OAuth, 2FA, refresh and session management entry points."""

    def __init__(
        self,
        settings: Settings,
        store: Union[MemoryStore, PostgresStore],
        cache: Union[RedisCache, MemoryCache],
        manager: SessionManager,
        oauth: OAuthClient,
        mailer: Mailer,
        crypto: Crypto,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self.manager = manager
        self.oauth = oauth
        self.mailer = mailer
        self.crypto = crypto
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: Optional[User], password: str) -> bool:
        if user is None or not user.password_hash:
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user.id)
            return False

    def _welcome(self, user: User, cookies: List[CookieSpec]) -> AuthResult:
        return AuthResult(
            message=f"Welcome back {_display_name(user)}.",
            data={"role": user.role},
            cookies=cookies,
        )

    async def _send(self, to_email: str, template_id: str, data: Dict[str, Any]) -> None:
        if not await self.mailer.send_template(to_email, template_id, data):
            raise UpstreamError("email send failed")

    # signup / verify
    async def signup(self, payload: Mapping[str, Any], ctx: RequestContext) -> AuthResult:
        email = str(payload["email"]).strip()
        normalized = normalize_email(email)
        if self.store.find_by_email_or_normalized(email, normalized):
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE)
        pending = {
            "family_name": payload.get("family_name"),
            "given_name": payload.get("given_name"),
            "email": email,
            "phone": payload.get("phone"),
            "password_hash": self.hash_password(str(payload["password"])),
        }
        ticket, otp = self.manager.issue_activation(pending, ctx.ip)
        await self._send(email, "verify-email", {"otp": otp, "name": pending["given_name"]})
        self.logger.info("signup_otp_sent", ip=ctx.ip)
        return AuthResult(
            message="Verification code sent successfully to your email address.",
            data={"token": ticket},
        )

    async def verify_email(self, ticket: str, otp: str) -> AuthResult:
        pending = self.manager.verify_activation(ticket, otp)
        email = str(pending.get("email") or "")
        if not email:
            raise AuthenticationError("Your verification code has expired or is invalid. Please sign up again.")
        try:
            user = self.store.create_user(
                email,
                normalize_email(email),
                phone=pending.get("phone"),
                family_name=pending.get("family_name"),
                given_name=pending.get("given_name"),
                password_hash=pending.get("password_hash"),
                verified=True,
                auth=[AuthProvider(provider="jwt")],
            )
        except ConstraintViolation as exc:
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE) from exc
        self.logger.info("email_verified", user_id=user.id)
        return AuthResult(message="Your account has been successfully verified.", status_code=201)

    # signin
    async def signin(
        self, email: str, password: str, remember: bool, ctx: RequestContext
    ) -> AuthResult:
        email = email.strip()
        user = self.store.find_by_email_or_normalized(email, normalize_email(email))
        if not self.verify_password(user, password):
            self.logger.info("signin_failed", ip=ctx.ip)
            raise AuthenticationError(BAD_CREDENTIALS_MESSAGE)
        if user.two_factor.enabled:
            return self._pending_two_factor(user, remember)
        cookies = await self.manager.create_session(user, ctx, remember=remember)
        return self._welcome(user, cookies)

    def _pending_two_factor(self, user: User, remember: bool) -> AuthResult:
        self.logger.info("signin_pending_2fa", user_id=user.id)
        return AuthResult(
            message="Sign-in successful. Please complete two-factor authentication.",
            data={"enable2fa": True},
            cookies=[self.manager.pending_two_factor_cookie(user.id, remember)],
        )

    # oauth
    def _hub_url(self, path: str, **params: str) -> str:
        base = f"{self.settings.client_hub_origin.rstrip('/')}{path}"
        return f"{base}?{urlencode(params)}" if params else base

    async def oauth_start(self, provider: str) -> AuthResult:
        if not self.oauth.is_configured(provider):
            raise NotFoundError("This sign-in provider is not available.")
        state = self.oauth.new_state()
        await self.cache.set_oauth_state(state, provider, OAUTH_STATE_TTL_SECONDS)
        self.logger.info("oauth_started", provider=provider)
        return AuthResult(
            message="Redirecting to provider.",
            redirect=self.oauth.authorization_url(provider, state),
            status_code=302,
        )

    async def oauth_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        ctx: RequestContext,
    ) -> AuthResult:
        """Complete the provider flow; any failure redirects to sign-in with cookies cleared."""
        try:
            return await self._complete_oauth(provider, code, state, ctx)
        except ServiceError as exc:
            self.logger.warning("oauth_callback_failed", provider=provider, error=exc.message)
            return AuthResult(
                message=exc.message,
                cookies=self.manager.cookies.clear_all(),
                redirect=self._hub_url("/sign-in"),
                status_code=302,
            )

    async def _complete_oauth(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        ctx: RequestContext,
    ) -> AuthResult:
        if not self.oauth.is_supported(provider) or not code or not state:
            raise AuthenticationError("OAuth sign-in could not be completed.")
        stored_provider = await self.cache.pop_oauth_state(state)
        if stored_provider != provider:
            raise AuthenticationError("OAuth state is invalid or has expired.")
        profile = await self.oauth.exchange(provider, code, state)
        if profile is None:
            raise UpstreamError(f"{provider} profile exchange failed")

        user = self.store.find_by_email_or_normalized(profile.email, normalize_email(profile.email))
        if user is not None:
            if self.store.link_auth_provider(user.id, provider, profile.to_dict()):
                self.logger.info("oauth_provider_linked", user_id=user.id, provider=provider)
            if user.two_factor.enabled:
                pending = self._pending_two_factor(user, remember=True)
                pending.redirect = self._hub_url("/sign-in/verify-2fa")
                pending.status_code = 302
                return pending
        else:
            user = self._create_oauth_user(provider, profile)

        cookies = await self.manager.create_session(user, ctx, remember=True)
        return AuthResult(
            message=f"Welcome back {_display_name(user)}.",
            cookies=cookies,
            redirect=self._hub_url("/sign-in", role=user.role),
            status_code=302,
        )

    def _create_oauth_user(self, provider: str, profile: OAuthProfile) -> User:
        try:
            user = self.store.create_user(
                profile.email,
                normalize_email(profile.email),
                family_name=profile.family_name,
                given_name=profile.given_name,
                avatar_url=profile.avatar_url,
                verified=profile.verified,
                auth=[AuthProvider(provider=provider, profile=profile.to_dict())],
            )
        except ConstraintViolation as exc:
            raise ConflictError(DUPLICATE_EMAIL_MESSAGE) from exc
        self.logger.info("oauth_user_created", user_id=user.id, provider=provider)
        return user

    # two-factor
    async def verify_two_factor(
        self, code: str, request_cookies: Mapping[str, str], ctx: RequestContext
    ) -> AuthResult:
        pending = self.manager.read_pending_two_factor(dict(request_cookies))
        if pending is None:
            raise AuthenticationError(TOTP_FAILED_MESSAGE)
        user = self.store.get_user(pending.user_id)
        if user is None or not user.two_factor.enabled or not user.two_factor.secret:
            raise AuthenticationError(TOTP_FAILED_MESSAGE)
        try:
            secret = self.crypto.decrypt(user.two_factor.secret)
        except CipherError as exc:
            self.logger.error("totp_secret_undecryptable", user_id=user.id)
            raise AuthenticationError(TOTP_FAILED_MESSAGE) from exc
        if not totp.verify_totp(str(secret), code):
            self.logger.info("totp_verification_failed", user_id=user.id)
            raise AuthenticationError(TOTP_FAILED_MESSAGE)
        cookies = await self.manager.create_session(user, ctx, remember=pending.remember)
        return self._welcome(user, cookies)

    async def setup_two_factor(self, principal: Principal) -> AuthResult:
        secret = totp.generate_secret()
        account = str(principal.user.get("email") or principal.user_id)
        otpauth_url = totp.provisioning_uri(secret, account, self.settings.two_factor_issuer)
        return AuthResult(
            message="2FA setup generated successfully.",
            data={
                "secret": secret,
                "otpauth_url": otpauth_url,
                "qr_code_data_url": totp.qr_code_data_url(otpauth_url),
            },
        )

    async def enable_two_factor(self, principal: Principal, code: str, secret: str) -> AuthResult:
        if not totp.verify_totp(secret, code):
            raise AuthenticationError(TOTP_FAILED_MESSAGE)
        self.store.set_two_factor(principal.user_id, True, self.crypto.encrypt(secret))
        user = self.store.get_user(principal.user_id)
        if user is None:
            raise NotFoundError("User not found.")
        await self.manager.sessions.refresh_snapshot(user)
        self.logger.info("two_factor_enabled", user_id=user.id)
        return AuthResult(message="2FA has been confirmed and enabled.")

    # sessions
    async def refresh(self, refresh_token: Optional[str], ctx: RequestContext) -> AuthResult:
        cookies = await self.manager.refresh(refresh_token, ctx)
        return AuthResult(message="Token refreshed successfully.", cookies=cookies)

    async def signout(self, principal: Principal) -> AuthResult:
        cookies = await self.manager.revoke_current(principal)
        return AuthResult(message="You have been successfully signed out.", cookies=cookies)

    async def revoke_session(self, principal: Principal, token: str) -> AuthResult:
        cookies = await self.manager.revoke_token(principal, token)
        return AuthResult(message="You have been successfully logged out.", cookies=cookies)

    async def revoke_other_sessions(self, principal: Principal) -> AuthResult:
        await self.manager.revoke_others(principal)
        return AuthResult(message="You have been successfully logged out.")

    async def list_sessions(self, principal: Principal) -> AuthResult:
        sessions = await self.manager.sessions.history(principal.user_id)
        return AuthResult(
            message="Sign-in history fetched successfully.",
            data={"sessions": [s.history_view() for s in sessions]},
        )

    # profile
    async def me(self, principal: Principal) -> AuthResult:
        return AuthResult(message="Profile retrieved successfully", data={"user": principal.user})

    async def me_fields(self, principal: Principal, selection: Optional[str]) -> AuthResult:
        user = self.store.get_user(principal.user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return AuthResult(
            message="User fields retrieved successfully",
            data={"user": project_fields(user.profile_fields(), selection)},
        )

    # password reset
    async def forgot_password(self, email: str) -> AuthResult:
        email = email.strip()
        user = self.store.find_by_email_or_normalized(email, normalize_email(email))
        if user is not None:
            raw_token = random_hex_string()
            self.store.set_password_reset(user.id, hash_digest(raw_token), utcnow() + PASSWORD_RESET_TTL)
            reset_url = self._hub_url("/reset-password", token=raw_token)
            await self._send(user.email, "password-reset", {"reset_url": reset_url})
            self.logger.info("password_reset_requested", user_id=user.id)
        return AuthResult(
            message="If an account exists for that email, a password reset link has been sent."
        )

    async def reset_password(self, token: str, password: str) -> AuthResult:
        user = self.store.find_by_reset_token(hash_digest(token))
        expires = user.password_reset_expires if user else None
        if user is None or expires is None or expires <= utcnow():
            raise AuthenticationError(RESET_INVALID_MESSAGE)
        self.store.update_password(user.id, self.hash_password(password))
        await self.manager.revoke_everything(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        return AuthResult(
            message="Your password has been reset. Please sign in with your new password.",
            cookies=self.manager.cookies.clear_all(),
        )
