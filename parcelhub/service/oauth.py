from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from parcelhub.config import OAUTH_PROVIDER_NAMES, Settings
from parcelhub.logging import get_logger

logger = get_logger(__name__)

OAUTH_STATE_TTL_SECONDS = 600

# OAuth provider configurations
OAUTH_PROVIDERS: Dict[str, Dict[str, str]] = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v3/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "twitter": {
        "auth_url": "https://twitter.com/i/oauth2/authorize",
        "token_url": "https://api.twitter.com/2/oauth2/token",
        "userinfo_url": "https://api.twitter.com/2/users/me?user.fields=profile_image_url,confirmed_email",
        "scope": "users.read tweet.read users.email",
    },
    "facebook": {
        "auth_url": "https://www.facebook.com/v19.0/dialog/oauth",
        "token_url": "https://graph.facebook.com/v19.0/oauth/access_token",
        "userinfo_url": "https://graph.facebook.com/me?fields=id,name,email,picture",
        "scope": "email public_profile",
    },
    "discord": {
        "auth_url": "https://discord.com/oauth2/authorize",
        "token_url": "https://discord.com/api/oauth2/token",
        "userinfo_url": "https://discord.com/api/users/@me",
        "scope": "identify email",
    },
}


@dataclass
class OAuthProfile:
    """Provider-agnostic identity tuple; the only provider data ever persisted."""

    email: str
    verified: bool = False
    family_name: Optional[str] = None
    given_name: Optional[str] = None
    avatar_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _split_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a display name into (family_name, given_name); a single word is the family name."""
    if not name or not str(name).strip():
        return None, None
    parts = str(name).strip().split(" ", 1)
    family = parts[0]
    given = parts[1].strip() if len(parts) > 1 else None
    return family, given


def _google_profile(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "email": raw.get("email"),
        "verified": bool(raw.get("email_verified", False)),
        "family_name": raw.get("family_name"),
        "given_name": raw.get("given_name"),
        "avatar_url": raw.get("picture"),
    }


def _github_profile(raw: Dict[str, Any]) -> Dict[str, Any]:
    family, given = _split_name(raw.get("name") or raw.get("login"))
    return {
        "email": raw.get("email"),
        "verified": True,
        "family_name": family,
        "given_name": given,
        "avatar_url": raw.get("avatar_url"),
    }


def _twitter_profile(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = raw.get("data") if isinstance(raw.get("data"), dict) else raw
    family, given = _split_name(data.get("name"))
    return {
        "email": data.get("email") or data.get("confirmed_email"),
        "verified": True,
        "family_name": family,
        "given_name": given,
        "avatar_url": data.get("profile_image_url"),
    }


def _facebook_profile(raw: Dict[str, Any]) -> Dict[str, Any]:
    family, given = _split_name(raw.get("name"))
    picture = raw.get("picture") or {}
    avatar = picture.get("data", {}).get("url") if isinstance(picture, dict) else None
    return {
        "email": raw.get("email") or raw.get("id"),
        "verified": True,
        "family_name": family,
        "given_name": given,
        "avatar_url": avatar,
    }


def _discord_profile(raw: Dict[str, Any]) -> Dict[str, Any]:
    family, given = _split_name(raw.get("global_name") or raw.get("username"))
    avatar = None
    if raw.get("id") and raw.get("avatar"):
        avatar = f"https://cdn.discordapp.com/avatars/{raw['id']}/{raw['avatar']}.png"
    return {
        "email": raw.get("email"),
        "verified": bool(raw.get("verified", False)),
        "family_name": family,
        "given_name": given,
        "avatar_url": avatar,
    }


PROFILE_EXTRACTORS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "google": _google_profile,
    "github": _github_profile,
    "twitter": _twitter_profile,
    "facebook": _facebook_profile,
    "discord": _discord_profile,
}


def extract_profile(provider: str, raw: Dict[str, Any]) -> Optional[OAuthProfile]:
    extractor = PROFILE_EXTRACTORS.get(provider)
    if extractor is None or not isinstance(raw, dict):
        return None
    fields = extractor(raw)
    email = fields.get("email")
    if not email:
        return None
    return OAuthProfile(
        email=str(email).strip(),
        verified=bool(fields.get("verified")),
        family_name=fields.get("family_name"),
        given_name=fields.get("given_name"),
        avatar_url=fields.get("avatar_url"),
    )


class OAuthClient:
    """Authorization-code flow against the configured providers."""

    def __init__(self, settings: Settings, *, timeout: float = 30.0) -> None:
        self.settings = settings
        self.timeout = timeout
        self._code_registry: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def is_supported(self, provider: str) -> bool:
        return provider in OAUTH_PROVIDERS and provider in OAUTH_PROVIDER_NAMES

    def is_configured(self, provider: str) -> bool:
        if not self.is_supported(provider):
            return False
        client_id, client_secret = self.settings.oauth_credentials(provider)
        return bool(client_id and client_secret)

    def redirect_uri(self, provider: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/v1/oauth/{provider}/callback"

    @staticmethod
    def new_state() -> str:
        return secrets.token_urlsafe(32)

    def authorization_url(self, provider: str, state: str) -> str:
        client_id, _ = self.settings.oauth_credentials(provider)
        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri(provider),
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        # Add provider-specific parameters
        if provider == "google":
            params["access_type"] = "online"
            params["prompt"] = "select_account"
        if provider == "twitter":
            # PKCE is mandatory; the single-use state doubles as the plain verifier
            params["code_challenge"] = state
            params["code_challenge_method"] = "plain"
        return f"{provider_config['auth_url']}?{urlencode(params)}"

    def register_code(self, provider: str, code: str, payload: Dict[str, Any]) -> None:
        """Record a raw userinfo payload for an authorization code (tests and offline flows)."""
        self._code_registry[(provider, code)] = payload

    async def exchange(self, provider: str, code: str, state: str) -> Optional[OAuthProfile]:
        """Trade ``code`` for the caller's normalized profile; None on any provider failure."""
        registered = self._code_registry.pop((provider, code), None)
        if registered is not None:
            return extract_profile(provider, registered)

        if not self.is_configured(provider):
            logger.error("oauth_credentials_missing", provider=provider)
            return None
        client_id, client_secret = self.settings.oauth_credentials(provider)
        provider_config = OAUTH_PROVIDERS[provider]

        token_data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri(provider),
            "grant_type": "authorization_code",
        }
        auth = None
        if provider == "twitter":
            token_data["code_verifier"] = state
            auth = (client_id, client_secret)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                    auth=auth,
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None

                # GitHub hides private emails from /user
                if provider == "github" and not userinfo.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        userinfo["email"] = next(
                            (
                                e["email"]
                                for e in emails
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None

        profile = extract_profile(provider, userinfo)
        if profile is None:
            logger.error("oauth_identity_missing_email", provider=provider)
            return None
        logger.info("oauth_exchange_success", provider=provider)
        return profile
