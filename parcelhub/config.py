from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from parcelhub.logging import get_logger

logger = get_logger(__name__)

OAUTH_PROVIDER_NAMES = ("google", "github", "twitter", "facebook", "discord")

# Secrets that must be present before the process is allowed to serve traffic.
REQUIRED_SECRETS = {
    "access_token_secret": "ACCESS_TOKEN",
    "refresh_token_secret": "REFRESH_TOKEN",
    "protect_token_secret": "PROTECT_TOKEN",
    "activation_secret": "ACTIVATION_SECRET",
    "crypto_secret": "CRYPTO_SECRET",
    "cookie_secret": "COOKIE_SECRET",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration for the parcel hub API."""

    database_url: str = env_field(
        "postgresql://localhost:5432/parcelhub", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (memory cache fallback, runtime reset).",
    )

    # Token signing secrets; one per token kind so a leak stays contained
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN")
    protect_token_secret: str | None = env_field(None, "PROTECT_TOKEN")
    activation_secret: str | None = env_field(None, "ACTIVATION_SECRET")
    crypto_secret: str | None = env_field(None, "CRYPTO_SECRET")
    cookie_secret: str | None = env_field(None, "COOKIE_SECRET")

    access_token_expire: int = env_field(
        30, "ACCESS_TOKEN_EXPIRE", description="Access token lifetime in minutes"
    )
    refresh_token_expire: int = env_field(
        3, "REFRESH_TOKEN_EXPIRE", description="Refresh token lifetime in days"
    )
    protect_token_expire: int = env_field(
        3, "PROTECT_TOKEN_EXPIRE", description="Protect token lifetime in days"
    )

    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    client_hub_origin: str = env_field("http://localhost:3001", "CLIENT_HUB_ORIGIN")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_twitter_client_id: str | None = env_field(None, "OAUTH_TWITTER_CLIENT_ID")
    oauth_twitter_client_secret: str | None = env_field(None, "OAUTH_TWITTER_CLIENT_SECRET")
    oauth_facebook_client_id: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_ID")
    oauth_facebook_client_secret: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_SECRET")
    oauth_discord_client_id: str | None = env_field(None, "OAUTH_DISCORD_CLIENT_ID")
    oauth_discord_client_secret: str | None = env_field(None, "OAUTH_DISCORD_CLIENT_SECRET")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("ParcelHub", "EMAIL_FROM_NAME")

    ipinfo_token: str | None = env_field(
        None, "IPINFO_TOKEN", description="ipinfo.io token; location lookup is skipped without it"
    )
    two_factor_issuer: str = env_field("ParcelHub", "TWO_FACTOR_ISSUER")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url", "cookie_domain", "ipinfo_token", mode="before")
    @classmethod
    def _empty_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("access_token_expire", "refresh_token_expire", "protect_token_expire")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @model_validator(mode="after")
    def _require_secrets(self) -> "Settings":
        missing = [
            env_name
            for field_name, env_name in REQUIRED_SECRETS.items()
            if not getattr(self, field_name)
        ]
        if missing:
            logger.critical("required_secrets_missing", missing=missing)
            raise ValueError(
                "missing required secrets: {}".format(", ".join(sorted(missing)))
            )
        return self

    def oauth_credentials(self, provider: str) -> tuple[str | None, str | None]:
        return (
            getattr(self, f"oauth_{provider}_client_id", None),
            getattr(self, f"oauth_{provider}_client_secret", None),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
